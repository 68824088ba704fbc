"""Helm release adapter (``kubernetes:helm.sh/v3:Release``).

Drives the ``helm`` binary as an asyncio subprocess:
``helm upgrade --install`` for apply and ``helm uninstall`` for delete.

Properties:
    chart           -- Chart name or reference (required).
    version         -- Chart version.
    namespace       -- Release namespace (defaults to the context namespace).
    name            -- Release name (defaults to the resource name).
    repositoryOpts  -- ``{"repo": <url>}``.
    values          -- Values mapping, passed as a JSON values file.
    timeout         -- Helm ``--timeout`` (e.g. ``5m0s``); adds ``--wait``.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from typing import Any

import structlog

from kubeconverge.errors import PermanentProviderError, ProviderError, TransientProviderError
from kubeconverge.models.resources import ResourceDescriptor
from kubeconverge.providers.base import ProviderAdapter, ProviderContext

_log = structlog.get_logger(component="providers.helm")

_TRANSIENT_MARKERS = (
    "another operation (install/upgrade/rollback) is in progress",
    "timed out",
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
    "too many requests",
    "the server is currently unable to handle the request",
)


def release_name(descriptor: ResourceDescriptor) -> str:
    return str(descriptor.properties.get("name") or descriptor.name)


def release_namespace(descriptor: ResourceDescriptor, context: ProviderContext) -> str:
    return str(descriptor.properties.get("namespace") or context.default_namespace)


def _connection_flags(context: ProviderContext) -> list[str]:
    flags: list[str] = []
    if context.kubeconfig:
        flags += ["--kubeconfig", context.kubeconfig]
    if context.kube_context:
        flags += ["--kube-context", context.kube_context]
    return flags


def build_upgrade_command(
    descriptor: ResourceDescriptor,
    context: ProviderContext,
    values_file: str | None,
) -> list[str]:
    props = descriptor.properties
    chart = props.get("chart")
    if not chart:
        raise PermanentProviderError("Helm release requires a 'chart' property", resource=descriptor.name)
    cmd = [
        context.helm_binary,
        "upgrade",
        "--install",
        release_name(descriptor),
        str(chart),
        "--namespace",
        release_namespace(descriptor, context),
        "--create-namespace",
        "--output",
        "json",
    ]
    if props.get("version"):
        cmd += ["--version", str(props["version"])]
    repo = (props.get("repositoryOpts") or {}).get("repo")
    if repo:
        cmd += ["--repo", str(repo)]
    if values_file:
        cmd += ["--values", values_file]
    if props.get("timeout"):
        cmd += ["--wait", "--timeout", str(props["timeout"])]
    return cmd + _connection_flags(context)


def build_uninstall_command(descriptor: ResourceDescriptor, context: ProviderContext) -> list[str]:
    cmd = [
        context.helm_binary,
        "uninstall",
        release_name(descriptor),
        "--namespace",
        release_namespace(descriptor, context),
    ]
    return cmd + _connection_flags(context)


def classify_helm_failure(stderr: str, resource: str, returncode: int) -> ProviderError:
    lowered = stderr.lower()
    message = f"helm exited with {returncode}: {stderr.strip()[:500]}"
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientProviderError(message, resource=resource)
    return PermanentProviderError(message, resource=resource)


def release_outputs(stdout: str, descriptor: ResourceDescriptor, context: ProviderContext) -> dict[str, Any]:
    """Extract outputs from ``helm upgrade --output json``."""
    try:
        release = json.loads(stdout) if stdout.strip() else {}
    except json.JSONDecodeError:
        release = {}
    info = release.get("info") or {}
    chart_meta = (release.get("chart") or {}).get("metadata") or {}
    return {
        "name": release.get("name", release_name(descriptor)),
        "namespace": release.get("namespace", release_namespace(descriptor, context)),
        "revision": release.get("version"),
        "status": info.get("status", "deployed"),
        "chart": chart_meta.get("name", descriptor.properties.get("chart")),
        "version": chart_meta.get("version", descriptor.properties.get("version")),
        "appVersion": chart_meta.get("appVersion"),
    }


class HelmReleaseProvider(ProviderAdapter):
    def __init__(self, context: ProviderContext) -> None:
        self._context = context

    @property
    def provider_name(self) -> str:
        return "helm"

    async def apply(self, descriptor: ResourceDescriptor, previous: dict[str, Any] | None = None) -> dict[str, Any]:
        values = descriptor.properties.get("values") or {}
        fd, values_file = tempfile.mkstemp(prefix="kubeconverge-values-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(values, fh)
            cmd = build_upgrade_command(descriptor, self._context, values_file)
            stdout, stderr, code = await self._run(cmd)
        finally:
            os.unlink(values_file)
        if code != 0:
            raise classify_helm_failure(stderr, descriptor.name, code)
        outputs = release_outputs(stdout, descriptor, self._context)
        _log.info(
            "helm_release_applied",
            resource=descriptor.name,
            release=outputs["name"],
            namespace=outputs["namespace"],
            revision=outputs["revision"],
        )
        return outputs

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        stdout, stderr, code = await self._run(build_uninstall_command(descriptor, self._context))
        if code != 0:
            if "not found" in stderr.lower():
                _log.debug("helm_release_already_absent", resource=descriptor.name)
                return
            raise classify_helm_failure(stderr, descriptor.name, code)
        _log.info("helm_release_uninstalled", resource=descriptor.name, release=release_name(descriptor))

    def requires_replacement(self, old: dict[str, Any], new: dict[str, Any]) -> bool:
        old_ns = old.get("namespace") or self._context.default_namespace
        new_ns = new.get("namespace") or self._context.default_namespace
        return old.get("name") != new.get("name") or old_ns != new_ns

    async def _run(self, cmd: list[str]) -> tuple[str, str, int]:
        _log.debug("helm_exec", argv=cmd[:4])
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise PermanentProviderError(f"helm binary not found: {cmd[0]}") from exc
        try:
            out, err = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
                _log.warning("helm_exec_killed", argv=cmd[:4], pid=proc.pid)
            raise
        return out.decode("utf-8", "replace"), err.decode("utf-8", "replace"), proc.returncode or 0
