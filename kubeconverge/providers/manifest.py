"""Multi-document YAML manifest adapter (``kubernetes:yaml:ConfigFile``).

Properties:
    file       -- URL (http/https) or local path of the manifest.
    namespace  -- Optional namespace applied to namespaced objects that do
                  not set one.

Every document is applied in file order through the Kubernetes adapter and
deleted in reverse order.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import structlog
import yaml

from kubeconverge.errors import PermanentProviderError, TransientProviderError
from kubeconverge.models.resources import ResourceDescriptor
from kubeconverge.providers.base import ProviderAdapter
from kubeconverge.providers.kubernetes import KubernetesProvider, classify_status

_log = structlog.get_logger(component="providers.manifest")


def parse_manifests(text: str, source: str = "<string>") -> list[dict[str, Any]]:
    """Parse a multi-document YAML stream into object manifests, skipping empty docs."""
    try:
        docs = [d for d in yaml.safe_load_all(text) if d]
    except yaml.YAMLError as exc:
        raise PermanentProviderError(f"Manifest {source} is not valid YAML: {exc}") from exc
    for doc in docs:
        if not isinstance(doc, dict) or "apiVersion" not in doc or "kind" not in doc:
            raise PermanentProviderError(f"Manifest {source} contains a document without apiVersion/kind")
        doc.setdefault("metadata", {})
    return docs


def object_key(manifest: dict[str, Any]) -> str:
    metadata = manifest.get("metadata", {})
    namespace = metadata.get("namespace", "")
    return f"{manifest['apiVersion']}/{manifest['kind']}/{namespace}/{metadata.get('name', '')}"


class ManifestFileProvider(ProviderAdapter):
    def __init__(self, kubernetes: KubernetesProvider, timeout: float = 30.0) -> None:
        self._kubernetes = kubernetes
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return "manifest"

    async def apply(self, descriptor: ResourceDescriptor, previous: dict[str, Any] | None = None) -> dict[str, Any]:
        manifests = await self._load(descriptor)
        applied: list[str] = []
        for manifest in manifests:
            await self._kubernetes.apply_manifest(manifest, resource=descriptor.name)
            applied.append(object_key(manifest))
        _log.info("manifest_applied", resource=descriptor.name, objects=len(applied))
        return {"file": descriptor.properties.get("file"), "objects": len(applied), "resources": applied}

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        manifests = await self._load(descriptor)
        for manifest in reversed(manifests):
            await self._kubernetes.delete_manifest(manifest, resource=descriptor.name)
        _log.info("manifest_deleted", resource=descriptor.name, objects=len(manifests))

    def requires_replacement(self, old: dict[str, Any], new: dict[str, Any]) -> bool:
        return old.get("file") != new.get("file")

    async def _load(self, descriptor: ResourceDescriptor) -> list[dict[str, Any]]:
        source = descriptor.properties.get("file")
        if not isinstance(source, str) or not source:
            raise PermanentProviderError("ConfigFile requires a 'file' property", resource=descriptor.name)
        text = await self._fetch(source, descriptor.name)
        manifests = parse_manifests(text, source)
        namespace = descriptor.properties.get("namespace")
        if namespace:
            for manifest in manifests:
                manifest["metadata"].setdefault("namespace", namespace)
        return manifests

    async def _fetch(self, source: str, resource: str) -> str:
        if not source.startswith(("http://", "https://")):
            try:
                return Path(source).expanduser().read_text(encoding="utf-8")
            except OSError as exc:
                raise PermanentProviderError(f"Cannot read manifest {source}: {exc}", resource=resource) from exc
        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                response = await client.get(source)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Timed out fetching {source}", resource=resource) from exc
        except httpx.HTTPError as exc:
            raise TransientProviderError(f"Error fetching {source}: {exc}", resource=resource) from exc
        if not response.is_success:
            raise classify_status(response.status_code, f"Fetching {source} returned {response.status_code}", resource)
        return response.text
