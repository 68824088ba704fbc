"""Kubernetes object adapter backed by the kubernetes-asyncio dynamic client.

Serves every ``kubernetes:<group>/<version>:<Kind>`` kind plus
``kubernetes:apiextensions.k8s.io:CustomResource``. The object manifest is
the descriptor's properties; ``apiVersion`` and ``kind`` come from the
properties when present, otherwise from the kind token.

Apply is create-then-merge-patch: a 409 on create means the object exists
and is patched in place. The API client is built from the ProviderContext
(explicit kubeconfig/context, or in-cluster service account), never from
process-global configuration.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

import structlog

from kubeconverge.errors import PermanentProviderError, ProviderError, TransientProviderError
from kubeconverge.models.resources import ResourceDescriptor
from kubeconverge.providers.base import ProviderAdapter, ProviderContext

_log = structlog.get_logger(component="providers.kubernetes")

_TRANSIENT_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
_IMMUTABLE_FIELDS = (("apiVersion",), ("kind",), ("metadata", "name"), ("metadata", "namespace"))


def api_version_for(kind_token: str) -> tuple[str, str]:
    """Split ``kubernetes:apps/v1:Deployment`` into (``apps/v1``, ``Deployment``).

    The ``core`` group maps to the bare version (``v1``).
    """
    parts = kind_token.split(":")
    if len(parts) != 3 or "/" not in parts[1]:
        raise PermanentProviderError(f"Cannot derive apiVersion from kind {kind_token!r}")
    group, version = parts[1].split("/", 1)
    api_version = version if group == "core" else f"{group}/{version}"
    return api_version, parts[2]


def build_manifest(descriptor: ResourceDescriptor) -> dict[str, Any]:
    """Return the object manifest for *descriptor*."""
    manifest = copy.deepcopy(descriptor.properties)
    if "apiVersion" not in manifest or "kind" not in manifest:
        api_version, kind = api_version_for(descriptor.kind)
        manifest.setdefault("apiVersion", api_version)
        manifest.setdefault("kind", kind)
    metadata = manifest.setdefault("metadata", {})
    metadata.setdefault("name", descriptor.name)
    return manifest


def classify_status(status: int | None, message: str, resource: str) -> ProviderError:
    """Map an HTTP status from the API server to a transient or permanent error."""
    if status is None or status in _TRANSIENT_STATUS:
        return TransientProviderError(message, resource=resource, status_code=status)
    return PermanentProviderError(message, resource=resource, status_code=status)


def _field(manifest: dict[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = manifest
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class KubernetesProvider(ProviderAdapter):
    def __init__(self, context: ProviderContext) -> None:
        self._context = context
        self._api_client: Any = None
        self._dynamic: Any = None
        self._lock = asyncio.Lock()

    @property
    def provider_name(self) -> str:
        return "kubernetes"

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    async def _client(self) -> Any:
        async with self._lock:
            if self._dynamic is not None:
                return self._dynamic
            # Imported lazily: kubernetes-asyncio is only needed when a
            # Kubernetes resource is actually provisioned.
            from kubernetes_asyncio import config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio.client import ApiClient, Configuration  # type: ignore[import-untyped]
            from kubernetes_asyncio.dynamic import DynamicClient  # type: ignore[import-untyped]

            client_config = Configuration()
            if self._context.kubeconfig or self._context.kube_context:
                await k8s_config.load_kube_config(
                    config_file=self._context.kubeconfig or None,
                    context=self._context.kube_context or None,
                    client_configuration=client_config,
                )
                _log.info("k8s client configured from kubeconfig", context=self._context.kube_context or "current")
            else:
                try:
                    k8s_config.load_incluster_config(client_configuration=client_config)
                    _log.info("k8s client configured from in-cluster service account")
                except k8s_config.ConfigException:
                    await k8s_config.load_kube_config(client_configuration=client_config)
                    _log.info("k8s client configured from kubeconfig")

            self._api_client = ApiClient(configuration=client_config)
            self._dynamic = await DynamicClient(self._api_client)
            return self._dynamic

    async def close(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
            self._dynamic = None

    # ------------------------------------------------------------------
    # Adapter interface
    # ------------------------------------------------------------------

    async def apply(self, descriptor: ResourceDescriptor, previous: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.apply_manifest(build_manifest(descriptor), resource=descriptor.name)

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        await self.delete_manifest(build_manifest(descriptor), resource=descriptor.name)

    def requires_replacement(self, old: dict[str, Any], new: dict[str, Any]) -> bool:
        return any(_field(old, path) != _field(new, path) for path in _IMMUTABLE_FIELDS if _field(old, path) is not None)

    # ------------------------------------------------------------------
    # Manifest operations (shared with the manifest-file adapter)
    # ------------------------------------------------------------------

    async def apply_manifest(self, manifest: dict[str, Any], resource: str) -> dict[str, Any]:
        dyn, api = await self._connect(manifest, resource)
        name = manifest["metadata"]["name"]
        namespace = self._namespace_for(api, manifest)
        try:
            try:
                result = await dyn.create(api, body=manifest, namespace=namespace)
                _log.info("k8s_object_created", resource=resource, kind=manifest["kind"], name=name, namespace=namespace)
            except Exception as exc:
                if getattr(exc, "status", None) != 409:
                    raise
                result = await dyn.patch(
                    api,
                    body=manifest,
                    name=name,
                    namespace=namespace,
                    content_type="application/merge-patch+json",
                )
                _log.info("k8s_object_patched", resource=resource, kind=manifest["kind"], name=name, namespace=namespace)
        except ProviderError:
            raise
        except Exception as exc:
            raise self._translate(exc, resource) from exc
        return result.to_dict() if hasattr(result, "to_dict") else dict(result)

    async def delete_manifest(self, manifest: dict[str, Any], resource: str) -> None:
        dyn, api = await self._connect(manifest, resource)
        name = manifest["metadata"]["name"]
        namespace = self._namespace_for(api, manifest)
        try:
            await dyn.delete(api, name=name, namespace=namespace)
            _log.info("k8s_object_deleted", resource=resource, kind=manifest["kind"], name=name, namespace=namespace)
        except Exception as exc:
            if getattr(exc, "status", None) == 404:
                _log.debug("k8s_object_already_absent", resource=resource, name=name)
                return
            raise self._translate(exc, resource) from exc

    async def _connect(self, manifest: dict[str, Any], resource: str) -> tuple[Any, Any]:
        """Client plus the API resource serving *manifest*, with failures classified."""
        try:
            dyn = await self._client()
            return dyn, await self._resource_api(dyn, manifest, resource)
        except ProviderError:
            raise
        except Exception as exc:
            raise self._translate(exc, resource) from exc

    async def _resource_api(self, dyn: Any, manifest: dict[str, Any], resource: str) -> Any:
        from kubernetes_asyncio.dynamic.exceptions import ResourceNotFoundError  # type: ignore[import-untyped]

        try:
            return await dyn.resources.get(api_version=manifest["apiVersion"], kind=manifest["kind"])
        except ResourceNotFoundError as exc:
            # The CRD serving this kind may not be established yet.
            raise TransientProviderError(
                f"API server does not serve {manifest['apiVersion']}/{manifest['kind']} yet",
                resource=resource,
                status_code=404,
            ) from exc

    def _namespace_for(self, api: Any, manifest: dict[str, Any]) -> str | None:
        if not getattr(api, "namespaced", False):
            return None
        metadata = manifest["metadata"]
        namespace = metadata.get("namespace") or self._context.default_namespace
        metadata["namespace"] = namespace
        return str(namespace)

    @staticmethod
    def _translate(exc: Exception, resource: str) -> ProviderError:
        if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError)):
            return TransientProviderError(f"Kubernetes API unreachable: {exc}", resource=resource)
        status = getattr(exc, "status", None)
        reason = getattr(exc, "reason", None) or str(exc)
        if status is None:
            return PermanentProviderError(f"Kubernetes API error: {reason}", resource=resource)
        return classify_status(status, f"Kubernetes API error {status}: {reason}", resource)
