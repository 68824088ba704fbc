"""Provider adapters.

Exports:
    ProviderAdapter       -- Abstract base for all adapters.
    ProviderContext       -- Explicit per-run provider configuration.
    ProviderRegistry      -- Kind -> adapter dispatch.
    InMemoryProvider      -- Deterministic dict-backed adapter.
    KubernetesProvider    -- kubernetes-asyncio dynamic client adapter.
    ManifestFileProvider  -- Multi-document YAML manifests (URL or path).
    HelmReleaseProvider   -- ``helm upgrade --install`` / ``helm uninstall``.
    build_default_registry -- Factory used by the CLI.
"""

from __future__ import annotations

from kubeconverge.providers.base import ProviderAdapter, ProviderContext, ProviderRegistry
from kubeconverge.providers.helm import HelmReleaseProvider
from kubeconverge.providers.kubernetes import KubernetesProvider
from kubeconverge.providers.manifest import ManifestFileProvider
from kubeconverge.providers.memory import InMemoryProvider

HELM_RELEASE_KIND = "kubernetes:helm.sh/v3:Release"
CONFIG_FILE_KIND = "kubernetes:yaml:ConfigFile"

__all__ = [
    "CONFIG_FILE_KIND",
    "HELM_RELEASE_KIND",
    "HelmReleaseProvider",
    "InMemoryProvider",
    "KubernetesProvider",
    "ManifestFileProvider",
    "ProviderAdapter",
    "ProviderContext",
    "ProviderRegistry",
    "build_default_registry",
]


def build_default_registry(context: ProviderContext) -> ProviderRegistry:
    """Registry with the Kubernetes, manifest-file and Helm adapters."""
    kubernetes = KubernetesProvider(context)
    registry = ProviderRegistry()
    registry.register("kubernetes", kubernetes)
    registry.register(CONFIG_FILE_KIND, ManifestFileProvider(kubernetes))
    registry.register(HELM_RELEASE_KIND, HelmReleaseProvider(context))
    return registry
