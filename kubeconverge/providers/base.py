"""Provider adapter interface and kind-based dispatch.

ProviderAdapter  -- ABC every adapter implements. One adapter serves one or
                    more resource kinds; the engine never interprets the
                    payload it hands over.
ProviderContext  -- Explicit shared configuration (cluster credentials,
                    defaults) passed to adapters at construction time.
ProviderRegistry -- Resolves a descriptor's kind to its adapter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from kubeconverge.errors import UnknownKindError
from kubeconverge.models.resources import ResourceDescriptor


@dataclass(frozen=True)
class ProviderContext:
    """Configuration shared by every adapter of one run.

    Two runs against different clusters use two contexts; nothing here is
    process-global.
    """

    stack: str = ""
    kubeconfig: str = ""
    kube_context: str = ""
    default_namespace: str = "default"
    helm_binary: str = "helm"


class ProviderAdapter(ABC):
    """Performs create/update/delete against a remote API.

    ``apply`` receives a descriptor whose references are all substituted
    with concrete values. It returns the resolved attribute set that becomes
    the resource's outputs, or raises TransientProviderError (retried) /
    PermanentProviderError (not retried). Any other exception is treated as
    permanent by the engine.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Identifier used in logs and metrics."""

    @abstractmethod
    async def apply(self, descriptor: ResourceDescriptor, previous: dict[str, Any] | None = None) -> dict[str, Any]:
        """Create or update the resource; *previous* holds last observed outputs."""

    @abstractmethod
    async def delete(self, descriptor: ResourceDescriptor) -> None:
        """Delete the resource. Deleting an absent resource succeeds."""

    def requires_replacement(self, old: dict[str, Any], new: dict[str, Any]) -> bool:
        """Return True if moving from *old* to *new* properties cannot be done in place."""
        return False


class ProviderRegistry:
    """Maps kinds to adapters.

    Keys are either a full kind (``kubernetes:helm.sh/v3:Release``) or a
    package (``kubernetes``, the text before the first ``:``). Exact kinds
    win over packages.
    """

    def __init__(self) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, key: str, adapter: ProviderAdapter) -> None:
        self._adapters[key] = adapter

    def lookup(self, kind: str) -> ProviderAdapter | None:
        adapter = self._adapters.get(kind)
        if adapter is not None:
            return adapter
        package = kind.split(":", 1)[0]
        return self._adapters.get(package)

    def resolve(self, kind: str) -> ProviderAdapter:
        adapter = self.lookup(kind)
        if adapter is None:
            raise UnknownKindError([kind])
        return adapter

    def missing(self, kinds: Iterable[str]) -> list[str]:
        return sorted({k for k in kinds if self.lookup(k) is None})

    def adapters(self) -> list[ProviderAdapter]:
        seen: dict[int, ProviderAdapter] = {}
        for adapter in self._adapters.values():
            seen.setdefault(id(adapter), adapter)
        return list(seen.values())
