"""Resource descriptor store.

A Stack collects declared descriptors and exports in declaration order. It
is a leaf: uniqueness and reference checks happen in the graph builder.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from kubeconverge.models.resources import MISSING, Reference, ResourceDescriptor


@dataclass(frozen=True)
class ResourceHandle:
    """Returned by ``Stack.resource`` to build references to a declared resource."""

    name: str
    kind: str

    def ref(self, path: str = "", default: Any = MISSING) -> Reference:
        return Reference(self.name, path, default)


class Stack:
    def __init__(self, name: str, descriptors: Iterable[ResourceDescriptor] = ()) -> None:
        self.name = name
        self._descriptors: list[ResourceDescriptor] = list(descriptors)
        self._exports: dict[str, Any] = {}

    def add(self, descriptor: ResourceDescriptor) -> ResourceHandle:
        self._descriptors.append(descriptor)
        return ResourceHandle(descriptor.name, descriptor.kind)

    def resource(
        self,
        name: str,
        kind: str,
        properties: dict[str, Any] | None = None,
        depends_on: Iterable[str | ResourceHandle] = (),
    ) -> ResourceHandle:
        deps = tuple(d.name if isinstance(d, ResourceHandle) else d for d in depends_on)
        return self.add(ResourceDescriptor(name=name, kind=kind, properties=dict(properties or {}), depends_on=deps))

    def export(self, name: str, value: Any) -> None:
        """Register a top-level export (literal, Reference or Template)."""
        self._exports[name] = value

    @property
    def descriptors(self) -> list[ResourceDescriptor]:
        return list(self._descriptors)

    @property
    def exports(self) -> dict[str, Any]:
        return dict(self._exports)

    def __len__(self) -> int:
        return len(self._descriptors)
