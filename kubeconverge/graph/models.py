"""Data structures for the resource dependency graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from kubeconverge.models.resources import ResourceDescriptor


class EdgeSource(StrEnum):
    """How a dependency between two resources was declared."""

    EXPLICIT = "explicit"  # depends_on list
    REFERENCE = "reference"  # a property reads the producer's output


@dataclass(frozen=True)
class DependencyEdge:
    """Producer must succeed before consumer is provisioned."""

    producer: str
    consumer: str
    sources: frozenset[EdgeSource] = frozenset()

    @property
    def key(self) -> tuple[str, str]:
        return (self.producer, self.consumer)


@dataclass
class GraphNode:
    """A node in the dependency graph: one descriptor plus its adjacency."""

    descriptor: ResourceDescriptor
    predecessors: list[str] = field(default_factory=list)  # blocking producers
    successors: list[str] = field(default_factory=list)  # dependents to notify

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> str:
        return self.descriptor.kind


@dataclass(frozen=True)
class GraphWarning:
    """Non-fatal validation finding produced while building the graph."""

    code: str
    resource: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"
