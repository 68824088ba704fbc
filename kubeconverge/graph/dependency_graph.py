"""In-memory DAG over resource descriptors.

Built by ``kubeconverge.graph.builder.build_graph``; once built it is
read-only. Iteration orders are deterministic: ties are broken by
declaration order.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator

from kubeconverge.graph.models import DependencyEdge, GraphNode, GraphWarning
from kubeconverge.models.resources import ResourceDescriptor


class DependencyGraph:
    def __init__(
        self,
        nodes: dict[str, GraphNode],
        edges: dict[tuple[str, str], DependencyEdge],
        warnings: list[GraphWarning] | None = None,
    ) -> None:
        self._nodes = nodes
        self._edges = edges
        self._index = {name: i for i, name in enumerate(nodes)}
        self.warnings: list[GraphWarning] = list(warnings or [])

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    @property
    def names(self) -> list[str]:
        return list(self._nodes)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    @property
    def edges(self) -> list[DependencyEdge]:
        return list(self._edges.values())

    def edge(self, producer: str, consumer: str) -> DependencyEdge | None:
        return self._edges.get((producer, consumer))

    def node(self, name: str) -> GraphNode:
        return self._nodes[name]

    def descriptor(self, name: str) -> ResourceDescriptor:
        return self._nodes[name].descriptor

    def predecessors(self, name: str) -> list[str]:
        return list(self._nodes[name].predecessors)

    def successors(self, name: str) -> list[str]:
        return list(self._nodes[name].successors)

    def roots(self) -> list[str]:
        """Nodes with no blocking predecessors, eligible immediately."""
        return [n for n, node in self._nodes.items() if not node.predecessors]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ready nodes are taken in declaration order."""
        remaining = {name: len(node.predecessors) for name, node in self._nodes.items()}
        ready = [name for name, count in remaining.items() if count == 0]
        order: list[str] = []
        while ready:
            ready.sort(key=self._index.__getitem__)
            name = ready.pop(0)
            order.append(name)
            for child in self._nodes[name].successors:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)
        return order

    def reverse_order(self) -> list[str]:
        return list(reversed(self.topological_order()))

    def descendants(self, name: str) -> list[str]:
        """Every node reachable from *name*, in topological order."""
        return self._reachable(name, forward=True)

    def ancestors(self, name: str) -> list[str]:
        """Every node that can reach *name*, in topological order."""
        return self._reachable(name, forward=False)

    def _reachable(self, start: str, forward: bool) -> list[str]:
        seen: set[str] = set()
        queue = deque([start])
        while queue:
            current = queue.popleft()
            node = self._nodes[current]
            for nxt in node.successors if forward else node.predecessors:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return [n for n in self.topological_order() if n in seen]
