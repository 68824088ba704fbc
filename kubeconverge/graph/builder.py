"""Dependency graph builder.

Turns a flat descriptor set into a DependencyGraph or fails with a
BuildError. Nothing here talks to a provider, so a failed build has no side
effects.

Edges come from two places and are merged: explicit ``depends_on`` lists and
references embedded anywhere in a descriptor's property tree. A pair of
resources gets at most one edge; the edge records every source that
produced it.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from kubeconverge.errors import CycleDetectedError, DanglingReferenceError, DuplicateNameError
from kubeconverge.graph.dependency_graph import DependencyGraph
from kubeconverge.graph.models import DependencyEdge, EdgeSource, GraphNode, GraphWarning
from kubeconverge.models.resources import ResourceDescriptor

_log = structlog.get_logger(component="graph.builder")


def build_graph(descriptors: Iterable[ResourceDescriptor]) -> DependencyGraph:
    """Build and validate the dependency DAG.

    Raises:
        DuplicateNameError: two descriptors share a logical name.
        DanglingReferenceError: a reference or explicit dependency names an
            unknown resource.
        CycleDetectedError: the merged edge set contains a cycle.
    """
    nodes: dict[str, GraphNode] = {}
    for desc in descriptors:
        if desc.name in nodes:
            raise DuplicateNameError(desc.name)
        nodes[desc.name] = GraphNode(descriptor=desc)

    sources: dict[tuple[str, str], set[EdgeSource]] = {}
    for consumer, node in nodes.items():
        for ref in node.descriptor.references():
            _add_edge(sources, nodes, ref.resource, consumer, EdgeSource.REFERENCE)
        for producer in node.descriptor.depends_on:
            _add_edge(sources, nodes, producer, consumer, EdgeSource.EXPLICIT)

    edges: dict[tuple[str, str], DependencyEdge] = {}
    for (producer, consumer), srcs in sources.items():
        edges[(producer, consumer)] = DependencyEdge(producer, consumer, frozenset(srcs))
        nodes[producer].successors.append(consumer)
        nodes[consumer].predecessors.append(producer)

    cycle = _find_cycle(nodes)
    if cycle is not None:
        raise CycleDetectedError(cycle)

    warnings = _redundant_dependencies(nodes, edges)
    for w in warnings:
        _log.warning("graph_validation_warning", code=w.code, resource=w.resource, detail=w.message)

    graph = DependencyGraph(nodes, edges, warnings)
    _log.debug("graph_built", nodes=graph.node_count, edges=graph.edge_count)
    return graph


def _add_edge(
    sources: dict[tuple[str, str], set[EdgeSource]],
    nodes: dict[str, GraphNode],
    producer: str,
    consumer: str,
    source: EdgeSource,
) -> None:
    if producer not in nodes:
        raise DanglingReferenceError(consumer, producer)
    sources.setdefault((producer, consumer), set()).add(source)


def _find_cycle(nodes: dict[str, GraphNode]) -> list[str] | None:
    """Depth-first search with a recursion-stack membership test.

    Returns the offending node sequence, closed (``[a, b, a]``), or None.
    """
    done: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(name: str) -> list[str] | None:
        stack.append(name)
        on_stack.add(name)
        for child in nodes[name].successors:
            if child in on_stack:
                return stack[stack.index(child) :] + [child]
            if child not in done:
                found = visit(child)
                if found is not None:
                    return found
        stack.pop()
        on_stack.discard(name)
        done.add(name)
        return None

    for name in nodes:
        if name not in done:
            found = visit(name)
            if found is not None:
                return found
    return None


def _redundant_dependencies(
    nodes: dict[str, GraphNode],
    edges: dict[tuple[str, str], DependencyEdge],
) -> list[GraphWarning]:
    """Flag explicit dependencies already implied through other edges."""
    warnings: list[GraphWarning] = []
    for (producer, consumer), edge in edges.items():
        if EdgeSource.EXPLICIT not in edge.sources:
            continue
        if _reaches_indirectly(nodes, producer, consumer):
            warnings.append(
                GraphWarning(
                    code="redundant_dependency",
                    resource=consumer,
                    message=(f"{consumer!r} explicitly depends on {producer!r}, which is already implied transitively"),
                )
            )
    return warnings


def _reaches_indirectly(nodes: dict[str, GraphNode], producer: str, consumer: str) -> bool:
    seen: set[str] = set()
    pending = [s for s in nodes[producer].successors if s != consumer]
    while pending:
        current = pending.pop()
        if current == consumer:
            return True
        if current in seen:
            continue
        seen.add(current)
        pending.extend(nodes[current].successors)
    return False
