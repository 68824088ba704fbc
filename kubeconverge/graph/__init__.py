"""Resource dependency graph.

Builds a DAG over declared resources from explicit ``depends_on`` hints and
from references embedded in resource properties (a property of B reading an
output of A implies the edge A -> B).
"""

from kubeconverge.graph.builder import build_graph
from kubeconverge.graph.dependency_graph import DependencyGraph
from kubeconverge.graph.models import DependencyEdge, EdgeSource, GraphNode, GraphWarning

__all__ = [
    "DependencyEdge",
    "DependencyGraph",
    "EdgeSource",
    "GraphNode",
    "GraphWarning",
    "build_graph",
]
