"""Core data structures for kubeconverge."""

from kubeconverge.models.config import KubeConvergeConfig
from kubeconverge.models.resources import (
    MISSING,
    Operation,
    Reference,
    ResourceDescriptor,
    ResourceState,
    Template,
)
from kubeconverge.models.run import (
    ExportResult,
    NodeResult,
    Plan,
    PlannedChange,
    RunReport,
    RunStatus,
)
from kubeconverge.models.stack import ResourceHandle, Stack

__all__ = [
    "MISSING",
    "ExportResult",
    "KubeConvergeConfig",
    "NodeResult",
    "Operation",
    "Plan",
    "PlannedChange",
    "Reference",
    "ResourceDescriptor",
    "ResourceHandle",
    "ResourceState",
    "RunReport",
    "RunStatus",
    "Stack",
    "Template",
]
