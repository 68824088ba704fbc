"""Run report and plan data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from kubeconverge.models.resources import Operation, ResourceState


class RunStatus(StrEnum):
    """Overall outcome of a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class NodeResult:
    """Terminal record for one resource in a run."""

    name: str
    kind: str
    state: ResourceState = ResourceState.PENDING
    operation: Operation = Operation.NONE
    attempts: int = 0
    error: str | None = None
    error_type: str | None = None
    caused_by: str | None = None  # upstream resource whose failure skipped this one
    outputs: dict[str, Any] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "state": self.state.value,
            "operation": self.operation.value,
            "attempts": self.attempts,
            "error": self.error,
            "error_type": self.error_type,
            "caused_by": self.caused_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ExportResult:
    """Resolved (or failed) value of a top-level export."""

    name: str
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunReport:
    """Final report for an apply or destroy run.

    ``resources`` is ordered topologically (reverse topologically for
    destroy) so that printing it reads in execution order.
    """

    run_id: str
    stack: str
    command: str
    status: RunStatus
    resources: dict[str, NodeResult] = field(default_factory=dict)
    exports: dict[str, ExportResult] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def failed(self) -> list[NodeResult]:
        return [r for r in self.resources.values() if r.state == ResourceState.FAILED]

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def causal_chain(self, name: str) -> list[str]:
        """Return ``[name, caused_by, ...]`` up to the root failure."""
        chain = [name]
        seen = {name}
        current = self.resources.get(name)
        while current is not None and current.caused_by and current.caused_by not in seen:
            chain.append(current.caused_by)
            seen.add(current.caused_by)
            current = self.resources.get(current.caused_by)
        return chain

    def export_values(self) -> dict[str, Any]:
        return {name: e.value for name, e in self.exports.items() if e.ok}

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stack": self.stack,
            "command": self.command,
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 3),
            "resources": [r.to_dict() for r in self.resources.values()],
            "exports": {
                name: ({"value": e.value} if e.ok else {"error": e.error}) for name, e in self.exports.items()
            },
            "warnings": list(self.warnings),
        }


@dataclass
class PlannedChange:
    """One entry of a preview plan."""

    name: str
    kind: str
    operation: Operation
    reason: str = ""


@dataclass
class Plan:
    """Result of ``Engine.preview``: no provider was called to produce it."""

    stack: str
    changes: list[PlannedChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def count(self, operation: Operation) -> int:
        return sum(1 for c in self.changes if c.operation == operation)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack,
            "changes": [
                {"name": c.name, "kind": c.kind, "operation": c.operation.value, "reason": c.reason}
                for c in self.changes
            ],
            "summary": {op.value: self.count(op) for op in Operation if op != Operation.NONE},
            "warnings": list(self.warnings),
        }
