"""Apply and teardown runs.

An ApplyRun owns one OutputCell per resource. When the scheduler reports a
node terminal, the run settles that node's cell: resolved with the
provider's outputs on success, failed with the provider error on failure,
failed with DependencyFailedError when skipped and RunCancelledError when
cancelled. Exports are derived cells built on those at construction time,
so they settle on their own as the run proceeds.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from kubeconverge.engine.convergence import ConvergenceError, ConvergenceLoop, ConvergenceOutcome, summarize
from kubeconverge.engine.resolve import resolve_descriptor, substitute
from kubeconverge.engine.retry import RetryPolicy
from kubeconverge.engine.scheduler import DagScheduler, SchedulerHooks
from kubeconverge.errors import (
    DanglingReferenceError,
    DependencyFailedError,
    PermanentProviderError,
    RunCancelledError,
    UnknownKindError,
)
from kubeconverge.graph import DependencyGraph, build_graph
from kubeconverge.models.config import EngineConfig
from kubeconverge.models.resources import (
    Operation,
    Reference,
    ResourceDescriptor,
    ResourceState,
    iter_references,
)
from kubeconverge.models.run import ExportResult, NodeResult, RunReport, RunStatus
from kubeconverge.models.stack import Stack
from kubeconverge.observability.logging import bound_run_context
from kubeconverge.observability.metrics import run_duration_seconds, runs_total
from kubeconverge.outputs.cell import OutputCell, gather
from kubeconverge.providers.base import ProviderRegistry
from kubeconverge.state.store import StateStore

_log = structlog.get_logger(component="engine.run")


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def export_cell(name: str, value: Any, cells: dict[str, OutputCell]) -> OutputCell:
    """Derived cell for one export expression over the resources' cells."""
    label = f"export:{name}"
    if isinstance(value, Reference):
        return cells[value.resource].field(value.path, value.default)
    producers = list(dict.fromkeys(ref.resource for ref in iter_references(value)))
    if not producers:
        return OutputCell.of(value, label=label)
    combined = gather(*(cells[p] for p in producers), label=label)
    return combined.map(lambda values: substitute(value, dict(zip(producers, values))), label=label)


class _NodeRecorder(SchedulerHooks):
    """Shared bookkeeping: the NodeResult table, filled only from scheduler hooks."""

    def __init__(self, results: dict[str, NodeResult]) -> None:
        self.results = results

    def on_start(self, name: str) -> None:
        result = self.results[name]
        result.state = ResourceState.PROVISIONING
        result.started_at = _now()

    def on_failure(self, name: str, error: BaseException) -> None:
        result = self.results[name]
        result.finished_at = _now()
        if isinstance(error, ConvergenceError):
            result.state = ResourceState.ROLLED_BACK if error.rolled_back else ResourceState.FAILED
            result.operation = error.operation
            result.attempts = error.attempts
            result.error = str(error.cause)
            result.error_type = type(error.cause).__name__
        else:
            result.state = ResourceState.FAILED
            result.error = str(error)
            result.error_type = type(error).__name__
        _log.warning("resource_failed", resource=name, error=result.error, error_type=result.error_type)

    def on_skipped(self, name: str, caused_by: str) -> None:
        result = self.results[name]
        result.state = ResourceState.FAILED
        result.caused_by = caused_by
        result.error = str(DependencyFailedError(name, caused_by))
        result.error_type = DependencyFailedError.__name__

    def on_cancelled(self, name: str) -> None:
        result = self.results[name]
        result.state = ResourceState.CANCELLED
        result.error = str(RunCancelledError(name))
        result.error_type = RunCancelledError.__name__


class _ApplyHooks(_NodeRecorder):
    def __init__(self, results: dict[str, NodeResult], cells: dict[str, OutputCell]) -> None:
        super().__init__(results)
        self.cells = cells

    def on_success(self, name: str, result: Any) -> None:
        outcome: ConvergenceOutcome = result
        node = self.results[name]
        node.state = ResourceState.SUCCEEDED
        node.operation = outcome.operation
        node.attempts = outcome.attempts
        node.outputs = outcome.outputs
        node.finished_at = _now()
        self.cells[name].resolve(outcome.outputs)

    def on_failure(self, name: str, error: BaseException) -> None:
        super().on_failure(name, error)
        self.cells[name].fail(error)

    def on_skipped(self, name: str, caused_by: str) -> None:
        super().on_skipped(name, caused_by)
        self.cells[name].fail(DependencyFailedError(name, caused_by))

    def on_cancelled(self, name: str) -> None:
        super().on_cancelled(name)
        self.cells[name].fail(RunCancelledError(name))


class _TeardownHooks(_NodeRecorder):
    def on_success(self, name: str, result: Any) -> None:
        node = self.results[name]
        node.state = ResourceState.SUCCEEDED
        node.operation = Operation.DELETE
        node.attempts = int(result)
        node.finished_at = _now()


class ApplyRun:
    """One execution of a stack against providers and state.

    Construction builds and validates the graph; any BuildError is raised
    here, before a single provider call.
    """

    command = "up"

    def __init__(
        self,
        stack: Stack,
        providers: ProviderRegistry,
        state: StateStore,
        config: EngineConfig | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.stack = stack
        self.config = config or EngineConfig()
        self.graph: DependencyGraph = build_graph(stack.descriptors)
        missing = providers.missing(self.graph.descriptor(n).kind for n in self.graph)
        if missing:
            raise UnknownKindError(missing)
        for export_name, value in stack.exports.items():
            for ref in iter_references(value):
                if ref.resource not in self.graph:
                    raise DanglingReferenceError(f"export:{export_name}", ref.resource)

        self.run_id = _new_run_id()
        self._state = state
        self._providers = providers
        self._policy = policy or RetryPolicy()
        self._loop = ConvergenceLoop(providers, state, self._policy, self.config.rollback_on_failure)
        self._cancelled = False
        self._scheduler: DagScheduler | None = None
        self._prune_lock = asyncio.Lock()
        self._pruned: dict[str, NodeResult] = {}

        order = self.graph.topological_order()
        self.results: dict[str, NodeResult] = {
            name: NodeResult(name=name, kind=self.graph.descriptor(name).kind) for name in order
        }
        self.cells: dict[str, OutputCell] = {name: OutputCell(label=name) for name in order}
        self.exports: dict[str, OutputCell] = {
            name: export_cell(name, value, self.cells) for name, value in stack.exports.items()
        }

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def max_in_flight(self) -> int:
        return self._scheduler.max_in_flight if self._scheduler else 0

    def cancel(self) -> None:
        """Stop dispatching; in-flight provider calls finish, the rest end cancelled."""
        if not self._cancelled:
            _log.info("run_cancel_requested", run_id=self.run_id)
        self._cancelled = True

    async def _provision(self, name: str) -> ConvergenceOutcome:
        descriptor = await resolve_descriptor(self.graph.descriptor(name), self.cells)
        if self._loop.plan(descriptor) == Operation.REPLACE:
            await self._prune_dependents(name)
        return await self._loop.converge(descriptor, dependencies=self.graph.predecessors(name))

    async def _prune_dependents(self, name: str) -> None:
        """Delete orphans whose recorded dependencies reach *name* before it is replaced."""
        async with self._prune_lock:
            entries = self._state.entries()
            doomed: set[str] = set()
            frontier = [name]
            while frontier:
                current = frontier.pop()
                for orphan, entry in entries.items():
                    if orphan in self.graph or orphan in doomed:
                        continue
                    if current in entry.dependencies:
                        doomed.add(orphan)
                        frontier.append(orphan)
            if not doomed:
                return
            _log.info("pruning_orphans_before_replace", resource=name, orphans=sorted(doomed))
            results = await self._teardown(doomed)
            self._pruned.update(results)
            blocked = [orphan for orphan, result in results.items() if result.state != ResourceState.SUCCEEDED]
            if blocked:
                cause = PermanentProviderError(
                    f"orphaned dependent {blocked[0]!r} could not be deleted before replacement", resource=name
                )
                raise ConvergenceError(name, Operation.REPLACE, cause, attempts=0)

    async def execute(self) -> RunReport:
        started = time.monotonic()
        with bound_run_context(run_id=self.run_id, stack=self.stack.name, command=self.command):
            _log.info("run_started", resources=len(self.graph), edges=self.graph.edge_count)
            self._state.stack = self.stack.name
            self._scheduler = DagScheduler(
                {name: self.graph.predecessors(name) for name in self.graph},
                order=self.graph.topological_order(),
                parallelism=self.config.parallelism,
            )
            await self._scheduler.run(self._provision, _ApplyHooks(self.results, self.cells), lambda: self._cancelled)

            exports: dict[str, ExportResult] = {}
            for export_name, cell in self.exports.items():
                try:
                    exports[export_name] = ExportResult(export_name, value=await cell)
                except Exception as exc:
                    exports[export_name] = ExportResult(export_name, error=str(exc))

            resources = dict(self.results)
            resources.update(self._pruned)
            status = summarize(resources.values())
            if status == RunStatus.SUCCEEDED:
                pruned = await self._prune_orphans()
                resources.update(pruned)
                status = summarize(resources.values())
            if status == RunStatus.SUCCEEDED:
                await self._state.set_exports_async({name: e.value for name, e in exports.items() if e.ok})

            report = RunReport(
                run_id=self.run_id,
                stack=self.stack.name,
                command=self.command,
                status=status,
                resources=resources,
                exports=exports,
                warnings=[w.message for w in self.graph.warnings],
                duration_ms=(time.monotonic() - started) * 1000,
            )
            runs_total.labels(command=self.command, status=status.value).inc()
            run_duration_seconds.labels(command=self.command).observe(report.duration_ms / 1000)
            _log.info(
                "run_finished",
                status=status.value,
                failed=len(report.failed),
                duration_ms=round(report.duration_ms, 1),
            )
            return report

    async def _prune_orphans(self) -> dict[str, NodeResult]:
        orphans = [name for name in self._state.names() if name not in self.graph]
        if not orphans:
            return {}
        _log.info("pruning_orphans", resources=orphans)
        return await self._teardown(orphans)

    async def _teardown(self, names: Iterable[str]) -> dict[str, NodeResult]:
        teardown = TeardownRun(
            self._providers,
            self._state,
            self.config,
            self._policy,
            names=names,
            stack_name=self.stack.name,
        )
        teardown.run_id = self.run_id
        return await teardown.walk(lambda: self._cancelled)


class TeardownRun:
    """Delete resources recorded in state, dependents before their producers."""

    command = "destroy"

    def __init__(
        self,
        providers: ProviderRegistry,
        state: StateStore,
        config: EngineConfig | None = None,
        policy: RetryPolicy | None = None,
        names: Iterable[str] | None = None,
        stack_name: str | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.stack_name = stack_name or state.stack
        self.run_id = _new_run_id()
        self._state = state
        self._loop = ConvergenceLoop(providers, state, policy or RetryPolicy())
        self._cancelled = False

        entries = state.entries()
        selected = set(entries) if names is None else set(names) & set(entries)
        descriptors = [
            ResourceDescriptor(
                name=name,
                kind=entry.kind,
                properties=entry.properties,
                depends_on=tuple(d for d in entry.dependencies if d in selected),
            )
            for name, entry in entries.items()
            if name in selected
        ]
        missing = providers.missing(d.kind for d in descriptors)
        if missing:
            raise UnknownKindError(missing)
        self.graph = build_graph(descriptors)
        self.results: dict[str, NodeResult] = {
            name: NodeResult(name=name, kind=self.graph.descriptor(name).kind) for name in self.graph.reverse_order()
        }

    def cancel(self) -> None:
        self._cancelled = True

    async def _delete(self, name: str) -> int:
        return await self._loop.delete(self.graph.descriptor(name))

    async def walk(self, is_cancelled: Any = None) -> dict[str, NodeResult]:
        scheduler = DagScheduler(
            {name: self.graph.successors(name) for name in self.graph},
            order=self.graph.reverse_order(),
            parallelism=self.config.parallelism,
        )
        await scheduler.run(self._delete, _TeardownHooks(self.results), is_cancelled or (lambda: self._cancelled))
        return dict(self.results)

    async def execute(self) -> RunReport:
        started = time.monotonic()
        with bound_run_context(run_id=self.run_id, stack=self.stack_name, command=self.command):
            _log.info("run_started", resources=len(self.graph))
            resources = await self.walk()
            status = summarize(resources.values())
            if status == RunStatus.SUCCEEDED:
                await self._state.set_exports_async({})
            report = RunReport(
                run_id=self.run_id,
                stack=self.stack_name,
                command=self.command,
                status=status,
                resources=resources,
                duration_ms=(time.monotonic() - started) * 1000,
            )
            runs_total.labels(command=self.command, status=status.value).inc()
            run_duration_seconds.labels(command=self.command).observe(report.duration_ms / 1000)
            _log.info("run_finished", status=status.value, failed=len(report.failed))
            return report
