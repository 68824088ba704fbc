"""Engine facade used by the CLI and tests."""

from __future__ import annotations

from typing import Any

import structlog

from kubeconverge.engine.convergence import ConvergenceLoop
from kubeconverge.engine.resolve import substitute
from kubeconverge.engine.retry import RetryPolicy
from kubeconverge.engine.run import ApplyRun, TeardownRun
from kubeconverge.errors import MissingOutputError, UnknownKindError
from kubeconverge.graph import build_graph
from kubeconverge.models.config import EngineConfig, KubeConvergeConfig
from kubeconverge.models.resources import Operation
from kubeconverge.models.run import Plan, PlannedChange, RunReport
from kubeconverge.models.stack import Stack
from kubeconverge.providers.base import ProviderRegistry
from kubeconverge.state.store import StateStore

_log = structlog.get_logger(component="engine")

_REASONS = {
    Operation.CREATE: "not present in state",
    Operation.UPDATE: "properties changed",
    Operation.REPLACE: "change requires replacement",
    Operation.SAME: "",
}


class Engine:
    def __init__(
        self,
        providers: ProviderRegistry,
        state: StateStore,
        config: KubeConvergeConfig | EngineConfig | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        if isinstance(config, KubeConvergeConfig):
            self.config = config.engine
            policy = policy or RetryPolicy.from_config(config.retry)
        else:
            self.config = config or EngineConfig()
        self.providers = providers
        self.state = state
        self.policy = policy or RetryPolicy()

    def new_run(self, stack: Stack) -> ApplyRun:
        """Build (and validate) a run without starting it."""
        return ApplyRun(stack, self.providers, self.state, self.config, self.policy)

    async def apply(self, stack: Stack) -> RunReport:
        return await self.new_run(stack).execute()

    def new_teardown(self, stack_name: str | None = None) -> TeardownRun:
        return TeardownRun(self.providers, self.state, self.config, self.policy, stack_name=stack_name)

    async def destroy(self, stack_name: str | None = None) -> RunReport:
        """Delete every resource recorded in state, dependents first."""
        return await self.new_teardown(stack_name).execute()

    def preview(self, stack: Stack) -> Plan:
        """Compute what ``apply`` would do, without calling any provider.

        References are resolved against the outputs recorded in state. When
        a producer is about to be created or replaced its outputs are not
        known yet; its consumers are then reported as changing. An updated
        producer keeps its recorded outputs, and a consumer that stays the
        same on that basis says so in its reason.
        """
        graph = build_graph(stack.descriptors)
        missing = self.providers.missing(graph.descriptor(n).kind for n in graph)
        if missing:
            raise UnknownKindError(missing)

        loop = ConvergenceLoop(self.providers, self.state, self.policy)
        known: dict[str, Any] = {}
        updating: set[str] = set()
        plan = Plan(stack=stack.name, warnings=[w.message for w in graph.warnings])

        for name in graph.topological_order():
            descriptor = graph.descriptor(name)
            pending = [r.resource for r in descriptor.references() if r.resource not in known]
            operation: Operation | None = None
            reason = ""
            if not pending:
                try:
                    resolved = descriptor.with_properties(substitute(descriptor.properties, known))
                except MissingOutputError as exc:
                    pending = [exc.resource]
                else:
                    operation = loop.plan(resolved)
                    reason = _REASONS[operation]
                    assumed = [r.resource for r in descriptor.references() if r.resource in updating]
                    if operation == Operation.SAME and assumed:
                        reason = f"assumes outputs of {assumed[0]!r} are unchanged"
            if operation is None:
                operation = Operation.UPDATE if self.state.get(name) is not None else Operation.CREATE
                reason = f"awaits outputs of {pending[0]!r}"

            prior = self.state.get(name)
            if prior is not None and operation in (Operation.SAME, Operation.UPDATE):
                known[name] = prior.outputs
            if operation == Operation.UPDATE:
                updating.add(name)
            plan.changes.append(PlannedChange(name=name, kind=descriptor.kind, operation=operation, reason=reason))

        orphans = [n for n in self.state.names() if n not in graph]
        for name in reversed(orphans):
            entry = self.state.get(name)
            assert entry is not None
            plan.changes.append(
                PlannedChange(name=name, kind=entry.kind, operation=Operation.DELETE, reason="no longer declared")
            )

        _log.info(
            "preview_computed",
            stack=stack.name,
            **{op.value: plan.count(op) for op in Operation if op != Operation.NONE},
        )
        return plan
