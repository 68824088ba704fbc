"""Convergence loop: one resource, one provider, bounded retries.

For each resolved descriptor the loop decides the operation by comparing
the content hash with the last-applied hash in the state store:

    no entry            -> create
    same hash           -> same     (no provider call; outputs from state)
    different hash      -> update   (in place)
    replacement needed  -> replace  (delete old, then apply new)

Transient provider failures are retried with exponential backoff;
permanent ones are not. Successful outcomes are written to the state store
before the loop returns.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import structlog

from kubeconverge.engine.retry import RetryPolicy
from kubeconverge.errors import (
    EngineError,
    EngineInvariantError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from kubeconverge.models.resources import Operation, ResourceDescriptor, ResourceState
from kubeconverge.models.run import NodeResult, RunStatus
from kubeconverge.observability.metrics import provider_retries_total, resource_operations_total
from kubeconverge.providers.base import ProviderAdapter, ProviderRegistry
from kubeconverge.state.hashing import compute_descriptor_hash
from kubeconverge.state.store import StateEntry, StateStore

_log = structlog.get_logger(component="engine.convergence")

T = TypeVar("T")


@dataclass
class ConvergenceOutcome:
    operation: Operation
    outputs: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


class ConvergenceError(EngineError):
    """A resource could not be converged; ``cause`` is the terminal provider error."""

    def __init__(
        self,
        resource: str,
        operation: Operation,
        cause: ProviderError,
        attempts: int,
        rolled_back: bool = False,
    ) -> None:
        super().__init__(f"{operation.value} of {resource!r} failed after {attempts} attempt(s): {cause}")
        self.resource = resource
        self.operation = operation
        self.cause = cause
        self.attempts = attempts
        self.rolled_back = rolled_back


class ConvergenceLoop:
    def __init__(
        self,
        providers: ProviderRegistry,
        state: StateStore,
        policy: RetryPolicy,
        rollback_on_failure: bool = False,
    ) -> None:
        self._providers = providers
        self._state = state
        self._policy = policy
        self._rollback = rollback_on_failure

    def plan(self, descriptor: ResourceDescriptor) -> Operation:
        """Decide the operation for a fully resolved descriptor without side effects."""
        prior = self._state.get(descriptor.name)
        if prior is None:
            return Operation.CREATE
        if prior.kind == descriptor.kind and prior.descriptor_hash == compute_descriptor_hash(
            descriptor.kind, descriptor.properties
        ):
            return Operation.SAME
        if prior.kind != descriptor.kind:
            return Operation.REPLACE
        adapter = self._providers.resolve(descriptor.kind)
        if adapter.requires_replacement(prior.properties, descriptor.properties):
            return Operation.REPLACE
        return Operation.UPDATE

    async def converge(self, descriptor: ResourceDescriptor, dependencies: Iterable[str] = ()) -> ConvergenceOutcome:
        name, kind = descriptor.name, descriptor.kind
        operation = self.plan(descriptor)
        prior = self._state.get(name)

        if operation == Operation.SAME:
            assert prior is not None
            _log.info("resource_unchanged", resource=name, kind=kind)
            deps = list(dependencies)
            if sorted(deps) != sorted(prior.dependencies):
                # Edges are not part of the hash; teardown ordering reads them from state.
                await self._state.put_async(name, replace(prior, dependencies=deps))
                _log.info("resource_dependencies_updated", resource=name, dependencies=deps)
            resource_operations_total.labels(kind=kind, operation=operation.value, outcome="success").inc()
            return ConvergenceOutcome(operation=operation, outputs=dict(prior.outputs), attempts=0)

        adapter = self._providers.resolve(kind)
        attempts = 0
        try:
            if operation == Operation.REPLACE:
                assert prior is not None
                old = ResourceDescriptor(name=name, kind=prior.kind, properties=prior.properties)
                old_adapter = self._providers.resolve(prior.kind)
                _log.info("resource_replacing", resource=name, kind=kind)
                _, n = await self._with_retry(lambda: old_adapter.delete(old), name, prior.kind, operation)
                attempts += n
                await self._state.remove_async(name)

            previous = prior.outputs if (prior is not None and operation == Operation.UPDATE) else None
            outputs, n = await self._with_retry(
                lambda: adapter.apply(descriptor, previous),
                name,
                kind,
                operation,
                offset=attempts,
            )
            attempts += n
        except ConvergenceError as exc:
            resource_operations_total.labels(kind=kind, operation=operation.value, outcome="failure").inc()
            if operation == Operation.CREATE and self._rollback:
                exc.rolled_back = await self._compensate(adapter, descriptor)
            raise

        await self._state.put_async(
            name,
            StateEntry(
                kind=kind,
                descriptor_hash=compute_descriptor_hash(kind, descriptor.properties),
                properties=descriptor.properties,
                outputs=outputs,
                dependencies=list(dependencies),
            ),
        )
        resource_operations_total.labels(kind=kind, operation=operation.value, outcome="success").inc()
        _log.info("resource_converged", resource=name, kind=kind, operation=operation.value, attempts=attempts)
        return ConvergenceOutcome(operation=operation, outputs=outputs, attempts=attempts)

    async def delete(self, descriptor: ResourceDescriptor) -> int:
        """Delete a resource recorded in state; returns attempts used."""
        adapter = self._providers.resolve(descriptor.kind)
        try:
            _, attempts = await self._with_retry(
                lambda: adapter.delete(descriptor), descriptor.name, descriptor.kind, Operation.DELETE
            )
        except ConvergenceError:
            resource_operations_total.labels(kind=descriptor.kind, operation="delete", outcome="failure").inc()
            raise
        await self._state.remove_async(descriptor.name)
        resource_operations_total.labels(kind=descriptor.kind, operation="delete", outcome="success").inc()
        _log.info("resource_deleted", resource=descriptor.name, kind=descriptor.kind, attempts=attempts)
        return attempts

    async def _with_retry(
        self,
        call: Callable[[], Awaitable[T]],
        name: str,
        kind: str,
        operation: Operation,
        offset: int = 0,
    ) -> tuple[T, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call(), attempt
            except TransientProviderError as exc:
                if not self._policy.should_retry(attempt):
                    _log.warning(
                        "provider_retries_exhausted",
                        resource=name,
                        kind=kind,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise ConvergenceError(name, operation, exc, offset + attempt) from exc
                delay = self._policy.delay(attempt)
                provider_retries_total.labels(kind=kind).inc()
                _log.info(
                    "provider_retry_scheduled",
                    resource=name,
                    kind=kind,
                    attempt=attempt,
                    delay_s=round(delay, 3),
                    error=str(exc),
                )
                await self._policy.sleep(delay)
            except PermanentProviderError as exc:
                _log.warning("provider_permanent_failure", resource=name, kind=kind, error=str(exc))
                raise ConvergenceError(name, operation, exc, offset + attempt) from exc
            except EngineInvariantError:
                raise
            except Exception as exc:
                # Unclassified adapter errors are never retried.
                wrapped = PermanentProviderError(f"{type(exc).__name__}: {exc}", resource=name)
                _log.error("provider_unexpected_error", resource=name, kind=kind, error=str(exc))
                raise ConvergenceError(name, operation, wrapped, offset + attempt) from exc

    async def _compensate(self, adapter: ProviderAdapter, descriptor: ResourceDescriptor) -> bool:
        try:
            await adapter.delete(descriptor)
        except Exception as exc:
            _log.error("rollback_failed", resource=descriptor.name, error=str(exc))
            return False
        _log.info("resource_rolled_back", resource=descriptor.name)
        return True


def summarize(results: Iterable[NodeResult]) -> RunStatus:
    """Succeeded iff every resource succeeded; cancelled only when nothing failed."""
    states = [r.state for r in results]
    if any(s in (ResourceState.FAILED, ResourceState.ROLLED_BACK) for s in states):
        return RunStatus.FAILED
    if any(s == ResourceState.CANCELLED for s in states):
        return RunStatus.CANCELLED
    if all(s == ResourceState.SUCCEEDED for s in states):
        return RunStatus.SUCCEEDED
    return RunStatus.FAILED
