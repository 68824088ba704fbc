"""Unit tests for the per-resource convergence loop."""

from __future__ import annotations

import pytest

from kubeconverge.engine.convergence import ConvergenceError, ConvergenceLoop, summarize
from kubeconverge.engine.retry import RetryPolicy
from kubeconverge.errors import PermanentProviderError, TransientProviderError
from kubeconverge.models.resources import Operation, ResourceDescriptor, ResourceState
from kubeconverge.models.run import NodeResult, RunStatus
from kubeconverge.providers import InMemoryProvider, ProviderRegistry
from kubeconverge.providers.memory import reject
from kubeconverge.state import MemoryStateStore, compute_descriptor_hash

KIND = "test:core/v1:ConfigMap"


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _desc(name: str = "cm", **props: object) -> ResourceDescriptor:
    return ResourceDescriptor(name=name, kind=KIND, properties={"data": {"k": "v"}, **props})


def _make_loop(
    provider: InMemoryProvider,
    max_attempts: int = 4,
    rollback: bool = False,
) -> tuple[ConvergenceLoop, MemoryStateStore, _Sleeps]:
    registry = ProviderRegistry()
    registry.register("test", provider)
    state = MemoryStateStore()
    sleeps = _Sleeps()
    policy = RetryPolicy(max_attempts=max_attempts, base_delay=1.0, max_delay=30.0, jitter=0.0, sleep=sleeps)
    return ConvergenceLoop(registry, state, policy, rollback_on_failure=rollback), state, sleeps


# ---------------------------------------------------------------------------
# Operation selection
# ---------------------------------------------------------------------------


class TestOperations:
    async def test_create_when_not_in_state(self) -> None:
        provider = InMemoryProvider()
        loop, state, _ = _make_loop(provider)
        outcome = await loop.converge(_desc(), dependencies=["ns"])

        assert outcome.operation == Operation.CREATE
        assert outcome.attempts == 1
        assert outcome.outputs["id"] == f"{KIND}/cm"
        entry = state.get("cm")
        assert entry is not None
        assert entry.descriptor_hash == compute_descriptor_hash(KIND, _desc().properties)
        assert entry.dependencies == ["ns"]
        assert entry.outputs == outcome.outputs

    async def test_same_hash_makes_no_provider_call(self) -> None:
        provider = InMemoryProvider()
        loop, _, _ = _make_loop(provider)
        first = await loop.converge(_desc())
        second = await loop.converge(_desc())

        assert second.operation == Operation.SAME
        assert second.attempts == 0
        assert second.outputs == first.outputs
        assert provider.applied() == ["cm"]

    async def test_changed_property_updates_in_place(self) -> None:
        provider = InMemoryProvider()
        loop, state, _ = _make_loop(provider)
        await loop.converge(_desc())
        outcome = await loop.converge(_desc(data={"k": "changed"}))

        assert outcome.operation == Operation.UPDATE
        assert provider.applied() == ["cm", "cm"]
        assert provider.deleted() == []
        assert state.get("cm").properties["data"] == {"k": "changed"}

    async def test_replacement_deletes_then_applies(self) -> None:
        provider = InMemoryProvider(replace_on=["immutable"])
        loop, _, _ = _make_loop(provider)
        await loop.converge(_desc(immutable="a"))
        outcome = await loop.converge(_desc(immutable="b"))

        assert outcome.operation == Operation.REPLACE
        assert [c.operation for c in provider.calls] == ["apply", "delete", "apply"]
        assert provider.objects["cm"]["immutable"] == "b"

    async def test_kind_change_is_a_replacement(self) -> None:
        provider = InMemoryProvider()
        loop, state, _ = _make_loop(provider)
        await loop.converge(_desc())
        moved = ResourceDescriptor(name="cm", kind="test:core/v1:Secret", properties={"data": {"k": "v"}})
        outcome = await loop.converge(moved)

        assert outcome.operation == Operation.REPLACE
        assert state.get("cm").kind == "test:core/v1:Secret"

    def test_plan_has_no_side_effects(self) -> None:
        provider = InMemoryProvider()
        loop, state, _ = _make_loop(provider)
        assert loop.plan(_desc()) == Operation.CREATE
        assert provider.calls == []
        assert state.names() == []


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_transient_errors_are_retried_with_backoff(self) -> None:
        provider = InMemoryProvider(
            failures={"cm": [TransientProviderError("429"), TransientProviderError("503")]},
        )
        loop, _, sleeps = _make_loop(provider)
        outcome = await loop.converge(_desc())

        assert outcome.attempts == 3
        assert sleeps.delays == [1.0, 2.0]

    async def test_exhausted_retries_report_last_transient_error(self) -> None:
        errors = [TransientProviderError(f"timeout {i}") for i in range(5)]
        provider = InMemoryProvider(failures={"cm": errors})
        loop, state, sleeps = _make_loop(provider, max_attempts=3)

        with pytest.raises(ConvergenceError) as exc_info:
            await loop.converge(_desc())

        assert exc_info.value.attempts == 3
        assert exc_info.value.cause is errors[2]
        assert exc_info.value.operation == Operation.CREATE
        assert len(sleeps.delays) == 2
        assert state.get("cm") is None

    async def test_permanent_error_is_not_retried(self) -> None:
        provider = InMemoryProvider(failures={"cm": [reject("spec.replicas: must be >= 0")]})
        loop, _, sleeps = _make_loop(provider)

        with pytest.raises(ConvergenceError) as exc_info:
            await loop.converge(_desc())

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.cause, PermanentProviderError)
        assert sleeps.delays == []

    async def test_unclassified_exception_is_permanent(self) -> None:
        provider = InMemoryProvider(failures={"cm": [RuntimeError("adapter bug")]})
        loop, _, sleeps = _make_loop(provider)

        with pytest.raises(ConvergenceError) as exc_info:
            await loop.converge(_desc())

        assert isinstance(exc_info.value.cause, PermanentProviderError)
        assert "adapter bug" in str(exc_info.value.cause)
        assert sleeps.delays == []


# ---------------------------------------------------------------------------
# Rollback and delete
# ---------------------------------------------------------------------------


class TestRollbackAndDelete:
    async def test_failed_create_is_rolled_back_when_enabled(self) -> None:
        provider = InMemoryProvider(failures={"cm": [reject()]})
        loop, _, _ = _make_loop(provider, rollback=True)

        with pytest.raises(ConvergenceError) as exc_info:
            await loop.converge(_desc())

        assert exc_info.value.rolled_back is True
        assert provider.deleted() == ["cm"]

    async def test_failed_create_is_left_alone_by_default(self) -> None:
        provider = InMemoryProvider(failures={"cm": [reject()]})
        loop, _, _ = _make_loop(provider)

        with pytest.raises(ConvergenceError) as exc_info:
            await loop.converge(_desc())

        assert exc_info.value.rolled_back is False
        assert provider.deleted() == []

    async def test_delete_removes_state_entry(self) -> None:
        provider = InMemoryProvider()
        loop, state, _ = _make_loop(provider)
        await loop.converge(_desc())
        attempts = await loop.delete(_desc())

        assert attempts == 1
        assert state.get("cm") is None
        assert "cm" not in provider.objects

    async def test_delete_retries_transient_errors(self) -> None:
        provider = InMemoryProvider(delete_failures={"cm": [TransientProviderError("conflict")]})
        loop, _, sleeps = _make_loop(provider)
        await loop.converge(_desc())

        assert await loop.delete(_desc()) == 2
        assert sleeps.delays == [1.0]


# ---------------------------------------------------------------------------
# summarize
# ---------------------------------------------------------------------------


class TestSummarize:
    def _result(self, state: ResourceState) -> NodeResult:
        return NodeResult(name=str(state), kind=KIND, state=state)

    def test_all_succeeded(self) -> None:
        assert summarize([self._result(ResourceState.SUCCEEDED)] * 3) == RunStatus.SUCCEEDED

    def test_empty_run_succeeds(self) -> None:
        assert summarize([]) == RunStatus.SUCCEEDED

    def test_any_failure_fails(self) -> None:
        results = [self._result(ResourceState.SUCCEEDED), self._result(ResourceState.FAILED)]
        assert summarize(results) == RunStatus.FAILED

    def test_rolled_back_counts_as_failure(self) -> None:
        assert summarize([self._result(ResourceState.ROLLED_BACK)]) == RunStatus.FAILED

    def test_cancelled_without_failures(self) -> None:
        results = [self._result(ResourceState.SUCCEEDED), self._result(ResourceState.CANCELLED)]
        assert summarize(results) == RunStatus.CANCELLED

    def test_failure_wins_over_cancellation(self) -> None:
        results = [self._result(ResourceState.CANCELLED), self._result(ResourceState.FAILED)]
        assert summarize(results) == RunStatus.FAILED
