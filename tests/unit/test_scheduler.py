"""Unit tests for the event-driven DAG scheduler."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import pytest

from kubeconverge.engine.scheduler import DagScheduler, SchedulerHooks
from kubeconverge.errors import DoubleResolutionError


class _Recorder(SchedulerHooks):
    def __init__(self) -> None:
        self.started: list[str] = []
        self.succeeded: dict[str, Any] = {}
        self.failed: dict[str, BaseException] = {}
        self.skipped: dict[str, str] = {}
        self.cancelled: list[str] = []

    def on_start(self, name: str) -> None:
        self.started.append(name)

    def on_success(self, name: str, result: Any) -> None:
        self.succeeded[name] = result

    def on_failure(self, name: str, error: BaseException) -> None:
        self.failed[name] = error

    def on_skipped(self, name: str, caused_by: str) -> None:
        self.skipped[name] = caused_by

    def on_cancelled(self, name: str) -> None:
        self.cancelled.append(name)


class _TimedWork:
    """Sleeps per node and records (start, end) monotonic times."""

    def __init__(self, delays: dict[str, float] | None = None, fail: set[str] | None = None) -> None:
        self.delays = delays or {}
        self.fail = fail or set()
        self.spans: dict[str, tuple[float, float]] = {}

    async def __call__(self, name: str) -> str:
        start = time.monotonic()
        await asyncio.sleep(self.delays.get(name, 0.0))
        self.spans[name] = (start, time.monotonic())
        if name in self.fail:
            raise RuntimeError(f"{name} failed")
        return f"{name}-done"


DIAMOND = {"top": [], "left": ["top"], "right": ["top"], "bottom": ["left", "right"]}


# ---------------------------------------------------------------------------
# Ordering and concurrency
# ---------------------------------------------------------------------------


class TestOrdering:
    async def test_node_starts_only_after_all_blockers_finish(self) -> None:
        work = _TimedWork({"top": 0.02, "left": 0.05, "right": 0.01, "bottom": 0.0})
        hooks = _Recorder()
        await DagScheduler(DIAMOND, order=list(DIAMOND)).run(work, hooks)

        assert set(hooks.succeeded) == set(DIAMOND)
        for node, blockers in DIAMOND.items():
            for blocker in blockers:
                assert work.spans[blocker][1] <= work.spans[node][0]

    async def test_independent_nodes_run_concurrently(self) -> None:
        blockers = {f"n{i}": [] for i in range(5)}
        work = _TimedWork({name: 0.05 for name in blockers})
        scheduler = DagScheduler(blockers)
        await scheduler.run(work, _Recorder())

        assert scheduler.max_in_flight == 5

    async def test_unblocked_node_is_not_held_back_by_unrelated_slow_node(self) -> None:
        blockers = {"slow": [], "fast": [], "after-fast": ["fast"]}
        work = _TimedWork({"slow": 0.2, "fast": 0.01, "after-fast": 0.0})
        await DagScheduler(blockers).run(work, _Recorder())

        assert work.spans["after-fast"][1] < work.spans["slow"][1]

    async def test_parallelism_cap(self) -> None:
        blockers = {f"n{i}": [] for i in range(6)}
        work = _TimedWork({name: 0.02 for name in blockers})
        scheduler = DagScheduler(blockers, parallelism=2)
        hooks = _Recorder()
        await scheduler.run(work, hooks)

        assert scheduler.max_in_flight == 2
        assert len(hooks.succeeded) == 6

    async def test_results_reach_success_hook(self) -> None:
        hooks = _Recorder()
        await DagScheduler({"a": []}).run(_TimedWork(), hooks)
        assert hooks.succeeded == {"a": "a-done"}


# ---------------------------------------------------------------------------
# Failure propagation
# ---------------------------------------------------------------------------


class TestFailurePropagation:
    async def test_descendants_skipped_with_root_cause(self) -> None:
        blockers = {"n": [], "d": ["n"], "s": ["d"], "r": ["s", "n"], "other": []}
        work = _TimedWork(fail={"d"})
        hooks = _Recorder()
        await DagScheduler(blockers).run(work, hooks)

        assert set(hooks.failed) == {"d"}
        assert hooks.skipped == {"s": "d", "r": "d"}
        assert set(hooks.succeeded) == {"n", "other"}
        assert "s" not in work.spans
        assert "r" not in work.spans

    async def test_skipped_node_never_starts(self) -> None:
        hooks = _Recorder()
        await DagScheduler({"a": [], "b": ["a"]}).run(_TimedWork(fail={"a"}), hooks)
        assert hooks.started == ["a"]

    async def test_invariant_violation_is_fatal(self) -> None:
        async def _work(name: str) -> None:
            if name == "bad":
                raise DoubleResolutionError("bad", "resolved")
            await asyncio.sleep(0.5)

        with pytest.raises(DoubleResolutionError):
            await DagScheduler({"bad": [], "slow": []}).run(_work, _Recorder())


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_cooperative_cancel_marks_unstarted_nodes_cancelled(self) -> None:
        flag = {"cancelled": False}
        hooks = _Recorder()

        async def _work(name: str) -> str:
            await asyncio.sleep(0.01)
            if name == "a":
                flag["cancelled"] = True
            return name

        blockers = {"a": [], "b": ["a"], "c": ["b"]}
        await DagScheduler(blockers).run(_work, hooks, is_cancelled=lambda: flag["cancelled"])

        assert set(hooks.succeeded) == {"a"}
        assert hooks.cancelled == ["b", "c"]

    async def test_in_flight_work_completes_after_cancel(self) -> None:
        flag = {"cancelled": False}
        hooks = _Recorder()

        async def _work(name: str) -> str:
            if name == "quick":
                flag["cancelled"] = True
                return name
            await asyncio.sleep(0.05)
            return name

        blockers = {"quick": [], "long": [], "after-long": ["long"]}
        await DagScheduler(blockers).run(_work, hooks, is_cancelled=lambda: flag["cancelled"])

        assert set(hooks.succeeded) == {"quick", "long"}
        assert hooks.cancelled == ["after-long"]

    async def test_external_cancellation_cancels_in_flight_tasks(self) -> None:
        started = asyncio.Event()
        finished: list[str] = []

        async def _work(name: str) -> None:
            started.set()
            await asyncio.sleep(10)
            finished.append(name)

        task = asyncio.create_task(DagScheduler({"a": [], "b": []}).run(_work, _Recorder()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert finished == []
