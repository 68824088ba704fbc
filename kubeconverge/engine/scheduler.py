"""Event-driven DAG scheduler.

Dispatches a unit of work for a node the moment every one of its blockers
has completed successfully; independent subgraphs run concurrently as
separate asyncio tasks. The scheduler itself is the only writer of node
state: work coroutines return a result or raise, and every hook is invoked
from the scheduling coroutine, one node at a time.

The same scheduler drives apply (blockers = producers) and teardown
(blockers = consumers, so dependents are deleted first).
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import structlog

from kubeconverge.errors import EngineInvariantError

_log = structlog.get_logger(component="engine.scheduler")


class SchedulerHooks:
    """Terminal-state callbacks. Subclasses override what they record."""

    def on_start(self, name: str) -> None:
        pass

    def on_success(self, name: str, result: Any) -> None:
        pass

    def on_failure(self, name: str, error: BaseException) -> None:
        pass

    def on_skipped(self, name: str, caused_by: str) -> None:
        pass

    def on_cancelled(self, name: str) -> None:
        pass


class DagScheduler:
    """Run ``work(name)`` over a DAG, honouring blockers and a parallelism cap.

    Args:
        blockers: node -> nodes that must succeed before it may start.
        order: deterministic tie-break order (e.g. topological order).
        parallelism: maximum in-flight work items; 0 means unbounded.
    """

    def __init__(
        self,
        blockers: Mapping[str, Iterable[str]],
        order: Iterable[str] | None = None,
        parallelism: int = 0,
    ) -> None:
        self._order = list(order) if order is not None else list(blockers)
        self._index = {name: i for i, name in enumerate(self._order)}
        self._blockers = {name: set(blockers.get(name, ())) for name in self._order}
        self._dependents: dict[str, list[str]] = {name: [] for name in self._order}
        for name in self._order:
            for blocker in self._blockers[name]:
                self._dependents[blocker].append(name)
        self._parallelism = max(0, parallelism)
        self.max_in_flight = 0

    def downstream(self, name: str) -> list[str]:
        """Every node transitively blocked by *name*, in scheduling order."""
        seen: set[str] = set()
        queue = deque(self._dependents[name])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self._dependents[current])
        return sorted(seen, key=self._index.__getitem__)

    async def run(
        self,
        work: Callable[[str], Awaitable[Any]],
        hooks: SchedulerHooks,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> None:
        waiting = {name: len(b) for name, b in self._blockers.items()}
        ready = [name for name in self._order if waiting[name] == 0]
        terminal: set[str] = set()
        in_flight: dict[asyncio.Task[Any], str] = {}

        try:
            while True:
                if not is_cancelled():
                    while ready and (not self._parallelism or len(in_flight) < self._parallelism):
                        name = ready.pop(0)
                        hooks.on_start(name)
                        task = asyncio.create_task(work(name), name=f"kubeconverge:{name}")
                        in_flight[task] = name
                    self.max_in_flight = max(self.max_in_flight, len(in_flight))
                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: self._index[in_flight[t]]):
                    name = in_flight.pop(task)
                    terminal.add(name)
                    if task.cancelled():
                        hooks.on_cancelled(name)
                        continue
                    error = task.exception()
                    if error is None:
                        hooks.on_success(name, task.result())
                        for child in self._dependents[name]:
                            waiting[child] -= 1
                            if waiting[child] == 0 and child not in terminal:
                                ready.append(child)
                        continue
                    if isinstance(error, EngineInvariantError):
                        raise error
                    hooks.on_failure(name, error)
                    for child in self.downstream(name):
                        if child not in terminal:
                            terminal.add(child)
                            hooks.on_skipped(child, name)
                ready.sort(key=self._index.__getitem__)
        except BaseException:
            for task in in_flight:
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            raise

        leftover = [name for name in self._order if name not in terminal]
        if leftover:
            _log.info("scheduler_stopped_early", not_started=len(leftover))
        for name in leftover:
            hooks.on_cancelled(name)
