"""Deterministic in-process adapter.

Keeps "remote" objects in a dict. Used for dry runs and as the synthetic
adapter in tests: per-resource delays, scripted failures and status
overlays make ordering, retry and failure-propagation behaviour observable.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import structlog

from kubeconverge.errors import PermanentProviderError
from kubeconverge.models.resources import ResourceDescriptor
from kubeconverge.providers.base import ProviderAdapter

_log = structlog.get_logger(component="providers.memory")


@dataclass(frozen=True)
class CallRecord:
    operation: str  # "apply" | "delete"
    name: str
    started: float
    finished: float
    properties: dict[str, Any]


class InMemoryProvider(ProviderAdapter):
    """Adapter backed by a dict of objects.

    Args:
        delays:         name -> seconds to sleep inside apply/delete.
        failures:       name -> exceptions raised by successive apply calls,
                        consumed one per attempt; once exhausted apply succeeds.
        delete_failures: same as *failures*, for delete.
        status:         name -> dict merged into the returned attributes
                        (simulates server-populated fields such as an
                        assigned load-balancer address).
        replace_on:     property keys whose change forces replacement.
    """

    def __init__(
        self,
        delays: dict[str, float] | None = None,
        failures: dict[str, list[Exception]] | None = None,
        delete_failures: dict[str, list[Exception]] | None = None,
        status: dict[str, dict[str, Any]] | None = None,
        replace_on: Iterable[str] = (),
    ) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[CallRecord] = []
        self._delays = dict(delays or {})
        self._failures = {k: list(v) for k, v in (failures or {}).items()}
        self._delete_failures = {k: list(v) for k, v in (delete_failures or {}).items()}
        self._status = dict(status or {})
        self._replace_on = frozenset(replace_on)
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def provider_name(self) -> str:
        return "memory"

    def applied(self) -> list[str]:
        return [c.name for c in self.calls if c.operation == "apply"]

    def deleted(self) -> list[str]:
        return [c.name for c in self.calls if c.operation == "delete"]

    def call(self, operation: str, name: str) -> CallRecord:
        """Return the last call record for (operation, name)."""
        for record in reversed(self.calls):
            if record.operation == operation and record.name == name:
                return record
        raise KeyError((operation, name))

    async def apply(self, descriptor: ResourceDescriptor, previous: dict[str, Any] | None = None) -> dict[str, Any]:
        started = time.monotonic()
        try:
            await self._enter(descriptor.name)
            pending = self._failures.get(descriptor.name)
            if pending:
                raise pending.pop(0)
            attrs = copy.deepcopy(descriptor.properties)
            attrs.setdefault("id", f"{descriptor.kind}/{descriptor.name}")
            overlay = self._status.get(descriptor.name)
            if overlay:
                attrs.update(copy.deepcopy(overlay))
            self.objects[descriptor.name] = attrs
            _log.debug("memory_apply", resource=descriptor.name, kind=descriptor.kind, update=previous is not None)
            return copy.deepcopy(attrs)
        finally:
            self._exit()
            self.calls.append(
                CallRecord("apply", descriptor.name, started, time.monotonic(), copy.deepcopy(descriptor.properties))
            )

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        started = time.monotonic()
        try:
            await self._enter(descriptor.name)
            pending = self._delete_failures.get(descriptor.name)
            if pending:
                raise pending.pop(0)
            self.objects.pop(descriptor.name, None)
        finally:
            self._exit()
            self.calls.append(CallRecord("delete", descriptor.name, started, time.monotonic(), {}))

    def requires_replacement(self, old: dict[str, Any], new: dict[str, Any]) -> bool:
        return any(old.get(k) != new.get(k) for k in self._replace_on)

    async def _enter(self, name: str) -> None:
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        delay = self._delays.get(name, 0.0)
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)

    def _exit(self) -> None:
        self._in_flight -= 1


def reject(message: str = "invalid specification") -> PermanentProviderError:
    """Convenience for scripting a permanent failure."""
    return PermanentProviderError(message, status_code=422)
