"""Persisted per-resource state for idempotent re-apply.

Keyed by logical resource name. Each entry records the hash of the
last-applied (resolved) descriptor, the resolved properties themselves (so
that orphans can be deleted without their declaration), the last observed
outputs, and the dependencies the resource had when applied.
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from kubeconverge.errors import EngineError

_log = structlog.get_logger(component="state.store")

STATE_VERSION = 1


class StateFormatError(EngineError):
    """The persisted state document cannot be read."""


@dataclass
class StateEntry:
    kind: str
    descriptor_hash: str
    properties: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=lambda: datetime.now(tz=UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateEntry:
        try:
            return cls(
                kind=str(data["kind"]),
                descriptor_hash=str(data["descriptor_hash"]),
                properties=dict(data.get("properties") or {}),
                outputs=dict(data.get("outputs") or {}),
                dependencies=list(data.get("dependencies") or []),
                updated_at=str(data.get("updated_at", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateFormatError(f"Invalid state entry: {exc}") from exc


class StateStore(ABC):
    """Read/write access to the last-applied state, keyed by logical name."""

    def __init__(self) -> None:
        self._entries: dict[str, StateEntry] = {}
        self._exports: dict[str, Any] = {}
        self.stack: str = ""

    def get(self, name: str) -> StateEntry | None:
        return self._entries.get(name)

    def put(self, name: str, entry: StateEntry) -> None:
        self._entries[name] = entry
        self.save()

    def remove(self, name: str) -> None:
        if self._entries.pop(name, None) is not None:
            self.save()

    def names(self) -> list[str]:
        return list(self._entries)

    def entries(self) -> dict[str, StateEntry]:
        return dict(self._entries)

    def exports(self) -> dict[str, Any]:
        return dict(self._exports)

    def set_exports(self, exports: dict[str, Any]) -> None:
        self._exports = dict(exports)
        self.save()

    # Used from the engine: same mutations, but persisted without blocking the loop.

    async def put_async(self, name: str, entry: StateEntry) -> None:
        self._entries[name] = entry
        await self.persist()

    async def remove_async(self, name: str) -> None:
        if self._entries.pop(name, None) is not None:
            await self.persist()

    async def set_exports_async(self, exports: dict[str, Any]) -> None:
        self._exports = dict(exports)
        await self.persist()

    async def persist(self) -> None:
        self.save()

    @abstractmethod
    def load(self) -> None:
        """(Re)read persisted state into memory."""

    @abstractmethod
    def save(self) -> None:
        """Persist the in-memory state."""


class MemoryStateStore(StateStore):
    """Process-local store; state lives as long as the object."""

    def load(self) -> None:
        return None

    def save(self) -> None:
        return None


class JsonFileStateStore(StateStore):
    """Single JSON document on disk, replaced atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

    def load(self) -> None:
        if not self.path.exists():
            self._entries = {}
            self._exports = {}
            return
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateFormatError(f"State file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(doc, dict) or doc.get("version") != STATE_VERSION:
            raise StateFormatError(f"Unsupported state file version in {self.path}")
        self.stack = str(doc.get("stack", ""))
        self._entries = {name: StateEntry.from_dict(data) for name, data in (doc.get("resources") or {}).items()}
        self._exports = dict(doc.get("exports") or {})
        _log.debug("state_loaded", path=str(self.path), resources=len(self._entries))

    def save(self) -> None:
        self._write(self._document())

    async def persist(self) -> None:
        # Snapshot on the loop thread; writes land in the order they were requested.
        doc = self._document()
        async with self._write_lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write, doc)

    def _document(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "stack": self.stack,
            "resources": {name: entry.to_dict() for name, entry in self._entries.items()},
            "exports": copy.deepcopy(self._exports),
        }

    def _write(self, doc: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(doc, fh, indent=2, sort_keys=True, default=str)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
