"""Single-assignment, push-based output cells.

An OutputCell stands for a resource attribute that is unknown until the
resource is provisioned. It moves at most once from ``unresolved`` to either
``resolved`` or ``failed``. Consumers chain pure transformations with
``map``; each transformation runs exactly once, after the source settles,
and produces a derived cell. Failures flow down the chain unchanged: a
transformation chained off a failed cell never runs and its derived cell
fails with the same error object.

Callbacks are dispatched through the running event loop (``call_soon``) so
that registering on an already-settled cell still runs the transformation
asynchronously relative to the caller. Without a running loop they run
inline. Transformations must not call back into the engine.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from kubeconverge.errors import DoubleResolutionError, MissingOutputError, UnresolvedOutputError
from kubeconverge.models.resources import MISSING
from kubeconverge.outputs.paths import get_path

Callback = Callable[["OutputCell"], None]


class CellState(StrEnum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    FAILED = "failed"


def _schedule(fn: Callback, cell: OutputCell) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        fn(cell)
        return
    loop.call_soon(fn, cell)


class OutputCell:
    def __init__(self, label: str = "") -> None:
        self.label = label
        self._state = CellState.UNRESOLVED
        self._value: Any = None
        self._error: BaseException | None = None
        self._callbacks: list[Callback] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, value: Any, label: str = "") -> OutputCell:
        cell = cls(label)
        cell.resolve(value)
        return cell

    @classmethod
    def failed_with(cls, error: BaseException, label: str = "") -> OutputCell:
        cell = cls(label)
        cell.fail(error)
        return cell

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CellState:
        return self._state

    @property
    def is_resolved(self) -> bool:
        return self._state == CellState.RESOLVED

    @property
    def is_failed(self) -> bool:
        return self._state == CellState.FAILED

    @property
    def done(self) -> bool:
        return self._state != CellState.UNRESOLVED

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def value(self) -> Any:
        """The resolved value. Raises the failure, or UnresolvedOutputError."""
        if self._state == CellState.RESOLVED:
            return self._value
        if self._state == CellState.FAILED:
            assert self._error is not None
            raise self._error
        raise UnresolvedOutputError(self.label)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def resolve(self, value: Any) -> None:
        self._settle(CellState.RESOLVED, value, None)

    def fail(self, error: BaseException) -> None:
        self._settle(CellState.FAILED, None, error)

    def _settle(self, state: CellState, value: Any, error: BaseException | None) -> None:
        with self._lock:
            if self._state != CellState.UNRESOLVED:
                raise DoubleResolutionError(self.label, self._state.value)
            self._state = state
            self._value = value
            self._error = error
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            _schedule(cb, self)

    def add_done_callback(self, fn: Callback) -> None:
        """Run *fn(cell)* once the cell settles (immediately scheduled if it has)."""
        with self._lock:
            if self._state == CellState.UNRESOLVED:
                self._callbacks.append(fn)
                return
        _schedule(fn, self)

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def map(self, transform: Callable[[Any], Any], label: str | None = None) -> OutputCell:
        """Return a derived cell holding ``transform(value)``.

        If *transform* returns another OutputCell, the derived cell follows it.
        """
        derived = OutputCell(label or f"{self.label}.map")

        def _on_done(source: OutputCell) -> None:
            if source._state == CellState.FAILED:
                assert source._error is not None
                derived.fail(source._error)
                return
            try:
                result = transform(source._value)
            except Exception as exc:
                derived.fail(exc)
                return
            if isinstance(result, OutputCell):
                result.add_done_callback(derived._copy_from)
            else:
                derived.resolve(result)

        self.add_done_callback(_on_done)
        return derived

    def _copy_from(self, source: OutputCell) -> None:
        if source._state == CellState.FAILED:
            assert source._error is not None
            self.fail(source._error)
        else:
            self.resolve(source._value)

    def field(self, path: str, default: Any = MISSING) -> OutputCell:
        """Derived cell for one field of a mapping-valued cell."""
        owner = self.label

        def _lookup(data: Any) -> Any:
            found = get_path(data, path)
            if found is MISSING:
                if default is not MISSING:
                    return default
                raise MissingOutputError(owner, path)
            return found

        return self.map(_lookup, label=f"{owner}.{path}" if path else owner)

    # ------------------------------------------------------------------
    # Awaiting
    # ------------------------------------------------------------------

    async def wait(self) -> Any:
        """Suspend until the cell settles; return the value or raise the failure."""
        if self._state != CellState.UNRESOLVED:
            return self.value
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Any] = loop.create_future()

        def _transfer(cell: OutputCell) -> None:
            if fut.done():
                return
            if cell._state == CellState.FAILED:
                assert cell._error is not None
                fut.set_exception(cell._error)
            else:
                fut.set_result(cell._value)

        self.add_done_callback(lambda cell: loop.call_soon_threadsafe(_transfer, cell))
        return await fut

    def __await__(self):  # type: ignore[no-untyped-def]
        return self.wait().__await__()

    def __repr__(self) -> str:
        if self._state == CellState.RESOLVED:
            return f"OutputCell({self.label!r}, resolved={self._value!r})"
        if self._state == CellState.FAILED:
            return f"OutputCell({self.label!r}, failed={self._error!r})"
        return f"OutputCell({self.label!r}, unresolved)"


def gather(*cells: OutputCell, label: str = "gather") -> OutputCell:
    """Cell resolving to the list of all values; fails with the first failure."""
    combined = OutputCell(label)
    if not cells:
        combined.resolve([])
        return combined
    remaining = [len(cells)]
    lock = threading.Lock()

    def _on_done(_cell: OutputCell) -> None:
        with lock:
            if combined.done:
                return
            if _cell.is_failed:
                assert _cell.error is not None
                combined.fail(_cell.error)
                return
            remaining[0] -= 1
            if remaining[0] == 0:
                combined.resolve([c.value for c in cells])

    for cell in cells:
        cell.add_done_callback(_on_done)
    return combined
