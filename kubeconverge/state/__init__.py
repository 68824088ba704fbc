"""Persisted state for idempotent re-apply.

Submodules:
    hashing -- Canonical content hash of a resolved descriptor.
    store   -- StateEntry plus in-memory and JSON-file stores.
"""

from kubeconverge.state.hashing import compute_descriptor_hash
from kubeconverge.state.store import (
    JsonFileStateStore,
    MemoryStateStore,
    StateEntry,
    StateFormatError,
    StateStore,
)

__all__ = [
    "JsonFileStateStore",
    "MemoryStateStore",
    "StateEntry",
    "StateFormatError",
    "StateStore",
    "compute_descriptor_hash",
]
