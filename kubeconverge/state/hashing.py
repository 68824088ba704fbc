"""Content hashing for last-applied descriptors."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def compute_descriptor_hash(kind: str, properties: dict[str, Any]) -> str:
    """SHA-256 over canonical JSON of ``kind`` and fully resolved properties.

    Key order does not affect the result. Hashing resolved (not declared)
    properties means a changed upstream output also changes the hash of
    every consumer that reads it.
    """
    payload = {"kind": kind, "properties": properties}
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
