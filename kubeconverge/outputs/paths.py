"""Dotted field paths over provider attribute trees.

``status.loadBalancer.ingress[0].ip`` -> ["status", "loadBalancer", "ingress", 0, "ip"]
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

from kubeconverge.models.resources import MISSING

_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]|(\.)")


@lru_cache(maxsize=512)
def parse_path(path: str) -> tuple[str | int, ...]:
    if not path:
        return ()
    parts: list[str | int] = []
    pos = 0
    expect_key = True
    while pos < len(path):
        match = _TOKEN.match(path, pos)
        if match is None:
            raise ValueError(f"Invalid field path: {path!r}")
        key, index, dot = match.groups()
        if key is not None:
            if not expect_key:
                raise ValueError(f"Invalid field path: {path!r}")
            parts.append(key)
            expect_key = False
        elif index is not None:
            parts.append(int(index))
            expect_key = False
        elif dot is not None:
            if expect_key:
                raise ValueError(f"Invalid field path: {path!r}")
            expect_key = True
        pos = match.end()
    if expect_key:
        raise ValueError(f"Invalid field path: {path!r}")
    return tuple(parts)


def get_path(data: Any, path: str) -> Any:
    """Return the value at *path*, or MISSING when absent or null."""
    current = data
    for part in parse_path(path):
        if isinstance(part, int):
            if not isinstance(current, (list, tuple)) or part >= len(current):
                return MISSING
            current = current[part]
        else:
            if not isinstance(current, dict) or part not in current:
                return MISSING
            current = current[part]
        if current is None:
            return MISSING
    return current
