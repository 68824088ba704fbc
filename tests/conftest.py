"""Fixtures shared by unit and integration tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo any ``setup_logging`` call (the CLI makes one per invocation)."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
