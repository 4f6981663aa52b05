"""Task-local execution context for one unit of work.

Every asyncio task gets its own copy of the context variable, so parallel
siblings never observe each other's unit name, workspace or attempt.
"""

from __future__ import annotations

import contextvars
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

_current_unit: contextvars.ContextVar[UnitContext | None] = contextvars.ContextVar(
    "current_unit",
    default=None,
)


@dataclass(slots=True, frozen=True)
class UnitContext:
    session_id: str
    unit: str
    workspace: Path
    web_url: str = ""
    attempt: int = 1


@contextmanager
def unit_context(context: UnitContext) -> Iterator[UnitContext]:
    """Bind `context` for the duration of one unit execution."""

    token = _current_unit.set(context)
    try:
        yield context
    finally:
        _current_unit.reset(token)


def current_unit_context() -> UnitContext | None:
    return _current_unit.get()


def set_attempt(attempt: int) -> None:
    """Record the attempt number on the currently bound context, if any."""

    context = _current_unit.get()
    if context is not None:
        _current_unit.set(replace(context, attempt=attempt))


class UnitContextFilter(logging.Filter):
    """Attach `unit` and `attempt` attributes to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _current_unit.get()
        record.unit = context.unit if context is not None else "-"
        record.attempt = context.attempt if context is not None else 0
        return True
