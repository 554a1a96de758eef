"""Utilities for context tracing and operation deadlines."""

import contextvars
from contextlib import contextmanager
import logging
from time import monotonic, perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

__all__ = [
    "trace_context",
    "deadline_context",
    "remaining",
]


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")
deadline: contextvars.ContextVar[float | None] = contextvars.ContextVar(
    "deadline", default=None
)


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))


@contextmanager
def deadline_context(timeout: float) -> Generator[None, None, None]:
    """Publish the deadline of the current operation to nested calls.

    An enclosing deadline that expires earlier is kept.
    """
    value = monotonic() + timeout
    if (current := deadline.get()) is not None:
        value = min(value, current)
    token = deadline.set(value)
    try:
        yield
    finally:
        deadline.reset(token)


def remaining() -> float | None:
    """Return the seconds left before the operation deadline, if any."""
    if (value := deadline.get()) is None:
        return None
    return max(0.0, value - monotonic())
