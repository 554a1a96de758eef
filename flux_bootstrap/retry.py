"""Retry an async operation with exponential backoff until the deadline."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass
from typing import TypeVar

from .context import remaining

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Backoff",
    "retry",
]

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class Backoff:
    """Exponential delay between attempts."""

    initial: float = 1.0
    """Delay in seconds before the second attempt."""

    maximum: float = 30.0
    """Upper bound on the delay between attempts."""

    factor: float = 2.0
    """Multiplier applied to the delay after each failed attempt."""

    def delays(self) -> Generator[float, None, None]:
        delay = self.initial
        while True:
            yield delay
            delay = min(delay * self.factor, self.maximum)


async def retry(
    func: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[Exception], ...],
    backoff: Backoff | None = None,
    max_attempts: int | None = None,
) -> T:
    """Call `func` until it succeeds or fails with a non-retryable error.

    Attempts stop when the operation deadline would pass during the next
    delay or after `max_attempts`; the last error is then raised. Without a
    deadline at most DEFAULT_MAX_ATTEMPTS attempts are made.
    """
    backoff = backoff or Backoff()
    if max_attempts is None and remaining() is None:
        max_attempts = DEFAULT_MAX_ATTEMPTS
    attempt = 0
    for delay in backoff.delays():
        attempt += 1
        try:
            return await func()
        except retry_on as err:
            if max_attempts is not None and attempt >= max_attempts:
                raise
            left = remaining()
            if left is not None and left <= delay:
                _LOGGER.debug("No time left to retry after attempt %s", attempt)
                raise
            _LOGGER.info(
                "Attempt %s failed, retrying in %0.1fs: %s", attempt, delay, err
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
