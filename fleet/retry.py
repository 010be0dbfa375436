"""Retry policy shared by every retrying operation.

A policy answers three questions: how many attempts, how long to wait
between them, and which exceptions are worth another attempt. Loops that
retry on an observed condition rather than an exception (zombie stop,
force-kill verification, fleet force-convergence) use ``attempts()`` and
``delay_for()`` from the same object.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with fixed or exponential delay.

    Attributes:
        max_attempts: Total attempts including the first one
        delay: Seconds to wait after the first failed attempt
        backoff: Multiplier applied to the delay per further attempt (1.0 = fixed)
        max_delay: Upper bound for the computed delay
        retry_on: Exception types that trigger another attempt
    """
    max_attempts: int = 3
    delay: float = 2.0
    backoff: float = 1.0
    max_delay: float | None = None
    retry_on: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers 1..max_attempts."""
        return iter(range(1, self.max_attempts + 1))

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        value = self.delay * (self.backoff ** max(attempt - 1, 0))
        if self.max_delay is not None:
            value = min(value, self.max_delay)
        return value

    def should_retry(self, exc: BaseException) -> bool:
        return bool(self.retry_on) and isinstance(exc, self.retry_on)

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
    ) -> T:
        """Await ``func()`` until it succeeds, retrying only ``retry_on`` errors.

        Raises:
            The last exception once attempts are exhausted, or immediately
            for exceptions outside ``retry_on``.
        """
        for attempt in self.attempts():
            try:
                return await func()
            except Exception as e:
                if not self.should_retry(e) or attempt >= self.max_attempts:
                    if self.should_retry(e):
                        logger.error(f"{description} failed after {self.max_attempts} attempts: {e}")
                    raise
                wait = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {wait:.1f}s: {e}"
                )
                await asyncio.sleep(wait)
        raise AssertionError("unreachable")  # pragma: no cover
