"""Deadline helper for whole verbs."""
from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)

# Default deadline for a single verb when --timeout is not given (0 disables)
DEFAULT_VERB_TIMEOUT = 0.0


async def with_timeout(coro, timeout: float | None, description: str = "operation"):
    """Wrap a coroutine with a timeout and a descriptive warning on failure.

    Args:
        coro: Awaitable coroutine
        timeout: Timeout in seconds; None or <= 0 waits indefinitely
        description: Human-readable description for log messages

    Returns:
        Result of the coroutine

    Raises:
        asyncio.TimeoutError: If the operation exceeds the timeout
    """
    if not timeout or timeout <= 0:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Timeout after {timeout}s: {description}")
        raise
