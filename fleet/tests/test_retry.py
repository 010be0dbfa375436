from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from fleet.errors import CommandFailure, TransportFailure
from fleet.retry import RetryPolicy


def test_fixed_delay():
    policy = RetryPolicy(max_attempts=3, delay=2.0)
    assert [policy.delay_for(a) for a in policy.attempts()] == [2.0, 2.0, 2.0]


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, delay=1.0, backoff=2.0, max_delay=5.0)
    assert [policy.delay_for(a) for a in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_invalid_policy():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(delay=-1)


@pytest.mark.asyncio
async def test_run_retries_listed_errors_then_succeeds(sleeps):
    func = AsyncMock(side_effect=[TransportFailure("down"), TransportFailure("down"), "ok"])
    policy = RetryPolicy(max_attempts=3, delay=2.0, retry_on=(TransportFailure,))

    assert await policy.run(func) == "ok"
    assert func.await_count == 3
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_run_reraises_after_exhaustion(sleeps):
    func = AsyncMock(side_effect=TransportFailure("down"))
    policy = RetryPolicy(max_attempts=3, delay=1.0, retry_on=(TransportFailure,))

    with pytest.raises(TransportFailure):
        await policy.run(func)
    assert func.await_count == 3
    assert sleeps == [1.0, 1.0]


@pytest.mark.asyncio
async def test_run_does_not_retry_other_errors(sleeps):
    func = AsyncMock(side_effect=CommandFailure("exit 1"))
    policy = RetryPolicy(max_attempts=3, retry_on=(TransportFailure,))

    with pytest.raises(CommandFailure):
        await policy.run(func)
    assert func.await_count == 1
    assert sleeps == []
