"""
Centralized async retry utility for transient failures.

Retry policy:
- Exponential backoff with jitter (±20%)
- Only transient infra errors are retried; domain and validation errors are raised immediately
- Preserves original exception on final failure
- No logging inside utility (caller handles logging)

Used for startup I/O only (pool creation). The webhook path never retries:
TRANSIENT_EXCEPTIONS there decides which failures are answered with HTTP 500
so the provider redelivers.
"""

import asyncio
import inspect
import random
from typing import Any, Callable, Tuple, Type

import aiohttp
import asyncpg

DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0

# Postgres errors that go away on their own; data and schema errors do not
TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InsufficientResourcesError,  # too many connections, disk full
    asyncpg.exceptions.OperatorInterventionError,  # shutdown, cannot connect now, statement timeout
    asyncpg.exceptions.TransactionRollbackError,  # deadlock, serialization failure
    asyncpg.InterfaceError,  # pool closed, connection lost mid-query
    asyncio.TimeoutError,
    aiohttp.ClientError,
    ConnectionError,
    OSError,
)


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY) -> float:
    """Delay before retry number attempt+1: base * 2^attempt, capped, with jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Call fn until it succeeds or retries are exhausted.

    Args:
        fn: Zero-argument callable returning a value or an awaitable
            (asyncpg.create_pool returns an awaitable Pool, not a coroutine)
        retries: Retry attempts after the first call (total attempts: retries + 1)
        base_delay: Base delay in seconds for exponential backoff
        max_delay: Maximum delay in seconds
        retry_on: Exception types that are retried

    Returns:
        Result of the successful call

    Raises:
        The last exception once retries are exhausted; non-retryable exceptions immediately
    """
    for attempt in range(retries + 1):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except retry_on:
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))
    raise RuntimeError("retry_async: retries must be >= 0")
