"""Retry utilities with exponential backoff for deferred exclusion recomputes.

A deferred recompute that fails on a transient database condition (lost
connection, pool timeout, lock timeout) is retried with backoff before it is
left to the reconciliation sweep. Anything else fails immediately.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import exc as sa_exc

from app.core.errors import ComputationFailure, QueryTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # Initial delay in seconds
    max_delay: float = 30.0  # Maximum delay between retries
    exponential_base: float = 2.0  # Multiplier for exponential backoff
    jitter: float = 0.1  # Random jitter factor (0.1 = +/- 10%)
    retryable_exceptions: tuple = field(
        default_factory=lambda: (
            sa_exc.OperationalError,
            sa_exc.TimeoutError,
            QueryTimeoutError,
            ConnectionError,
            asyncio.TimeoutError,
        )
    )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter."""
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    # Jitter keeps many users' deferred recomputes from retrying in lockstep
    jitter_range = delay * config.jitter
    delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


def is_retryable_exception(exc: BaseException, config: RetryConfig) -> bool:
    """Check if an exception should trigger a retry.

    ComputationFailure is judged by its underlying cause: a rolled-back
    recompute is safe to repeat, but only a transient cause makes it useful.
    """
    if isinstance(exc, ComputationFailure):
        return is_retryable_exception(exc.cause, config)

    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True

    return isinstance(exc, config.retryable_exceptions)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: RetryConfig | None = None,
    **kwargs,
) -> T:
    """
    Retry an async function call with exponential backoff.

    Usage:
        result = await retry_async(service.recompute_for_user, user_id, config=RetryConfig(max_attempts=5))
    """
    if config is None:
        config = RetryConfig()

    last_exception: BaseException | None = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not is_retryable_exception(e, config):
                raise

            if attempt < config.max_attempts - 1:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"Retry {attempt + 1}/{config.max_attempts} for {name} "
                    f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"All {config.max_attempts} attempts failed for {name}: {e}")

    raise last_exception
