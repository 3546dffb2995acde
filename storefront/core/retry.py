"""
Retry utilities for transient store failures.

Every attempt opens a fresh session and a fresh transaction, so a unit of
work is either applied once in full or not at all.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import STORE_RETRY_ATTEMPTS
from storefront.core.errors import StoreError

logger = logging.getLogger("storefront.retry")


class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (OperationalError,)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay


STORE_RETRY_CONFIG = RetryConfig(max_attempts=STORE_RETRY_ATTEMPTS)


async def run_in_transaction(
    session_factory: async_sessionmaker,
    fn: Callable[[AsyncSession], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
) -> Any:
    """Run ``fn(session)`` inside one transaction, retrying transient store errors."""
    config = config or STORE_RETRY_CONFIG
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await fn(session)
        except config.retryable_exceptions as e:
            last_exception = e
            if attempt == config.max_attempts:
                logger.error(f"Store unavailable after {attempt} attempts in {getattr(fn, '__name__', fn)}: {e}")
                break
            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {getattr(fn, '__name__', fn)}: {e}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    raise StoreError("Storage is temporarily unavailable, please retry") from last_exception
