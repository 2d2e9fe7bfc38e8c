# File: src/lotsync/application/retry.py
"""
Timeout and retry helpers shared by the services

Store calls run under a timeout; an expired timeout surfaces as
TransientError. Transient failures may be retried with exponential backoff
(base_delay * 2 ** attempt).
"""

from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging

from ..domain.exceptions import TransientError

T = TypeVar('T')


async def with_timeout(awaitable: Awaitable[T], timeout: Optional[float], description: str) -> T:
    """Await ``awaitable``, converting an expired timeout into TransientError"""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise TransientError(f"Timed out after {timeout}s: {description}", cause=e)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    description: str,
    logger: Optional[logging.Logger] = None,
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` transient failures occurred"""
    logger = logger or logging.getLogger(__name__)
    for attempt in range(attempts):
        try:
            return await operation()
        except TransientError as e:
            if attempt >= attempts - 1:
                logger.error(f"Giving up on {description} after {attempts} attempts: {e}")
                raise
            delay = base_delay * (2 ** attempt)
            logger.warning(f"Attempt {attempt + 1} failed for {description}: {e}; retrying in {delay:.3f}s")
            await asyncio.sleep(delay)
    raise TransientError(f"No attempts made for {description}")
