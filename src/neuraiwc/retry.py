"""
Bounded exponential backoff for chain RPC calls.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from neuraiwc.errors import RpcError

T = TypeVar("T")

MAX_JITTER = 0.5


def backoff_delay(attempt: int, base_delay: float) -> float:
    if base_delay <= 0:
        return 0.0
    return base_delay * (2**attempt) + random.uniform(0, min(MAX_JITTER, base_delay))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    max_attempts: int,
    base_delay: float,
    timeout: float | None = None,
) -> T:
    """
    Run an RPC operation, retrying transient failures.

    Transient means an RpcError flagged transient or a timeout of the
    operation itself. Anything else is raised on the first occurrence.
    After max_attempts the last failure is raised as an RpcError.
    """
    last_error: RpcError | None = None
    for attempt in range(max_attempts):
        try:
            if timeout is not None:
                return await asyncio.wait_for(operation(), timeout)
            return await operation()
        except RpcError as e:
            if not e.transient:
                logger.error(f"{description} failed: {e.message}")
                raise
            last_error = e
        except asyncio.TimeoutError:
            last_error = RpcError(f"{description} timed out after {timeout}s", transient=True)

        if attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                f"{description}: {last_error.message}, retrying in {delay:.2f}s "
                f"(attempt {attempt + 1}/{max_attempts})"
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    logger.error(f"{description} failed after {max_attempts} attempts")
    raise last_error
