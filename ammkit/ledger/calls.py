"""Timeout and retry wrappers applied to every ledger call."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.errors import TransportError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout: float, **context: Any) -> T:
    """Await a ledger call, converting a timeout into ``TransportError``."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise TransportError("Ledger call timed out", timeout=timeout, **context) from e


async def call_ledger(
    fn: Callable[[], Awaitable[T]],
    *,
    op: str,
    timeout: float,
    attempts: int,
    wait: float,
    **context: Any,
) -> T:
    """Run a ledger call with a timeout, retrying transport failures.

    Args:
        fn: Zero-argument factory producing the call's awaitable
        op: Operation name for logging
        timeout: Per-attempt timeout in seconds
        attempts: Maximum attempts (including the first)
        wait: Exponential backoff multiplier in seconds

    Returns:
        The call's result

    Raises:
        TransportError: When every attempt failed
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=wait, max=10),
        retry=retry_if_exception_type(TransportError),
        reraise=True,
        before_sleep=lambda state: logger.warning(
            "Retrying ledger call",
            op=op,
            attempt=state.attempt_number,
            error=str(state.outcome.exception()),
            **context,
        ),
    )
    return await retrying(lambda: with_timeout(fn(), timeout, op=op, **context))
