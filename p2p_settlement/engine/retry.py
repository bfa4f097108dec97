"""
Exponential backoff retry logic for outbound calls.

Transient failures (connection errors, timeouts, 5xx from the bank) are
retried with exponential backoff up to a configurable bound. Everything else
(auth failures, failing response codes, validation errors) propagates on the
first attempt.
"""

import asyncio
import logging
from typing import Any, Callable, TypeVar

from p2p_settlement.exceptions import TransientNetworkError

logger = logging.getLogger("p2p_settlement.retry")

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 30.0


def backoff_delay(attempt: int, base: float = BASE_DELAY, cap: float = MAX_DELAY) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base, ..."""
    return min(base * (2 ** max(attempt - 1, 0)), cap)


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function, retrying on TransientNetworkError.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts after the first call.
        base_delay: Delay before the first retry; doubled on each retry.

    Returns:
        The result of the function call.

    Raises:
        TransientNetworkError: When retries are exhausted.
    """
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except TransientNetworkError as e:
            if attempt >= max_retries:
                logger.error("Exhausted %d retries for %s: %s", max_retries, _name(func), e)
                raise

            sleep_for = backoff_delay(attempt + 1, base_delay)
            logger.warning(
                "Transient error on attempt %d/%d for %s: %s, sleeping %.1fs",
                attempt + 1,
                max_retries + 1,
                _name(func),
                e,
                sleep_for,
            )
            await asyncio.sleep(sleep_for)

    raise TransientNetworkError("Unknown error after retries")


def _name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", repr(func))
