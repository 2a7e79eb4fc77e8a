from __future__ import annotations

import asyncio
import errno
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

_TRANSIENT_ERRNOS = {errno.ETIMEDOUT, errno.ENETUNREACH, errno.EHOSTUNREACH}


def is_transient_network_error(exc: Optional[BaseException]) -> bool:
    """
    Timeouts, unreachable networks and generic "fetch failed" errors,
    looked up along the exception's cause/context chain.
    """
    seen = set()
    current = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException, httpx.ConnectError)):
            return True
        if isinstance(current, OSError) and current.errno in _TRANSIENT_ERRNOS:
            return True
        if "fetch failed" in str(current).lower():
            return True
        current = current.__cause__ or current.__context__
    return False


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    delay: float = 1.5,
    backoff: float = 2.0,
    should_retry: Callable[[BaseException], bool] = is_transient_network_error,
    label: str = "call",
) -> Any:
    """
    Await `fn()` up to `attempts` times with exponential backoff, retrying
    only errors accepted by `should_retry`. The last error is re-raised.
    """
    attempts = max(1, attempts)

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "market_data.retry label=%s attempt=%s/%s wait_s=%.1f err=%s",
            label,
            state.attempt_number,
            attempts,
            state.next_action.sleep if state.next_action else 0.0,
            type(exc).__name__,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=delay, exp_base=backoff, min=0),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
    return await retrying(fn)
