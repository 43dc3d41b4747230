"""Retry and timeout discipline for exchange HTTP calls."""
import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trader.config import settings
from perp_trader.errors import ExchangeHTTPError, ExchangeRequestError, TransientFailure
from perp_trader.services.metrics import exchange_retries_counter

logger = logging.getLogger("http_retry")

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


class RetryableStatus(Exception):
    """A response whose status is worth another attempt."""

    def __init__(self, status: int):
        super().__init__(f"status {status}")
        self.status = status


RETRYABLE_ERRORS = (asyncio.TimeoutError, httpx.TimeoutException, RetryableStatus)


def retry_policy(attempts: int, backoff_base: float, sleep: Callable[[float], Awaitable[Any]],
                 label: str = "request") -> AsyncRetrying:
    """Exponential backoff (base, 2*base, 4*base...) over ``attempts`` total tries."""

    def log_failure(retry_state):
        error = retry_state.outcome.exception()
        logger.warning(f"{label} failed with {str(error) or type(error).__name__} "
                       f"(attempt {retry_state.attempt_number}/{attempts})")

    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff_base),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        after=log_failure,
        sleep=sleep,
    )


async def _attempt(client: httpx.AsyncClient, method: str, url: str, json: Any, deadline: float) -> httpx.Response:
    try:
        response = await asyncio.wait_for(client.request(method, url, json=json), timeout=deadline)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        exchange_retries_counter.labels(reason="timeout").inc()
        raise
    except httpx.RequestError as e:
        raise ExchangeRequestError(f"{method} {url} failed: {e}") from e

    if response.status_code in RETRYABLE_STATUSES:
        exchange_retries_counter.labels(reason=str(response.status_code)).inc()
        raise RetryableStatus(response.status_code)
    if not response.is_success:
        raise ExchangeHTTPError(response.status_code, response.text)
    return response


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    json: Any = None,
    max_retries: int = None,
    timeout: float = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    backoff_base: float = None,
) -> httpx.Response:
    """Issue a request with a per-attempt deadline and exponential backoff.

    ``max_retries`` is the total number of attempts. Timeouts and 429/502/503/504
    are retried; any other non-2xx status raises ``ExchangeHTTPError`` and any
    other transport error raises ``ExchangeRequestError`` without retrying.
    Running out of attempts raises ``TransientFailure``.
    """
    attempts = max(1, max_retries if max_retries is not None else settings.REQUEST_MAX_RETRIES)
    deadline = timeout if timeout is not None else settings.REQUEST_TIMEOUT_SEC
    base = settings.REQUEST_BACKOFF_BASE_SEC if backoff_base is None else backoff_base

    try:
        async for attempt in retry_policy(attempts, base, sleep, label=f"{method} {url}"):
            with attempt:
                return await _attempt(client, method, url, json, deadline)
    except RetryError as e:
        last = e.last_attempt
        cause = last.exception()
        status = cause.status if isinstance(cause, RetryableStatus) else None
        reason = f"status {status}" if status is not None else type(cause).__name__
        raise TransientFailure(
            f"{method} {url} failed after {last.attempt_number} attempts ({reason})",
            status=status,
            cause=cause,
            attempts=last.attempt_number,
        ) from cause


__all__ = ["fetch_with_retry", "retry_policy", "RETRYABLE_STATUSES"]
