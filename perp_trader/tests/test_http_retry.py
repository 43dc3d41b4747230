import asyncio

import httpx
import pytest

from perp_trader.errors import ExchangeHTTPError, ExchangeRequestError, TransientFailure
from perp_trader.providers.http_retry import fetch_with_retry


def _client(statuses, calls):
    def handler(request):
        calls.append(request)
        status = statuses.pop(0) if statuses else 200
        return httpx.Response(status, json={"ok": status})
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_backoff_doubles(recording_sleep):
    calls = []
    async with _client([502, 503, 504, 200], calls) as client:
        response = await fetch_with_retry(client, "POST", "https://x/info", max_retries=4, sleep=recording_sleep,
                                          backoff_base=1.0)
    assert response.status_code == 200
    assert recording_sleep.calls == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_retries_then_succeeds(recording_sleep):
    calls = []
    async with _client([503, 503, 200], calls) as client:
        response = await fetch_with_retry(client, "POST", "https://x/info", json={}, max_retries=3,
                                          sleep=recording_sleep, backoff_base=1.0)
    assert response.status_code == 200
    assert len(calls) == 3
    assert recording_sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhaustion_raises_transient_failure(recording_sleep):
    calls = []
    async with _client([429, 429, 429], calls) as client:
        with pytest.raises(TransientFailure) as excinfo:
            await fetch_with_retry(client, "POST", "https://x/info", max_retries=3, sleep=recording_sleep,
                                   backoff_base=1.0)
    assert excinfo.value.status == 429
    assert excinfo.value.attempts == 3
    # no sleep after the final attempt
    assert recording_sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_retryable_status_fails_fast(recording_sleep):
    calls = []
    async with _client([400], calls) as client:
        with pytest.raises(ExchangeHTTPError) as excinfo:
            await fetch_with_retry(client, "POST", "https://x/info", max_retries=3, sleep=recording_sleep)
    assert excinfo.value.status == 400
    assert len(calls) == 1
    assert recording_sleep.calls == []


@pytest.mark.asyncio
async def test_timeouts_are_retried(recording_sleep):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await fetch_with_retry(client, "POST", "https://x/info", max_retries=2, sleep=recording_sleep,
                                          backoff_base=0.5)
    assert response.status_code == 200
    assert recording_sleep.calls == [0.5]


@pytest.mark.asyncio
async def test_deadline_applies_per_attempt(recording_sleep):
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransientFailure) as excinfo:
            await fetch_with_retry(client, "POST", "https://x/info", max_retries=2, timeout=0.01,
                                   sleep=recording_sleep)
    assert excinfo.value.status is None
    assert len(recording_sleep.calls) == 1


@pytest.mark.asyncio
async def test_connection_errors_are_not_retried(recording_sleep):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ExchangeRequestError):
            await fetch_with_retry(client, "POST", "https://x/info", max_retries=3, sleep=recording_sleep)
    assert recording_sleep.calls == []
