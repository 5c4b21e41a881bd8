"""Tests for the HTTP health validator."""

import asyncio

import httpx
import pytest

from api.errors import CancellationRequested
from api.models import ValidationStatus
from api.services.health_validator import HealthValidator

URL = "http://echoserver.green.example.com/"


def _validator(handler) -> HealthValidator:
    return HealthValidator(request_timeout=1.0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_healthy_on_first_attempt():
    validator = _validator(lambda request: httpx.Response(200, text="ok"))

    result = await validator.validate(URL, max_attempts=12, interval_seconds=0.01)

    assert result.success
    assert result.status == ValidationStatus.SUCCEEDED
    assert result.attempts == 1
    assert result.endpoint_url == URL


@pytest.mark.asyncio
async def test_retries_until_healthy():
    responses = iter([503, 503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(responses))

    result = await _validator(handler).validate(URL, max_attempts=5, interval_seconds=0.01)

    assert result.success
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_exhausted_attempts_report_last_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(503)

    result = await _validator(handler).validate(URL, max_attempts=3, interval_seconds=0.01)

    assert not result.success
    assert result.status == ValidationStatus.FAILED
    assert result.attempts == 3
    assert result.last_error == "HTTP 503"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_connection_errors_are_retried():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _validator(handler).validate(URL, max_attempts=2, interval_seconds=0.01)

    assert not result.success
    assert result.attempts == 2
    assert result.last_error == "ConnectError: connection refused"


@pytest.mark.asyncio
async def test_redirects_are_followed():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(301, headers={"Location": f"{URL}healthz"})
        return httpx.Response(200)

    result = await _validator(handler).validate(URL, max_attempts=1, interval_seconds=0.01)

    assert result.success


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts,interval", [(0, 1.0), (3, 0), (3, -1.0)])
async def test_rejects_invalid_arguments(max_attempts, interval):
    validator = _validator(lambda request: httpx.Response(200))

    with pytest.raises(ValueError):
        await validator.validate(URL, max_attempts=max_attempts, interval_seconds=interval)


@pytest.mark.asyncio
async def test_cancelled_before_first_attempt():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(CancellationRequested) as exc_info:
        await _validator(handler).validate(
            URL, max_attempts=3, interval_seconds=0.01, cancel_event=cancel_event
        )

    assert exc_info.value.attempts == 0
    assert calls == []


@pytest.mark.asyncio
async def test_cancellation_interrupts_the_wait_between_attempts():
    cancel_event = asyncio.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        cancel_event.set()
        return httpx.Response(503)

    # A 60s interval would time the test out if the wait were not interrupted
    with pytest.raises(CancellationRequested) as exc_info:
        await asyncio.wait_for(
            _validator(handler).validate(
                URL, max_attempts=12, interval_seconds=60.0, cancel_event=cancel_event
            ),
            timeout=5.0,
        )

    assert exc_info.value.attempts == 1
    assert exc_info.value.last_error == "HTTP 503"
