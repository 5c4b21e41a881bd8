"""HTTP health validation of deployed environments."""

import asyncio
import logging
from typing import Optional

import httpx

from api.errors import CancellationRequested
from api.models import ValidationResult

logger = logging.getLogger(__name__)


class HealthValidator:
    """Poll an HTTP endpoint until it answers 2xx or it runs out of attempts.

    Connection errors, timeouts and non-2xx responses are all retried the
    same way; only the last failure is reported.
    """

    def __init__(
        self,
        request_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.request_timeout = request_timeout
        self._transport = transport

    async def validate(
        self,
        endpoint_url: str,
        max_attempts: int,
        interval_seconds: float,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ValidationResult:
        """Probe endpoint_url up to max_attempts times.

        Raises CancellationRequested if cancel_event is set between attempts.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        last_error: Optional[str] = None

        async with httpx.AsyncClient(
            timeout=self.request_timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for attempt in range(1, max_attempts + 1):
                if cancel_event is not None and cancel_event.is_set():
                    raise CancellationRequested(attempts=attempt - 1, last_error=last_error)

                try:
                    response = await client.get(endpoint_url)
                except httpx.HTTPError as e:
                    last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                else:
                    if response.is_success:
                        logger.info("%s healthy on try #%d", endpoint_url, attempt)
                        return ValidationResult.succeeded(attempt, endpoint_url)
                    last_error = f"HTTP {response.status_code}"

                if attempt == max_attempts:
                    break

                logger.info(
                    "Try #%d for %s failed (%s). Waiting %ss...",
                    attempt,
                    endpoint_url,
                    last_error,
                    interval_seconds,
                )
                if await self._wait(interval_seconds, cancel_event):
                    raise CancellationRequested(attempts=attempt, last_error=last_error)

        logger.warning(
            "%s not healthy after %d attempt(s): %s", endpoint_url, max_attempts, last_error
        )
        return ValidationResult.failed(max_attempts, last_error, endpoint_url)

    @staticmethod
    async def _wait(interval_seconds: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for one interval. Returns True if cancellation was requested meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(interval_seconds)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            return False
        return True
