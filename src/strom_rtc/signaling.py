"""HTTP signalling for WHIP/WHEP endpoints."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from .config import DEFAULT_TIMINGS, NegotiationTimings, SessionPolicy, parse_ice_configuration

logger = logging.getLogger(__name__)

SDP_CONTENT_TYPE = "application/sdp"

Sleep = Callable[[float], Awaitable[None]]
RetryNotice = Callable[[int, int, int], None]
AbortCheck = Callable[[], bool]


class ConnectError(RuntimeError):
    """Base error for failures surfaced by a connection attempt."""


class SignalingError(ConnectError):
    """Raised when the signalling endpoint rejects an offer."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class SignalingConnectionError(SignalingError):
    """Raised when the signalling endpoint cannot be reached at all."""


class SignalingAbortedError(SignalingError):
    """Raised when the caller abandons an exchange between attempts."""


@dataclass(frozen=True, slots=True)
class SignalingAnswer:
    """Outcome of a successful offer/answer exchange."""

    sdp: str
    resource_url: str | None
    attempts: int


class SignalingClient:
    """Thin async HTTP client for the WHIP/WHEP resource contract."""

    def __init__(
        self,
        timings: NegotiationTimings = DEFAULT_TIMINGS,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._timings = timings
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timings.request_timeout)
            self._owns_client = True
        return self._client

    async def exchange(
        self,
        endpoint: str,
        offer_sdp: str,
        *,
        on_retry: RetryNotice | None = None,
        should_abort: AbortCheck | None = None,
    ) -> SignalingAnswer:
        """POST *offer_sdp* to *endpoint* and return the answer.

        Server errors (5xx) are retried with a fixed delay because the remote
        ingest point may still be releasing a previous session. Every other
        failure is terminal. *should_abort* is consulted before every POST and
        before every retry delay; once it returns true the exchange stops with
        :class:`SignalingAbortedError` and no further offer is sent.
        """

        client = await self.get_client()
        max_attempts = self._timings.signaling_attempts
        attempt = 0
        while True:
            attempt += 1
            self._check_aborted(should_abort, endpoint)
            try:
                response = await client.post(
                    endpoint,
                    content=offer_sdp,
                    headers={"Content-Type": SDP_CONTENT_TYPE},
                )
            except httpx.HTTPError as exc:
                raise SignalingConnectionError(
                    f"Failed to send offer to {endpoint}: {exc}"
                ) from exc

            if response.is_success:
                break

            status = response.status_code
            if response.is_server_error and attempt < max_attempts:
                logger.warning(
                    "Signalling endpoint %s returned %s, retrying in %.1fs (attempt %d/%d)",
                    endpoint,
                    status,
                    self._timings.retry_delay,
                    attempt,
                    max_attempts,
                )
                self._check_aborted(should_abort, endpoint)
                if on_retry is not None:
                    on_retry(status, attempt, max_attempts)
                await self._sleep(self._timings.retry_delay)
                continue

            body = response.text.strip()
            raise SignalingError(
                f"Signalling endpoint returned {status}: {body}",
                status=status,
                body=body,
            )

        resource_url: str | None = None
        location = response.headers.get("Location")
        if location:
            resource_url = str(response.request.url.join(location.strip()))

        answer = response.text
        if not answer.strip():
            raise SignalingError(
                f"Signalling endpoint returned {response.status_code} without an SDP answer",
                status=response.status_code,
                body="",
            )
        return SignalingAnswer(sdp=answer, resource_url=resource_url, attempts=attempt)

    @staticmethod
    def _check_aborted(should_abort: AbortCheck | None, endpoint: str) -> None:
        if should_abort is not None and should_abort():
            raise SignalingAbortedError(f"Offer exchange with {endpoint} aborted")

    async def fetch_ice_configuration(
        self, url: str, base: SessionPolicy
    ) -> SessionPolicy:
        """Return *base* updated with the ICE servers published at *url*."""

        client = await self.get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SignalingError(
                f"ICE configuration request returned HTTP {exc.response.status_code}",
                status=exc.response.status_code,
                body=exc.response.text.strip(),
            ) from exc
        except httpx.HTTPError as exc:
            raise SignalingConnectionError(
                f"ICE configuration request to {url} failed: {exc}"
            ) from exc
        except ValueError as exc:
            raise SignalingError(f"ICE configuration at {url} is not valid JSON") from exc
        try:
            return parse_ice_configuration(payload, base)
        except ValueError as exc:
            raise SignalingError(f"Invalid ICE configuration at {url}: {exc}") from exc

    async def delete_resource(self, url: str) -> int:
        """Issue a DELETE for *url* and return the response status."""

        client = await self.get_client()
        response = await client.delete(url)
        return response.status_code

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = [
    "ConnectError",
    "SignalingAbortedError",
    "SignalingAnswer",
    "SignalingClient",
    "SignalingConnectionError",
    "SignalingError",
]
