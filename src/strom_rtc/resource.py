"""Ownership of the server-side session resource."""
from __future__ import annotations

import logging
from typing import Callable

import httpx

from .signaling import SignalingClient

logger = logging.getLogger(__name__)

LogHook = Callable[[str], None]


class ResourceLifecycle:
    """Hold the resource URL handed out by the signalling endpoint.

    The handle is created once per session and torn down at most once.
    Teardown never raises: the DELETE is best-effort and the handle is
    cleared whatever the outcome.
    """

    def __init__(self, signaling: SignalingClient, *, on_warning: LogHook | None = None) -> None:
        self._signaling = signaling
        self._url: str | None = None
        self._on_warning = on_warning

    @property
    def url(self) -> str | None:
        return self._url

    def __bool__(self) -> bool:
        return self._url is not None

    def create(self, url: str) -> None:
        if self._url is not None:
            raise RuntimeError("Session resource already allocated")
        self._url = url

    async def destroy(self) -> bool:
        """Delete the remote resource; return ``True`` if a DELETE was sent."""

        url = self._url
        self._url = None
        if url is None:
            return False
        try:
            status = await self._signaling.delete_resource(url)
        except httpx.HTTPError as exc:
            self._warn(f"Failed to send DELETE to {url}: {exc}")
            return True
        except Exception as exc:  # pragma: no cover - teardown must not fail
            logger.exception("Unexpected error deleting session resource %s", url)
            self._warn(f"Failed to send DELETE to {url}: {exc}")
            return True
        if status >= 400:
            self._warn(f"DELETE {url} returned HTTP {status}")
        else:
            logger.debug("Deleted session resource %s (HTTP %s)", url, status)
        return True

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self._on_warning is not None:
            self._on_warning(message)


__all__ = ["ResourceLifecycle"]
