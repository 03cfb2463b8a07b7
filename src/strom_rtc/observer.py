"""Diagnostic callbacks emitted by a session negotiator."""
from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any, Iterable

from .event_log import SessionEventLog

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .session import SessionState

logger = logging.getLogger(__name__)


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"

    @property
    def logging_level(self) -> int:
        return {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.SUCCESS: logging.INFO,
            LogLevel.WARNING: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }[self]


class SessionObserver:
    """Receives the diagnostic side channel of a session.

    Every hook is a no-op by default; subclasses override what they need.
    Hooks run on the event loop and must not block.
    """

    def on_session_started(self, session_id: str) -> None:
        return None

    def on_log(self, message: str, level: LogLevel) -> None:
        return None

    def on_status(self, state: "SessionState") -> None:
        return None

    def on_error(self, message: str) -> None:
        return None

    def on_connected(self) -> None:
        return None

    def on_disconnected(self) -> None:
        return None

    def on_track(self, track: Any) -> None:
        return None


class ObserverGroup(SessionObserver):
    """Fan every hook out to several observers."""

    def __init__(self, observers: Iterable[SessionObserver]) -> None:
        self._observers = tuple(observers)

    def _each(self, name: str, *args: Any) -> None:
        for observer in self._observers:
            try:
                getattr(observer, name)(*args)
            except Exception:
                logger.exception("Session observer %r raised in %s", observer, name)

    def on_session_started(self, session_id: str) -> None:
        self._each("on_session_started", session_id)

    def on_log(self, message: str, level: LogLevel) -> None:
        self._each("on_log", message, level)

    def on_status(self, state: "SessionState") -> None:
        self._each("on_status", state)

    def on_error(self, message: str) -> None:
        self._each("on_error", message)

    def on_connected(self) -> None:
        self._each("on_connected")

    def on_disconnected(self) -> None:
        self._each("on_disconnected")

    def on_track(self, track: Any) -> None:
        self._each("on_track", track)


class EventLogObserver(SessionObserver):
    """Record session events into a :class:`SessionEventLog`."""

    def __init__(self, event_log: SessionEventLog, *, include_debug: bool = False) -> None:
        self.event_log = event_log
        self._include_debug = include_debug
        self._session_id = "-"

    def on_session_started(self, session_id: str) -> None:
        self._session_id = session_id
        self.event_log.record(session_id, "session", "Session started")

    def on_log(self, message: str, level: LogLevel) -> None:
        if level is LogLevel.DEBUG and not self._include_debug:
            return
        self.event_log.record(self._session_id, "log", message, level=level.value)

    def on_status(self, state: "SessionState") -> None:
        self.event_log.record(
            self._session_id,
            "status",
            f"Session state: {state.value}",
            metadata={"state": state.value},
        )

    def on_error(self, message: str) -> None:
        self.event_log.record(self._session_id, "error", message, level="error")

    def on_connected(self) -> None:
        self.event_log.record(self._session_id, "connected", "Media transport connected")

    def on_disconnected(self) -> None:
        self.event_log.record(
            self._session_id, "disconnected", "Media transport lost", level="warning"
        )

    def on_track(self, track: Any) -> None:
        kind = getattr(track, "kind", "unknown")
        self.event_log.record(
            self._session_id, "track", f"Received {kind} track", metadata={"kind": kind}
        )


__all__ = ["EventLogObserver", "LogLevel", "ObserverGroup", "SessionObserver"]
