"""Persistent event log for WHIP/WHEP sessions.

Events live in a bounded in-memory ring. When a path is given they are also
appended to a JSON-lines file, which is replayed when the log is reopened so
a crashed or restarted client keeps its troubleshooting history.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionEvent:
    session_id: str
    event: str
    message: str
    level: str = "info"
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        payload = asdict(self)
        if not self.metadata:
            del payload["metadata"]
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, line: str) -> "SessionEvent":
        """Parse one persisted line, raising ``ValueError`` if it is not an event."""

        payload = json.loads(line)
        if not isinstance(payload, dict):
            raise ValueError("session event must be a JSON object")
        event, message = payload.get("event"), payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            raise ValueError("session event needs string 'event' and 'message'")
        metadata = payload.get("metadata")
        return cls(
            session_id=str(payload.get("session_id") or "-"),
            event=event,
            message=message,
            level=str(payload.get("level") or "info"),
            metadata=metadata if isinstance(metadata, dict) else {},
            timestamp=float(payload.get("timestamp", time.time())),
        )


class SessionEventLog:
    """Bounded session event history, optionally mirrored to a JSONL file."""

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._events: deque[SessionEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._path = Path(path) if path is not None else None
        if self._path is not None:
            self._replay(self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def record(
        self,
        session_id: str,
        event: str,
        message: str,
        *,
        level: str = "info",
        metadata: dict[str, Any] | None = None,
    ) -> SessionEvent:
        entry = SessionEvent(
            session_id=session_id.strip() or "-",
            event=event,
            message=message,
            level=level,
            metadata={key: value for key, value in (metadata or {}).items() if value is not None},
        )
        with self._lock:
            self._events.append(entry)
            if self._path is not None:
                self._write(self._path, entry)
        return entry

    def tail(self, limit: int | None = None, *, session_id: str | None = None) -> list[SessionEvent]:
        """Return the newest events, oldest first, optionally for one session."""

        with self._lock:
            events = [
                entry
                for entry in self._events
                if session_id is None or entry.session_id == session_id
            ]
        if limit is not None:
            events = events[-max(1, limit):]
        return events

    def _replay(self, path: Path) -> None:
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return
        except OSError as exc:  # pragma: no cover - best effort
            logger.warning("Unable to read session event log %s: %s", path, exc)
            return
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            try:
                self._events.append(SessionEvent.from_json(line))
            except (TypeError, ValueError):
                skipped += 1
        if skipped:
            logger.debug("Skipped %d unreadable lines in %s", skipped, path)

    @staticmethod
    def _write(path: Path, entry: SessionEvent) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(entry.to_json() + "\n")
        except OSError as exc:  # pragma: no cover - best effort
            logger.warning("Unable to persist session event to %s: %s", path, exc)


__all__ = ["SessionEvent", "SessionEventLog"]
