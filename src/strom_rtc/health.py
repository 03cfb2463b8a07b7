"""Debounced tracking of transport connectivity."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable

from .config import DEFAULT_DEGRADED_TIMEOUT

logger = logging.getLogger(__name__)

Callback = Callable[[], None]
StateHook = Callable[["HealthState"], None]
LogHook = Callable[[str, str], None]


class HealthState(str, enum.Enum):
    FRESH = "fresh"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    LOST = "lost"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (HealthState.LOST, HealthState.FAILED)


class ConnectionHealthMonitor:
    """Turn raw ICE connection states into debounced health transitions.

    ``disconnected`` is treated as transient: the monitor enters DEGRADED
    immediately and only declares the connection LOST when the signal is
    still ``disconnected`` after ``degraded_timeout`` seconds. ``failed`` is
    final. Signals must be delivered from the event loop that owns the
    monitor.
    """

    def __init__(
        self,
        *,
        on_connected: Callback | None = None,
        on_disconnected: Callback | None = None,
        on_state: StateHook | None = None,
        log: LogHook | None = None,
        degraded_timeout: float = DEFAULT_DEGRADED_TIMEOUT,
    ) -> None:
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._on_state = on_state
        self._log = log
        self._degraded_timeout = degraded_timeout
        self._state = HealthState.FRESH
        self._signal = "new"
        self._degraded_task: asyncio.Task[None] | None = None
        self._ever_connected = False

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def signal(self) -> str:
        """Return the last raw connectivity signal received."""

        return self._signal

    @property
    def degraded_timer_pending(self) -> bool:
        task = self._degraded_task
        return task is not None and not task.done()

    def handle(self, signal: str) -> HealthState:
        """Consume one raw connectivity state and return the resulting state."""

        signal = signal.strip().lower()
        self._signal = signal
        if self._state.terminal:
            logger.debug("Ignoring ICE state %s after %s", signal, self._state.value)
            return self._state

        if signal in ("connected", "completed"):
            self._handle_connected()
        elif signal == "disconnected":
            self._handle_disconnected()
        elif signal == "failed":
            self._handle_failed()
        elif signal == "closed":
            self._cancel_degraded_timer()
        elif signal in ("new", "checking"):
            if self._state is HealthState.FRESH:
                self._transition(HealthState.CONNECTING)
        else:
            logger.debug("Unknown ICE connection state %r", signal)
        return self._state

    def close(self) -> None:
        """Cancel pending timers; no callbacks fire afterwards."""

        self._cancel_degraded_timer()
        self._on_connected = None
        self._on_disconnected = None
        self._on_state = None

    # ----------------------------- implementation --------------------------
    def _handle_connected(self) -> None:
        if self._cancel_degraded_timer():
            self._emit("ICE recovered from disconnected state", "success")
        if self._state is HealthState.CONNECTED:
            return
        self._transition(HealthState.CONNECTED)
        if self._ever_connected:
            return
        self._ever_connected = True
        if self._on_connected is not None:
            self._on_connected()

    def _handle_disconnected(self) -> None:
        self._emit(
            f"ICE disconnected (waiting {self._degraded_timeout:g}s for recovery...)",
            "warning",
        )
        if self._state is not HealthState.DEGRADED:
            self._transition(HealthState.DEGRADED)
        if self._degraded_task is None or self._degraded_task.done():
            loop = asyncio.get_running_loop()
            self._degraded_task = loop.create_task(self._expire_degraded())

    def _handle_failed(self) -> None:
        self._cancel_degraded_timer()
        self._emit("ICE connection failed", "error")
        self._transition(HealthState.FAILED)
        if self._on_disconnected is not None:
            self._on_disconnected()

    async def _expire_degraded(self) -> None:
        await asyncio.sleep(self._degraded_timeout)
        self._degraded_task = None
        if self._signal != "disconnected" or self._state.terminal:
            return
        self._emit("ICE did not recover, disconnecting", "error")
        self._transition(HealthState.LOST)
        if self._on_disconnected is not None:
            self._on_disconnected()

    def _cancel_degraded_timer(self) -> bool:
        task = self._degraded_task
        self._degraded_task = None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def _transition(self, state: HealthState) -> None:
        if state is self._state:
            return
        logger.debug("Connection health %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state is not None:
            self._on_state(state)

    def _emit(self, message: str, level: str) -> None:
        if self._log is not None:
            self._log(message, level)
        else:
            logger.info(message)


__all__ = ["ConnectionHealthMonitor", "HealthState"]
