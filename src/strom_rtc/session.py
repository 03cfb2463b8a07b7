"""WHIP/WHEP session negotiation."""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import secrets
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Mapping

from aiortc import MediaStreamTrack

from .candidates import CandidateTracker
from .config import ClientConfig, SessionPolicy
from .health import ConnectionHealthMonitor, HealthState
from .observer import LogLevel, ObserverGroup, SessionObserver
from .resource import ResourceLifecycle
from .sdp import apply_offer_policy, restrict_candidates
from .signaling import ConnectError, SignalingClient, SignalingError
from .transport import (
    AiortcTransport,
    Direction,
    MediaSource,
    MediaTransport,
    TransportCallbacks,
    TransportConfig,
    TransportFactory,
    TransportNotSupportedError,
)

logger = logging.getLogger(__name__)

CONNECTED_ICE_STATES = ("connected", "completed")
DEFAULT_RECEIVE_KINDS = ("audio", "video")


class AlreadyConnectedError(ConnectError):
    """Raised when connect() is called on an active negotiator."""


class MediaAcquisitionError(ConnectError):
    """Raised when local media cannot be obtained for a session."""


class NegotiationError(ConnectError):
    """Raised when the media transport fails during offer/answer."""


class SwapError(RuntimeError):
    """Raised when a track cannot be swapped on an open session."""


class NoActiveSenderError(SwapError):
    """Raised when no sender of the requested kind is available."""


class SessionState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    GATHERING_CANDIDATES = "gathering_candidates"
    SIGNALING = "signaling"
    AWAITING_ANSWER = "awaiting_answer"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class TransportInfo:
    """Summary of the candidate pair carrying the media."""

    candidate_type: str
    protocol: str
    remote_address: str | None
    relay_protocol: str | None = None


@dataclass(slots=True, eq=False)
class Session:
    """State of one connection attempt. A reconnect is a new session."""

    endpoint: str
    resource: ResourceLifecycle
    id: str = field(default_factory=lambda: secrets.token_hex(3))
    state: SessionState = SessionState.IDLE
    transport: MediaTransport | None = None
    candidates: CandidateTracker = field(default_factory=CandidateTracker)
    health: ConnectionHealthMonitor | None = None
    local_tracks: list[MediaStreamTrack] = field(default_factory=list)
    gathering_done: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    teardown: asyncio.Task[None] | None = None

    @property
    def resource_handle(self) -> str | None:
        return self.resource.url


def transport_info_from_stats(stats: Mapping[str, Mapping[str, Any]]) -> TransportInfo | None:
    """Extract the selected candidate pair from a statistics report."""

    pair: Mapping[str, Any] | None = None
    for report in stats.values():
        if report.get("type") == "transport" and report.get("selectedCandidatePairId"):
            pair = stats.get(str(report["selectedCandidatePairId"]))
    if pair is None:
        for report in stats.values():
            if report.get("type") == "candidate-pair" and report.get("selected"):
                pair = report
    if pair is None:
        return None
    local = stats.get(str(pair.get("localCandidateId")))
    if local is None:
        return None
    remote = stats.get(str(pair.get("remoteCandidateId"))) or {}
    address = remote.get("address") or remote.get("ip")
    remote_address = f"{address}:{remote.get('port')}" if address else None
    return TransportInfo(
        candidate_type=str(local.get("candidateType") or "unknown"),
        protocol=str(local.get("protocol") or "unknown"),
        remote_address=remote_address,
        relay_protocol=local.get("relayProtocol") or None,
    )


class SessionNegotiator:
    """Drive one WHIP or WHEP session at a time against a signalling endpoint."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        direction: Direction = Direction.SEND_ONLY,
        observer: SessionObserver | None = None,
        signaling: SignalingClient | None = None,
        transport_factory: TransportFactory = AiortcTransport,
        receive_kinds: tuple[str, ...] = DEFAULT_RECEIVE_KINDS,
    ) -> None:
        self.config = config
        self.direction = direction
        # Observer errors are logged and never reach the session.
        self._observer = ObserverGroup(() if observer is None else (observer,))
        self._signaling = signaling if signaling is not None else SignalingClient(config.timings)
        self._transport_factory = transport_factory
        self._receive_kinds = receive_kinds
        self._session: Session | None = None

    @property
    def endpoint(self) -> str:
        return self.config.endpoint

    @property
    def protocol(self) -> str:
        return "WHIP" if self.direction is Direction.SEND_ONLY else "WHEP"

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session is not None else SessionState.IDLE

    async def __aenter__(self) -> "SessionNegotiator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------ operations -----------------------------
    async def connect(self, media: MediaSource | None = None) -> None:
        """Negotiate a new session with the signalling endpoint.

        Raises :class:`AlreadyConnectedError` while another session is active.
        Terminal failures are reported to the observer, leave the session
        CLOSED and are re-raised as :class:`ConnectError`. A concurrent
        :meth:`disconnect` aborts the attempt silently.
        """

        current = self._session
        if current is not None and current.state not in (SessionState.IDLE, SessionState.CLOSED):
            self._log_always("Already connected, disconnect first", LogLevel.ERROR)
            raise AlreadyConnectedError("A session is already active; disconnect first")

        session = Session(
            endpoint=self.endpoint,
            resource=ResourceLifecycle(
                self._signaling,
                on_warning=lambda message: self._log_always(message, LogLevel.ERROR),
            ),
        )
        self._session = session
        self._observer.on_session_started(session.id)
        self._set_state(session, SessionState.NEGOTIATING)

        try:
            await self._negotiate(session, media)
        except Exception as exc:
            if not self._aborted(session):
                error = exc if isinstance(exc, ConnectError) else NegotiationError(str(exc))
                await self._fail(session, error)
                if error is exc:
                    raise
                raise error from exc
            self._log_always(
                f"Transport closed during negotiation, aborting ({exc})", LogLevel.WARNING
            )
        if session.teardown is not None:
            await asyncio.shield(session.teardown)

    async def disconnect(self) -> None:
        """Tear the current session down. Safe to call at any time."""

        session = self._session
        if session is None or (session.teardown is None and session.state is SessionState.CLOSED):
            return
        first = session.teardown is None
        if first:
            self._log_always("Disconnecting...")
        await asyncio.shield(self._begin_teardown(session))
        if first:
            self._log_always("Disconnected", LogLevel.SUCCESS)

    def is_connected(self) -> bool:
        session = self._session
        if session is None or session.transport is None:
            return False
        return session.transport.ice_connection_state in CONNECTED_ICE_STATES

    async def get_transport_info(self) -> TransportInfo | None:
        session = self._session
        transport = session.transport if session is not None else None
        if transport is None:
            return None
        try:
            stats = await transport.get_stats()
            return transport_info_from_stats(stats)
        except Exception as exc:
            self._log_debug(f"Failed to get stats: {exc}")
            return None

    async def swap_track(
        self, kind: str, new_media: MediaStreamTrack | MediaSource
    ) -> MediaStreamTrack | None:
        """Replace the track of *kind* without renegotiating.

        *new_media* is either a track or a media source; other-kind tracks of
        a source are stopped. Returns the superseded track, which the caller
        is responsible for stopping.
        """

        session = self._session
        transport = session.transport if session is not None else None
        if session is None or transport is None:
            raise NoActiveSenderError("No active media transport")

        new_track = self._select_track(kind, new_media)
        sender = next(
            (
                candidate
                for candidate in transport.senders()
                if candidate.track is not None and candidate.track.kind == kind
            ),
            None,
        )
        if sender is None:
            new_track.stop()
            raise NoActiveSenderError(f"No active {kind} sender")

        old_track = sender.track
        await transport.replace_track(sender, new_track)
        if old_track in session.local_tracks:
            session.local_tracks.remove(old_track)
        session.local_tracks.append(new_track)
        self._log_always(f"Replaced {kind} track")
        return old_track

    async def aclose(self) -> None:
        await self.disconnect()
        await self._signaling.close()

    # ----------------------------- negotiation -----------------------------
    async def _negotiate(self, session: Session, media: MediaSource | None) -> None:
        policy = await self._resolve_policy(session)
        if self._aborted(session):
            return

        self._log(
            f"Creating peer connection with iceTransportPolicy={policy.ice_transport_policy}"
        )
        transport = self._transport_factory(
            TransportConfig(
                ice_servers=policy.ice_servers,
                ice_transport_policy=policy.ice_transport_policy,
            ),
            TransportCallbacks(
                on_ice_candidate=partial(self._on_ice_candidate, session),
                on_ice_gathering_state=partial(self._on_ice_gathering_state, session),
                on_ice_connection_state=partial(self._on_ice_connection_state, session),
                on_connection_state=partial(self._on_connection_state, session),
                on_track=partial(self._on_track, session),
            ),
        )
        session.transport = transport
        session.health = ConnectionHealthMonitor(
            on_connected=partial(self._on_health_connected, session),
            on_disconnected=partial(self._on_health_disconnected, session),
            on_state=partial(self._on_health_state, session),
            log=partial(self._on_health_log, session),
            degraded_timeout=self.config.timings.degraded_timeout,
        )

        await self._attach_tracks(session, transport, media, policy)
        if self._aborted(session):
            return

        self._log("Creating SDP offer...")
        offer = await transport.create_offer()
        if self._aborted(session):
            return
        offer = apply_offer_policy(offer, policy)
        await transport.set_local_description(offer)
        if self._aborted(session):
            return

        self._set_state(session, SessionState.GATHERING_CANDIDATES)
        await self._gather_candidates(session, transport)
        if self._aborted(session):
            return

        local = transport.local_description
        if local is None:
            raise NegotiationError("Local description missing after ICE gathering")
        offer_sdp = apply_offer_policy(local, policy)
        if policy.relay_only:
            offer_sdp = restrict_candidates(offer_sdp, ("relay",))

        self._set_state(session, SessionState.SIGNALING)
        self._log(f"Sending SDP offer to {self.endpoint}")
        # Teardown cancels session tasks, which interrupts a pending retry delay.
        exchange = self._spawn(
            session,
            self._signaling.exchange(
                self.endpoint,
                offer_sdp,
                on_retry=self._on_signaling_retry,
                should_abort=partial(self._aborted, session),
            ),
        )
        try:
            answer = await exchange
        except asyncio.CancelledError:
            if not (exchange.cancelled() and self._aborted(session)):
                raise
            self._log_always("Transport closed during signalling, aborting", LogLevel.WARNING)
            return
        if self._aborted(session):
            if answer.resource_url is not None:
                orphan = ResourceLifecycle(self._signaling)
                orphan.create(answer.resource_url)
                await orphan.destroy()
            self._log_always("Transport closed during negotiation, aborting", LogLevel.WARNING)
            return
        if answer.resource_url is not None:
            session.resource.create(answer.resource_url)
            self._log(f"Resource URL: {answer.resource_url}")
        self._log(f"Received SDP answer ({len(answer.sdp)} bytes)", LogLevel.SUCCESS)

        self._set_state(session, SessionState.AWAITING_ANSWER)
        await transport.set_remote_description(answer.sdp)
        if self._aborted(session):
            return
        self._log("Remote description set, waiting for ICE to connect...")

    async def _resolve_policy(self, session: Session) -> SessionPolicy:
        policy = self.config.policy
        url = self.config.ice_config_url
        if url is not None:
            self._log(f"Fetching ICE server configuration from {url}...")
            try:
                policy = await self._signaling.fetch_ice_configuration(url, policy)
            except SignalingError as exc:
                self._log(f"Failed to fetch ICE servers: {exc}", LogLevel.WARNING)
        self._log("=== ICE CONFIGURATION ===")
        self._log(f"iceTransportPolicy: {policy.ice_transport_policy}")
        self._log("iceServers:")
        for server in policy.ice_servers:
            self._log(f"  - urls: {', '.join(server.urls)}")
            if server.username:
                self._log(f"    username: {server.username}")
            if server.credential:
                self._log("    credential: ***")
        self._log("=========================")
        return policy

    async def _attach_tracks(
        self,
        session: Session,
        transport: MediaTransport,
        media: MediaSource | None,
        policy: SessionPolicy,
    ) -> None:
        tracks: list[MediaStreamTrack] = []
        if media is not None:
            try:
                tracks = list(media.tracks())
            except Exception as exc:
                raise MediaAcquisitionError(f"Failed to get local media: {exc}") from exc
        session.local_tracks.extend(tracks)

        if self.direction is Direction.RECV_ONLY:
            kinds = [track.kind for track in tracks] or list(self._receive_kinds)
            for kind in kinds:
                self._log(f"Adding receive-only {kind} transceiver")
                transport.add_transceiver(kind, Direction.RECV_ONLY)
            return

        if not tracks:
            raise MediaAcquisitionError("No local media tracks to send")
        for track in tracks:
            self._log(f"Adding {track.kind} track")
            sender = transport.add_transceiver(track, Direction.SEND_ONLY)
            if track.kind != "video":
                continue
            try:
                await transport.set_encoding_parameters(
                    sender,
                    max_bitrate=policy.max_bitrate_bps,
                    max_framerate=policy.max_framerate,
                )
            except TransportNotSupportedError as exc:
                self._log_always(f"Video encoding params not applied: {exc}", LogLevel.WARNING)
            except Exception as exc:
                self._log_always(f"Failed to set video encoding params: {exc}", LogLevel.ERROR)
            else:
                self._log(
                    f"Set video encoding: maxBitrate={policy.max_bitrate_kbps}kbps, "
                    f"maxFramerate={policy.max_framerate}"
                )
            if self._aborted(session):
                return

    async def _gather_candidates(self, session: Session, transport: MediaTransport) -> None:
        timeout = self.config.timings.gather_timeout
        self._log(f"Waiting for ICE gathering (timeout: {timeout:g}s)...")
        loop = asyncio.get_running_loop()
        started = loop.time()
        if transport.ice_gathering_state != "complete" and not session.gathering_done.is_set():
            try:
                await asyncio.wait_for(session.gathering_done.wait(), timeout)
            except asyncio.TimeoutError:
                self._log(f"ICE gathering timeout after {timeout:g}s", LogLevel.WARNING)
        elapsed_ms = int((loop.time() - started) * 1000)
        self._log(f"ICE gathering completed in {elapsed_ms}ms")
        for line in session.candidates.summary():
            self._log(line)
        if not len(session.candidates):
            self._log_always(
                "No ICE candidates gathered - TURN server may be unreachable",
                LogLevel.WARNING,
            )

    def _on_signaling_retry(self, status: int, attempt: int, attempts: int) -> None:
        delay = self.config.timings.retry_delay
        self._log_always(
            f"Server returned {status}, retrying in {delay:g}s (attempt {attempt}/{attempts})...",
            LogLevel.WARNING,
        )

    # ---------------------------- transport events -------------------------
    def _on_ice_candidate(self, session: Session, line: str | None) -> None:
        if self._session is not session:
            return
        candidate = session.candidates.add(line)
        if line is None:
            self._log("ICE candidate gathering complete (null candidate)")
        elif candidate is not None:
            self._log(f"Local ICE candidate: {candidate.describe()}")
            self._log_debug(f"Full candidate: {line}")

    def _on_ice_gathering_state(self, session: Session, state: str) -> None:
        if self._session is not session:
            return
        self._log(f"ICE gathering state: {state}")
        if state == "complete":
            session.gathering_done.set()

    def _on_ice_connection_state(self, session: Session, state: str) -> None:
        if self._aborted(session):
            return
        level = {"connected": LogLevel.SUCCESS, "failed": LogLevel.ERROR}.get(state, LogLevel.INFO)
        self._log(f"ICE connection state: {state}", level)
        if session.health is not None:
            session.health.handle(state)

    def _on_connection_state(self, session: Session, state: str) -> None:
        if self._aborted(session):
            return
        self._log(
            f"Connection state: {state}",
            LogLevel.SUCCESS if state == "connected" else LogLevel.INFO,
        )
        # DTLS can fail while ICE still reports connected.
        if state == "failed" and session.state in (SessionState.CONNECTED, SessionState.DEGRADED):
            self._log_always("Peer connection failed", LogLevel.ERROR)
            self._log_debug_summary(session)
            self._set_state(session, SessionState.FAILED)
            self._observer.on_disconnected()
            self._begin_teardown(session)

    def _on_track(self, session: Session, track: MediaStreamTrack) -> None:
        if self._aborted(session):
            return
        self._log_always(f"Received {track.kind} track", LogLevel.SUCCESS)
        self._observer.on_track(track)

    # ------------------------------ health events --------------------------
    def _on_health_state(self, session: Session, state: HealthState) -> None:
        if self._aborted(session):
            return
        mapped = {
            HealthState.CONNECTED: SessionState.CONNECTED,
            HealthState.DEGRADED: SessionState.DEGRADED,
            HealthState.LOST: SessionState.FAILED,
            HealthState.FAILED: SessionState.FAILED,
        }.get(state)
        if mapped is not None:
            self._set_state(session, mapped)

    def _on_health_connected(self, session: Session) -> None:
        if self._aborted(session):
            return
        self._log_always("Media transport connected", LogLevel.SUCCESS)
        self._observer.on_connected()
        self._spawn(session, self._log_connection_stats(session))

    def _on_health_disconnected(self, session: Session) -> None:
        if self._aborted(session):
            return
        health = session.health
        if health is not None and health.state is HealthState.FAILED:
            self._log_debug_summary(session)
            self._observer.on_error("ICE connection failed")
        self._observer.on_disconnected()
        self._begin_teardown(session)

    def _on_health_log(self, session: Session, message: str, level: str) -> None:
        if self._session is not session:
            return
        self._log_always(message, LogLevel(level))

    # ------------------------------- teardown ------------------------------
    async def _fail(self, session: Session, error: BaseException) -> None:
        self._log_always(f"Connection error: {error}", LogLevel.ERROR)
        self._log_debug_summary(session)
        self._set_state(session, SessionState.FAILED)
        self._observer.on_error(str(error))
        await asyncio.shield(self._begin_teardown(session))

    def _begin_teardown(self, session: Session) -> asyncio.Task[None]:
        if session.teardown is None:
            loop = asyncio.get_running_loop()
            session.teardown = loop.create_task(self._teardown(session))
        return session.teardown

    async def _teardown(self, session: Session) -> None:
        if session.health is not None:
            session.health.close()
        for task in list(session.tasks):
            task.cancel()
        if await session.resource.destroy():
            self._log("Sent DELETE to resource URL")
        for track in session.local_tracks:
            with contextlib.suppress(Exception):
                track.stop()
        session.local_tracks.clear()
        transport = session.transport
        session.transport = None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                logger.warning("Error closing media transport: %s", exc)
        self._set_state(session, SessionState.CLOSED)

    def _aborted(self, session: Session) -> bool:
        return self._session is not session or session.teardown is not None

    def _spawn(self, session: Session, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    # ------------------------------ diagnostics ----------------------------
    async def _log_connection_stats(self, session: Session) -> None:
        transport = session.transport
        if transport is None or not self.config.debug:
            return
        try:
            stats = await transport.get_stats()
        except Exception as exc:
            self._log_debug(f"Failed to get stats: {exc}")
            return
        self._log("=== CONNECTION STATS ===")
        for report in stats.values():
            kind = report.get("type")
            if kind == "candidate-pair" and report.get("state") == "succeeded":
                self._log("Active candidate pair:")
                self._log(f"  local: {report.get('localCandidateId')}")
                self._log(f"  remote: {report.get('remoteCandidateId')}")
                rtt = report.get("currentRoundTripTime")
                if rtt:
                    self._log(f"  RTT: {float(rtt) * 1000:.1f}ms")
            elif kind in ("local-candidate", "remote-candidate"):
                prefix = "Local" if kind == "local-candidate" else "Remote"
                self._log_debug(
                    f"{prefix} candidate [{report.get('id')}]: "
                    f"type={report.get('candidateType')} protocol={report.get('protocol')} "
                    f"address={report.get('address')}:{report.get('port')}"
                )
            elif kind == "transport":
                self._log("Transport:")
                self._log(f"  dtlsState: {report.get('dtlsState')}")
                self._log(f"  iceState: {report.get('iceState')}")
        self._log("========================")

    def _log_debug_summary(self, session: Session) -> None:
        self._log("=== DEBUG SUMMARY ===")
        self._log(f"Local candidates: {len(session.candidates)}")
        transport = session.transport
        if transport is not None:
            self._log(f"ICE connection state: {transport.ice_connection_state}")
            self._log(f"ICE gathering state: {transport.ice_gathering_state}")
            self._log(f"Connection state: {transport.connection_state}")
            self._log(f"Signaling state: {transport.signaling_state}")
        self._log("=====================")

    # -------------------------------- helpers ------------------------------
    @staticmethod
    def _select_track(
        kind: str, new_media: MediaStreamTrack | MediaSource
    ) -> MediaStreamTrack:
        if not isinstance(new_media, MediaSource):
            if new_media.kind != kind:
                raise SwapError(f"Expected a {kind} track, got {new_media.kind}")
            return new_media
        selected: MediaStreamTrack | None = None
        for track in new_media.tracks():
            if track.kind == kind and selected is None:
                selected = track
            else:
                track.stop()
        if selected is None:
            raise SwapError(f"Media source provides no {kind} track")
        return selected

    def _set_state(self, session: Session, state: SessionState) -> None:
        if session.state is state:
            return
        logger.debug("[%s %s] state %s -> %s", self.protocol, session.id, session.state.value, state.value)
        session.state = state
        if self._session is session:
            self._observer.on_status(state)

    def _log_always(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        session_id = self._session.id if self._session is not None else "-"
        logger.log(level.logging_level, "[%s %s] %s", self.protocol, session_id, message)
        self._observer.on_log(f"[{session_id}] {message}", level)

    def _log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        if not self.config.debug:
            session_id = self._session.id if self._session is not None else "-"
            logger.debug("[%s %s] %s", self.protocol, session_id, message)
            return
        self._log_always(message, level)

    def _log_debug(self, message: str) -> None:
        session_id = self._session.id if self._session is not None else "-"
        logger.debug("[%s DEBUG %s] %s", self.protocol, session_id, message)
        if self.config.debug:
            self._observer.on_log(f"[{session_id}] [DEBUG] {message}", LogLevel.DEBUG)


class WhipClient(SessionNegotiator):
    """Ingest client: sends local media to a WHIP endpoint."""

    def __init__(self, config: ClientConfig, **kwargs: Any) -> None:
        super().__init__(config, direction=Direction.SEND_ONLY, **kwargs)


class WhepClient(SessionNegotiator):
    """Playback client: receives media from a WHEP endpoint."""

    def __init__(self, config: ClientConfig, **kwargs: Any) -> None:
        super().__init__(config, direction=Direction.RECV_ONLY, **kwargs)


__all__ = [
    "AlreadyConnectedError",
    "MediaAcquisitionError",
    "NegotiationError",
    "NoActiveSenderError",
    "Session",
    "SessionNegotiator",
    "SessionState",
    "SwapError",
    "TransportInfo",
    "WhepClient",
    "WhipClient",
    "transport_info_from_stats",
]
