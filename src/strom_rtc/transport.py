"""Media transport abstraction and the aiortc implementation."""
from __future__ import annotations

import dataclasses
import enum
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from aiortc import (
    MediaStreamTrack,
    RTCBundlePolicy,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from .config import IceServer

logger = logging.getLogger(__name__)

StatsReport = Mapping[str, Mapping[str, Any]]


class TransportError(RuntimeError):
    """Raised when the media transport cannot perform an operation."""


class TransportNotSupportedError(TransportError):
    """Raised for operations the underlying WebRTC stack does not offer."""


class Direction(str, enum.Enum):
    SEND_ONLY = "sendonly"
    RECV_ONLY = "recvonly"


def _noop(*_args: object) -> None:
    return None


@dataclass(frozen=True, slots=True)
class TransportConfig:
    """Parameters used to create a media transport."""

    ice_servers: tuple[IceServer, ...] = ()
    ice_transport_policy: str = "all"
    bundle_policy: str = "max-bundle"


@dataclass(slots=True)
class TransportCallbacks:
    """Event sinks invoked by a transport on the event loop."""

    on_ice_candidate: Callable[[str | None], None] = _noop
    on_ice_gathering_state: Callable[[str], None] = _noop
    on_ice_connection_state: Callable[[str], None] = _noop
    on_connection_state: Callable[[str], None] = _noop
    on_track: Callable[[MediaStreamTrack], None] = _noop


class MediaSource(ABC):
    """Provider of local media tracks tagged by kind."""

    @abstractmethod
    def tracks(self) -> Sequence[MediaStreamTrack]:  # pragma: no cover - interface only
        raise NotImplementedError

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()


class MediaTransport(ABC):
    """Peer connection operations used by the session negotiator."""

    @abstractmethod
    def add_transceiver(
        self, track_or_kind: MediaStreamTrack | str, direction: Direction
    ) -> Any:  # pragma: no cover - interface only
        """Attach a track (or an empty transceiver of a kind) and return its sender."""

    @abstractmethod
    async def set_encoding_parameters(
        self, sender: Any, *, max_bitrate: int, max_framerate: int
    ) -> None:  # pragma: no cover - interface only
        ...

    @abstractmethod
    async def create_offer(self) -> str:  # pragma: no cover - interface only
        ...

    @abstractmethod
    async def set_local_description(self, sdp: str) -> None:  # pragma: no cover
        ...

    @abstractmethod
    async def set_remote_description(self, sdp: str) -> None:  # pragma: no cover
        ...

    @property
    @abstractmethod
    def local_description(self) -> str | None:  # pragma: no cover - interface only
        ...

    @property
    @abstractmethod
    def ice_connection_state(self) -> str:  # pragma: no cover - interface only
        ...

    @property
    @abstractmethod
    def ice_gathering_state(self) -> str:  # pragma: no cover - interface only
        ...

    @property
    def connection_state(self) -> str:
        return self.ice_connection_state

    @property
    def signaling_state(self) -> str:
        return "unknown"

    @abstractmethod
    def senders(self) -> Sequence[Any]:  # pragma: no cover - interface only
        """Return sender handles exposing ``kind`` and ``track``."""

    @abstractmethod
    async def replace_track(
        self, sender: Any, track: MediaStreamTrack | None
    ) -> None:  # pragma: no cover - interface only
        ...

    @abstractmethod
    async def get_stats(self) -> StatsReport:  # pragma: no cover - interface only
        """Return W3C style statistics keyed by report id."""

    @abstractmethod
    async def close(self) -> None:  # pragma: no cover - interface only
        ...


TransportFactory = Callable[[TransportConfig, TransportCallbacks], MediaTransport]


def _rtc_configuration(config: TransportConfig) -> RTCConfiguration:
    servers = [
        RTCIceServer(
            urls=list(server.urls),
            username=server.username,
            credential=server.credential,
        )
        for server in config.ice_servers
    ]
    bundle = (
        RTCBundlePolicy.MAX_BUNDLE
        if config.bundle_policy == "max-bundle"
        else RTCBundlePolicy.BALANCED
    )
    return RTCConfiguration(iceServers=servers or None, bundlePolicy=bundle)


def _stats_to_dict(stats: object) -> dict[str, Any]:
    if dataclasses.is_dataclass(stats) and not isinstance(stats, type):
        return dataclasses.asdict(stats)
    return dict(getattr(stats, "__dict__", {}))


class AiortcTransport(MediaTransport):
    """:class:`MediaTransport` backed by an aiortc ``RTCPeerConnection``.

    aiortc gathers all candidates while the local description is applied, so
    candidates are replayed to ``on_ice_candidate`` once gathering finished,
    followed by the end-of-candidates marker.
    """

    def __init__(
        self,
        config: TransportConfig,
        callbacks: TransportCallbacks | None = None,
    ) -> None:
        self.config = config
        self.callbacks = callbacks if callbacks is not None else TransportCallbacks()
        if self.config.ice_transport_policy == "relay":
            logger.debug(
                "aiortc has no relay-only mode; non-relay candidates are filtered from the offer"
            )
        self._pc = RTCPeerConnection(_rtc_configuration(self.config))
        self._pc.on("iceconnectionstatechange", self._on_ice_connection_state)
        self._pc.on("icegatheringstatechange", self._on_ice_gathering_state)
        self._pc.on("connectionstatechange", self._on_connection_state)
        self._pc.on("track", self._on_track)

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self._pc

    def add_transceiver(
        self, track_or_kind: MediaStreamTrack | str, direction: Direction
    ) -> Any:
        transceiver = self._pc.addTransceiver(track_or_kind, direction=direction.value)
        return transceiver.sender

    async def set_encoding_parameters(
        self, sender: Any, *, max_bitrate: int, max_framerate: int
    ) -> None:
        raise TransportNotSupportedError("aiortc does not expose per-sender encoding parameters")

    async def create_offer(self) -> str:
        offer = await self._pc.createOffer()
        return offer.sdp

    async def set_local_description(self, sdp: str) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        description = self._pc.localDescription
        if description is not None:
            for line in description.sdp.splitlines():
                if line.startswith("a=candidate:"):
                    self.callbacks.on_ice_candidate(line[2:])
        self.callbacks.on_ice_candidate(None)
        if self._pc.iceGatheringState == "complete":
            self.callbacks.on_ice_gathering_state("complete")

    async def set_remote_description(self, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    @property
    def local_description(self) -> str | None:
        description = self._pc.localDescription
        return description.sdp if description is not None else None

    @property
    def ice_connection_state(self) -> str:
        return self._pc.iceConnectionState

    @property
    def ice_gathering_state(self) -> str:
        return self._pc.iceGatheringState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    def senders(self) -> Sequence[Any]:
        return self._pc.getSenders()

    async def replace_track(self, sender: Any, track: MediaStreamTrack | None) -> None:
        result = sender.replaceTrack(track)
        if inspect.isawaitable(result):
            await result

    async def get_stats(self) -> StatsReport:
        report: dict[str, dict[str, Any]] = {}
        raw = await self._pc.getStats()
        for key, value in raw.items():
            report[str(key)] = _stats_to_dict(value)
        report.update(self._selected_pair_stats())
        return report

    def _selected_pair_stats(self) -> dict[str, dict[str, Any]]:
        # aioice keeps the nominated pair on the private connection object.
        for transceiver in self._pc.getTransceivers():
            dtls = getattr(transceiver.sender, "transport", None)
            ice = getattr(dtls, "transport", None)
            connection = getattr(ice, "_connection", None)
            nominated = getattr(connection, "_nominated", None) or {}
            for component, pair in nominated.items():
                local = getattr(pair, "local_candidate", None)
                remote = getattr(pair, "remote_candidate", None)
                if local is None or remote is None:
                    continue
                suffix = f"{transceiver.mid or 0}_{component}"
                pair_id = f"CP{suffix}"
                return {
                    f"T{suffix}": {
                        "id": f"T{suffix}",
                        "type": "transport",
                        "selectedCandidatePairId": pair_id,
                    },
                    pair_id: {
                        "id": pair_id,
                        "type": "candidate-pair",
                        "state": "succeeded",
                        "localCandidateId": f"L{suffix}",
                        "remoteCandidateId": f"R{suffix}",
                    },
                    f"L{suffix}": {
                        "id": f"L{suffix}",
                        "type": "local-candidate",
                        "candidateType": local.type,
                        "protocol": str(local.transport).lower(),
                        "address": local.host,
                        "port": local.port,
                    },
                    f"R{suffix}": {
                        "id": f"R{suffix}",
                        "type": "remote-candidate",
                        "candidateType": remote.type,
                        "protocol": str(remote.transport).lower(),
                        "address": remote.host,
                        "port": remote.port,
                    },
                }
        logger.debug("No nominated ICE candidate pair available for transport stats")
        return {}

    async def close(self) -> None:
        await self._pc.close()

    def _on_ice_connection_state(self) -> None:
        self.callbacks.on_ice_connection_state(self._pc.iceConnectionState)

    def _on_ice_gathering_state(self) -> None:
        # Completion is reported by set_local_description after the replay.
        if self._pc.iceGatheringState != "complete":
            self.callbacks.on_ice_gathering_state(self._pc.iceGatheringState)

    def _on_connection_state(self) -> None:
        self.callbacks.on_connection_state(self._pc.connectionState)

    def _on_track(self, track: MediaStreamTrack) -> None:
        self.callbacks.on_track(track)


__all__ = [
    "AiortcTransport",
    "Direction",
    "MediaSource",
    "MediaTransport",
    "TransportCallbacks",
    "TransportConfig",
    "TransportError",
    "TransportFactory",
    "TransportNotSupportedError",
]
