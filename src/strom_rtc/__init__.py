"""strom-rtc: WHIP ingest and WHEP playback session negotiation."""

from .config import ClientConfig, IceServer, NegotiationTimings, SessionPolicy
from .observer import LogLevel, SessionObserver
from .session import (
    AlreadyConnectedError,
    MediaAcquisitionError,
    NegotiationError,
    NoActiveSenderError,
    SessionNegotiator,
    SessionState,
    SwapError,
    TransportInfo,
    WhepClient,
    WhipClient,
)
from .signaling import (
    ConnectError,
    SignalingAbortedError,
    SignalingConnectionError,
    SignalingError,
)
from .version import APP_VERSION

__all__ = [
    "APP_VERSION",
    "AlreadyConnectedError",
    "ClientConfig",
    "ConnectError",
    "IceServer",
    "LogLevel",
    "MediaAcquisitionError",
    "NegotiationError",
    "NegotiationTimings",
    "NoActiveSenderError",
    "SessionNegotiator",
    "SessionObserver",
    "SessionPolicy",
    "SessionState",
    "SignalingAbortedError",
    "SignalingConnectionError",
    "SignalingError",
    "SwapError",
    "TransportInfo",
    "WhepClient",
    "WhipClient",
]
