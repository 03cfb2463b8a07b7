"""Configuration values for WHIP/WHEP sessions."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Sequence
from urllib.parse import urlsplit, urlunsplit

ICE_TRANSPORT_POLICIES = ("all", "relay")

DEFAULT_MIN_BITRATE_KBPS = 1000
DEFAULT_START_BITRATE_KBPS = 2000
DEFAULT_MAX_BITRATE_KBPS = 6000
DEFAULT_MAX_FRAMERATE = 30

DEFAULT_GATHER_TIMEOUT = 2.0
DEFAULT_SIGNALING_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_DEGRADED_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 10.0

ICE_CONFIG_PATH = "/api/ice-servers"


def _positive_int(value: object, name: str) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if number <= 0:
        raise ValueError(f"{name} must be positive")
    return number


def _non_negative_float(value: object, name: str) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"{name} must be a non-negative finite value")
    return number


@dataclass(frozen=True, slots=True)
class IceServer:
    """A STUN or TURN server handed to the media transport."""

    urls: tuple[str, ...]
    username: str | None = None
    credential: str | None = None

    def __post_init__(self) -> None:
        urls = self.urls
        if isinstance(urls, str):
            urls = (urls,)
        cleaned = tuple(str(url).strip() for url in urls if str(url).strip())
        if not cleaned:
            raise ValueError("ICE server requires at least one URL")
        object.__setattr__(self, "urls", cleaned)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "IceServer":
        urls = payload.get("urls")
        if urls is None:
            urls = payload.get("url")
        if isinstance(urls, str):
            urls = (urls,)
        if not isinstance(urls, Sequence):
            raise ValueError("ICE server 'urls' must be a string or a list of strings")
        username = payload.get("username")
        credential = payload.get("credential")
        return cls(
            urls=tuple(str(url) for url in urls),
            username=str(username) if username else None,
            credential=str(credential) if credential else None,
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"urls": list(self.urls)}
        if self.username is not None:
            payload["username"] = self.username
        if self.credential is not None:
            payload["credential"] = self.credential
        return payload


@dataclass(frozen=True, slots=True)
class SessionPolicy:
    """Media policy applied to every offer produced by a session."""

    min_bitrate_kbps: int = DEFAULT_MIN_BITRATE_KBPS
    start_bitrate_kbps: int = DEFAULT_START_BITRATE_KBPS
    max_bitrate_kbps: int = DEFAULT_MAX_BITRATE_KBPS
    max_framerate: int = DEFAULT_MAX_FRAMERATE
    video_bandwidth_kbps: int | None = None
    force_stereo: bool = True
    ice_transport_policy: str = "all"
    ice_servers: tuple[IceServer, ...] = ()

    def __post_init__(self) -> None:
        minimum = _positive_int(self.min_bitrate_kbps, "min_bitrate_kbps")
        start = _positive_int(self.start_bitrate_kbps, "start_bitrate_kbps")
        maximum = _positive_int(self.max_bitrate_kbps, "max_bitrate_kbps")
        if not minimum <= start <= maximum:
            raise ValueError("Bitrates must satisfy min <= start <= max")
        framerate = _positive_int(self.max_framerate, "max_framerate")
        if framerate > 120:
            raise ValueError("max_framerate must be at most 120")
        bandwidth = self.video_bandwidth_kbps
        if bandwidth is not None:
            bandwidth = _positive_int(bandwidth, "video_bandwidth_kbps")
        policy = str(self.ice_transport_policy).strip().lower()
        if policy not in ICE_TRANSPORT_POLICIES:
            raise ValueError("ice_transport_policy must be 'all' or 'relay'")
        object.__setattr__(self, "min_bitrate_kbps", minimum)
        object.__setattr__(self, "start_bitrate_kbps", start)
        object.__setattr__(self, "max_bitrate_kbps", maximum)
        object.__setattr__(self, "max_framerate", framerate)
        object.__setattr__(self, "video_bandwidth_kbps", bandwidth)
        object.__setattr__(self, "force_stereo", bool(self.force_stereo))
        object.__setattr__(self, "ice_transport_policy", policy)
        object.__setattr__(self, "ice_servers", tuple(self.ice_servers))

    @property
    def bandwidth_kbps(self) -> int:
        """Return the b=AS value written into the video section."""

        if self.video_bandwidth_kbps is not None:
            return self.video_bandwidth_kbps
        return self.max_bitrate_kbps

    @property
    def max_bitrate_bps(self) -> int:
        return self.max_bitrate_kbps * 1000

    @property
    def relay_only(self) -> bool:
        return self.ice_transport_policy == "relay"

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionPolicy":
        values: dict[str, Any] = {}
        for key in (
            "min_bitrate_kbps",
            "start_bitrate_kbps",
            "max_bitrate_kbps",
            "max_framerate",
            "video_bandwidth_kbps",
            "force_stereo",
            "ice_transport_policy",
        ):
            if key in payload:
                values[key] = payload[key]
        servers = payload.get("ice_servers")
        if servers:
            values["ice_servers"] = tuple(IceServer.from_dict(item) for item in servers)
        return cls(**values)

    def to_dict(self) -> dict[str, object]:
        return {
            "min_bitrate_kbps": self.min_bitrate_kbps,
            "start_bitrate_kbps": self.start_bitrate_kbps,
            "max_bitrate_kbps": self.max_bitrate_kbps,
            "max_framerate": self.max_framerate,
            "video_bandwidth_kbps": self.video_bandwidth_kbps,
            "force_stereo": self.force_stereo,
            "ice_transport_policy": self.ice_transport_policy,
            "ice_servers": [server.to_dict() for server in self.ice_servers],
        }


DEFAULT_SESSION_POLICY = SessionPolicy()


@dataclass(frozen=True, slots=True)
class NegotiationTimings:
    """Deadlines and retry limits used while negotiating a session."""

    gather_timeout: float = DEFAULT_GATHER_TIMEOUT
    signaling_attempts: int = DEFAULT_SIGNALING_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    degraded_timeout: float = DEFAULT_DEGRADED_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "gather_timeout", _non_negative_float(self.gather_timeout, "gather_timeout")
        )
        object.__setattr__(
            self,
            "signaling_attempts",
            _positive_int(self.signaling_attempts, "signaling_attempts"),
        )
        object.__setattr__(
            self, "retry_delay", _non_negative_float(self.retry_delay, "retry_delay")
        )
        object.__setattr__(
            self,
            "degraded_timeout",
            _non_negative_float(self.degraded_timeout, "degraded_timeout"),
        )
        timeout = _non_negative_float(self.request_timeout, "request_timeout")
        if timeout == 0:
            raise ValueError("request_timeout must be positive")
        object.__setattr__(self, "request_timeout", timeout)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "NegotiationTimings":
        known = {
            "gather_timeout",
            "signaling_attempts",
            "retry_delay",
            "degraded_timeout",
            "request_timeout",
        }
        return cls(**{key: value for key, value in payload.items() if key in known})

    def to_dict(self) -> dict[str, float | int]:
        return {
            "gather_timeout": self.gather_timeout,
            "signaling_attempts": self.signaling_attempts,
            "retry_delay": self.retry_delay,
            "degraded_timeout": self.degraded_timeout,
            "request_timeout": self.request_timeout,
        }


DEFAULT_TIMINGS = NegotiationTimings()


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Everything a negotiator needs to know about one signalling endpoint."""

    endpoint: str
    policy: SessionPolicy = field(default_factory=SessionPolicy)
    timings: NegotiationTimings = field(default_factory=NegotiationTimings)
    ice_config_url: str | None = None
    debug: bool = False

    def __post_init__(self) -> None:
        endpoint = str(self.endpoint).strip()
        parts = urlsplit(endpoint)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("endpoint must be an absolute http(s) URL")
        object.__setattr__(self, "endpoint", endpoint)
        ice_url = self.ice_config_url
        if ice_url is not None:
            ice_url = str(ice_url).strip() or None
        object.__setattr__(self, "ice_config_url", ice_url)
        object.__setattr__(self, "debug", bool(self.debug))

    def with_policy(self, policy: SessionPolicy) -> "ClientConfig":
        return replace(self, policy=policy)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ClientConfig":
        endpoint = payload.get("endpoint")
        if not isinstance(endpoint, str):
            raise ValueError("Configuration requires an 'endpoint' string")
        policy_payload = payload.get("policy") or {}
        timings_payload = payload.get("timings") or {}
        if not isinstance(policy_payload, Mapping) or not isinstance(timings_payload, Mapping):
            raise ValueError("'policy' and 'timings' must be objects")
        return cls(
            endpoint=endpoint,
            policy=SessionPolicy.from_dict(policy_payload),
            timings=NegotiationTimings.from_dict(timings_payload),
            ice_config_url=payload.get("ice_config_url"),
            debug=bool(payload.get("debug", False)),
        )


def default_ice_config_url(endpoint: str) -> str:
    """Return the ICE configuration URL served next to *endpoint*."""

    parts = urlsplit(endpoint)
    return urlunsplit((parts.scheme, parts.netloc, ICE_CONFIG_PATH, "", ""))


def parse_ice_configuration(
    payload: object, base: SessionPolicy = DEFAULT_SESSION_POLICY
) -> SessionPolicy:
    """Merge an ICE configuration response into *base*.

    Non-empty ``ice_servers`` replace the configured servers and a present
    ``ice_transport_policy`` replaces the configured policy. Anything else is
    left untouched.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("ICE configuration must be a JSON object")
    updates: dict[str, Any] = {}
    servers = payload.get("ice_servers")
    if servers:
        if not isinstance(servers, list):
            raise ValueError("'ice_servers' must be a list")
        updates["ice_servers"] = tuple(
            IceServer.from_dict(item) for item in servers if isinstance(item, Mapping)
        )
    transport_policy = payload.get("ice_transport_policy")
    if transport_policy:
        updates["ice_transport_policy"] = transport_policy
    if not updates:
        return base
    return replace(base, **updates)


def load_client_config(path: Path | str) -> ClientConfig:
    """Load a :class:`ClientConfig` from a JSON file."""

    config_path = Path(path)
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Unable to read configuration file {config_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Configuration file {config_path} is not valid JSON") from exc
    if not isinstance(payload, Mapping):
        raise ValueError("Configuration file must contain a JSON object")
    return ClientConfig.from_dict(payload)


__all__ = [
    "ClientConfig",
    "DEFAULT_SESSION_POLICY",
    "DEFAULT_TIMINGS",
    "IceServer",
    "NegotiationTimings",
    "SessionPolicy",
    "default_ice_config_url",
    "load_client_config",
    "parse_ice_configuration",
]
