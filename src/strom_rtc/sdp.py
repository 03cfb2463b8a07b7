"""Pure SDP rewrites applied to local offers.

Every function takes SDP text and returns SDP text. They keep the input's
line endings, only touch the lines they are responsible for and return the
input unchanged when the section or codec they look for is absent. Applying
any of them twice gives the same result as applying it once.
"""
from __future__ import annotations

import re
from typing import Iterable, TYPE_CHECKING

from .candidates import parse_candidate

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .config import SessionPolicy

_OPUS_RTPMAP = re.compile(r"^a=rtpmap:(\d+) opus/48000/2\b", re.IGNORECASE)

META_CODEC_PREFIXES = ("rtx/", "red/", "ulpfec/", "flexfec")

BITRATE_HINT_KEYS = (
    "x-google-min-bitrate",
    "x-google-start-bitrate",
    "x-google-max-bitrate",
)


def _split(sdp: str) -> tuple[list[str], str]:
    eol = "\r\n" if "\r\n" in sdp else "\n"
    return sdp.split(eol), eol


def _is_media_line(line: str) -> bool:
    return line.startswith("m=")


def _payload_type(line: str, prefix: str) -> str:
    return line[len(prefix):].split(" ", 1)[0].strip()


def _append_fmtp_params(line: str, params: Iterable[str]) -> str:
    extra = list(params)
    if not extra:
        return line
    head, _, existing = line.partition(" ")
    if not existing.strip():
        return f"{head} {';'.join(extra)}"
    return line + ";" + ";".join(extra)


def enable_opus_stereo(sdp: str) -> str:
    """Request stereo opus when a 48kHz/2-channel opus codec is offered."""

    lines, eol = _split(sdp)
    opus_pt: str | None = None
    for line in lines:
        match = _OPUS_RTPMAP.match(line)
        if match:
            opus_pt = match.group(1)
            break
    if opus_pt is None:
        return sdp

    prefix = f"a=fmtp:{opus_pt} "
    changed = False
    result: list[str] = []
    for line in lines:
        if line.startswith(prefix) and "stereo=" not in line:
            line = _append_fmtp_params(line, ("stereo=1", "sprop-stereo=1"))
            changed = True
        result.append(line)
    return eol.join(result) if changed else sdp


def _video_payload_types(lines: list[str]) -> tuple[list[str], set[str]]:
    """Return the primary and meta payload types of the video sections."""

    primary: list[str] = []
    meta: set[str] = set()
    in_video = False
    for line in lines:
        if _is_media_line(line):
            in_video = line.startswith("m=video")
            continue
        if not in_video or not line.startswith("a=rtpmap:"):
            continue
        rest = line[len("a=rtpmap:"):].split(" ")
        if len(rest) < 2 or not rest[0]:
            continue
        encoding = rest[1].lower()
        if encoding.startswith(META_CODEC_PREFIXES):
            meta.add(rest[0])
        elif rest[0] not in primary:
            primary.append(rest[0])
    return primary, meta


def add_bitrate_hints(sdp: str, min_kbps: int, start_kbps: int, max_kbps: int) -> str:
    """Add encoder bitrate hints to every primary video codec.

    Retransmission, redundancy and FEC payload types never receive hints.
    Primary codecs without a format-parameters line get one inserted after
    their codec map line.
    """

    lines, eol = _split(sdp)
    primary, meta = _video_payload_types(lines)
    if not primary:
        return sdp

    hints = dict(
        zip(BITRATE_HINT_KEYS, (int(min_kbps), int(start_kbps), int(max_kbps)))
    )

    def missing(line: str) -> list[str]:
        return [f"{key}={value}" for key, value in hints.items() if key not in line]

    with_fmtp: set[str] = set()
    in_video = False
    for line in lines:
        if _is_media_line(line):
            in_video = line.startswith("m=video")
        elif in_video and line.startswith("a=fmtp:"):
            with_fmtp.add(_payload_type(line, "a=fmtp:"))

    result: list[str] = []
    changed = False
    in_video = False
    for line in lines:
        if _is_media_line(line):
            in_video = line.startswith("m=video")
            result.append(line)
            continue
        if in_video and line.startswith("a=fmtp:"):
            pt = _payload_type(line, "a=fmtp:")
            if pt in primary and pt not in meta:
                updated = _append_fmtp_params(line, missing(line))
                changed = changed or updated != line
                line = updated
        result.append(line)
        if in_video and line.startswith("a=rtpmap:"):
            pt = _payload_type(line, "a=rtpmap:")
            if pt in primary and pt not in with_fmtp:
                result.append(_append_fmtp_params(f"a=fmtp:{pt}", missing("")))
                with_fmtp.add(pt)
                changed = True
    return eol.join(result) if changed else sdp


def set_video_bandwidth(sdp: str, kbps: int) -> str:
    """Replace the video bandwidth lines with a single ``b=AS`` line."""

    lines, eol = _split(sdp)
    result: list[str] = []
    in_video = False
    for line in lines:
        if _is_media_line(line):
            in_video = line.startswith("m=video")
            result.append(line)
            if in_video:
                result.append(f"b=AS:{int(kbps)}")
            continue
        if in_video and line.startswith("b="):
            continue
        result.append(line)
    return eol.join(result)


def restrict_candidates(sdp: str, allowed_types: Iterable[str]) -> str:
    """Drop ``a=candidate`` lines whose candidate type is not allowed."""

    allowed = {kind.lower() for kind in allowed_types}
    lines, eol = _split(sdp)
    result: list[str] = []
    for line in lines:
        if line.startswith("a=candidate:"):
            try:
                candidate = parse_candidate(line)
            except ValueError:
                result.append(line)
                continue
            if candidate.type not in allowed:
                continue
        result.append(line)
    return eol.join(result)


def video_codecs(sdp: str) -> tuple[str, ...]:
    """Return the primary video codec names declared in *sdp*."""

    lines, _ = _split(sdp)
    primary, _meta = _video_payload_types(lines)
    names: list[str] = []
    in_video = False
    for line in lines:
        if _is_media_line(line):
            in_video = line.startswith("m=video")
            continue
        if in_video and line.startswith("a=rtpmap:"):
            rest = line[len("a=rtpmap:"):].split(" ")
            if len(rest) >= 2 and rest[0] in primary:
                name = rest[1].split("/", 1)[0].upper()
                if name not in names:
                    names.append(name)
    return tuple(names)


def apply_offer_policy(sdp: str, policy: "SessionPolicy") -> str:
    """Apply the stereo, bitrate hint and bandwidth policies to an offer."""

    if policy.force_stereo:
        sdp = enable_opus_stereo(sdp)
    sdp = add_bitrate_hints(
        sdp,
        policy.min_bitrate_kbps,
        policy.start_bitrate_kbps,
        policy.max_bitrate_kbps,
    )
    if "m=video" in sdp:
        sdp = set_video_bandwidth(sdp, policy.bandwidth_kbps)
    return sdp


__all__ = [
    "add_bitrate_hints",
    "apply_offer_policy",
    "enable_opus_stereo",
    "restrict_candidates",
    "set_video_bandwidth",
    "video_codecs",
]
