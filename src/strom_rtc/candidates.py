"""Local ICE candidate bookkeeping."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterator

logger = logging.getLogger(__name__)

CANDIDATE_TYPES = ("host", "srflx", "prflx", "relay")


@dataclass(frozen=True, slots=True)
class Candidate:
    """One network path advertised by the local ICE agent."""

    foundation: str
    component: int
    protocol: str
    priority: int
    address: str
    port: int
    type: str
    related_address: str | None = None
    related_port: int | None = None
    raw: str = ""

    def describe(self) -> str:
        text = f"type={self.type} protocol={self.protocol} ip={self.address}:{self.port}"
        if self.related_address is not None:
            text += f" relay-from={self.related_address}:{self.related_port}"
        return text


def parse_candidate(line: str) -> Candidate:
    """Parse an ICE candidate attribute.

    Accepts the bare ``candidate:...`` form as well as the SDP attribute form
    ``a=candidate:...``. Raises :class:`ValueError` when the line is not a
    well-formed candidate.
    """

    text = line.strip()
    if text.startswith("a="):
        text = text[2:]
    if text.startswith("candidate:"):
        text = text[len("candidate:"):]
    parts = text.split()
    if len(parts) < 8 or parts[6] != "typ":
        raise ValueError(f"Malformed ICE candidate: {line!r}")
    try:
        component = int(parts[1])
        priority = int(parts[3])
        port = int(parts[5])
    except ValueError as exc:
        raise ValueError(f"Malformed ICE candidate: {line!r}") from exc

    related_address: str | None = None
    related_port: int | None = None
    extras = parts[8:]
    for index in range(0, len(extras) - 1):
        key, value = extras[index], extras[index + 1]
        if key == "raddr":
            related_address = value
        elif key == "rport":
            try:
                related_port = int(value)
            except ValueError:
                related_port = None

    return Candidate(
        foundation=parts[0],
        component=component,
        protocol=parts[2].lower(),
        priority=priority,
        address=parts[4],
        port=port,
        type=parts[7].lower(),
        related_address=related_address,
        related_port=related_port,
        raw=line.strip(),
    )


class CandidateTracker:
    """Accumulate the candidates gathered during one connection attempt."""

    def __init__(self) -> None:
        self._candidates: list[Candidate] = []
        self._exhausted = False

    def __iter__(self) -> Iterator[Candidate]:
        return iter(tuple(self._candidates))

    def __len__(self) -> int:
        return len(self._candidates)

    @property
    def candidates(self) -> tuple[Candidate, ...]:
        return tuple(self._candidates)

    @property
    def exhausted(self) -> bool:
        """Return ``True`` once the end-of-candidates marker was seen."""

        return self._exhausted

    def add(self, line: str | None) -> Candidate | None:
        """Record *line*; ``None`` marks the end of local gathering."""

        if line is None:
            self._exhausted = True
            return None
        if not line.strip():
            self._exhausted = True
            return None
        try:
            candidate = parse_candidate(line)
        except ValueError:
            logger.debug("Ignoring malformed ICE candidate %r", line)
            return None
        self._candidates.append(candidate)
        return candidate

    def reset(self) -> None:
        self._candidates.clear()
        self._exhausted = False

    def count_by_type(self) -> dict[str, int]:
        counts = Counter(candidate.type for candidate in self._candidates)
        return dict(counts)

    def summary(self) -> list[str]:
        """Return human readable lines describing the gathered candidates."""

        lines = ["=== LOCAL CANDIDATE SUMMARY ==="]
        for kind, count in self.count_by_type().items():
            lines.append(f"  {kind}: {count}")
        if not self._candidates:
            lines.append("  (no candidates gathered - TURN server may be unreachable)")
        lines.append("================================")
        return lines


__all__ = ["CANDIDATE_TYPES", "Candidate", "CandidateTracker", "parse_candidate"]
