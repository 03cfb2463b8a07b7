"""Local media sources: synthetic test signals and file playback."""
from __future__ import annotations

import asyncio
import logging
import math
import time
from fractions import Fraction
from typing import Iterable, Sequence

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamError, VideoStreamTrack
from av import AudioFrame, VideoFrame

from .transport import MediaSource

logger = logging.getLogger(__name__)

AUDIO_SAMPLE_RATE = 48000
AUDIO_PTIME = 0.020

# RGB colour bars, left to right.
COLOUR_BARS = (
    (235, 235, 235),
    (235, 235, 16),
    (16, 235, 235),
    (16, 235, 16),
    (235, 16, 235),
    (235, 16, 16),
    (16, 16, 235),
    (16, 16, 16),
)


def colour_bars(width: int, height: int) -> np.ndarray:
    """Return an ``rgb24`` frame of vertical colour bars."""

    if width <= 0 or height <= 0:
        raise ValueError("Frame dimensions must be positive")
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    bar_width = max(1, math.ceil(width / len(COLOUR_BARS)))
    for index, colour in enumerate(COLOUR_BARS):
        frame[:, index * bar_width : (index + 1) * bar_width] = colour
    return frame


class SyntheticVideoTrack(VideoStreamTrack):
    """Video track producing scrolling colour bars."""

    def __init__(self, width: int = 640, height: int = 480, *, step: int = 4) -> None:
        super().__init__()
        self._pattern = colour_bars(width, height)
        self._step = step
        self._counter = 0

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        shifted = np.roll(self._pattern, self._counter * self._step, axis=1)
        self._counter += 1
        frame = VideoFrame.from_ndarray(shifted, format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class ToneAudioTrack(AudioStreamTrack):
    """Stereo 16-bit sine tone, paced in real time."""

    def __init__(self, frequency: float = 440.0, *, amplitude: float = 0.2) -> None:
        super().__init__()
        if frequency <= 0:
            raise ValueError("frequency must be positive")
        if not 0.0 <= amplitude <= 1.0:
            raise ValueError("amplitude must be between 0 and 1")
        self.frequency = frequency
        self.amplitude = amplitude
        self._start: float | None = None
        self._timestamp = 0

    def samples(self, offset: int, count: int) -> np.ndarray:
        """Return *count* interleaved stereo samples starting at *offset*."""

        t = (np.arange(count) + offset) / AUDIO_SAMPLE_RATE
        mono = np.sin(2 * np.pi * self.frequency * t) * self.amplitude * 32767
        return np.repeat(mono.astype(np.int16), 2)

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        count = int(AUDIO_PTIME * AUDIO_SAMPLE_RATE)
        if self._start is None:
            self._start = time.time()
            self._timestamp = 0
        else:
            self._timestamp += count
            wait = self._start + (self._timestamp / AUDIO_SAMPLE_RATE) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        frame = AudioFrame.from_ndarray(
            self.samples(self._timestamp, count).reshape(1, -1),
            format="s16",
            layout="stereo",
        )
        frame.sample_rate = AUDIO_SAMPLE_RATE
        frame.pts = self._timestamp
        frame.time_base = Fraction(1, AUDIO_SAMPLE_RATE)
        return frame


class TrackSource(MediaSource):
    """Media source wrapping already created tracks."""

    def __init__(self, tracks: Iterable[MediaStreamTrack]) -> None:
        self._tracks = tuple(tracks)

    def tracks(self) -> Sequence[MediaStreamTrack]:
        return self._tracks


def synthetic_source(
    *,
    video: bool = True,
    audio: bool = True,
    width: int = 640,
    height: int = 480,
    frequency: float = 440.0,
) -> TrackSource:
    """Return a source with colour bars and/or a stereo tone."""

    tracks: list[MediaStreamTrack] = []
    if audio:
        tracks.append(ToneAudioTrack(frequency))
    if video:
        tracks.append(SyntheticVideoTrack(width, height))
    return TrackSource(tracks)


class PlayerSource(MediaSource):
    """Media source reading a file or device through aiortc's ``MediaPlayer``."""

    def __init__(
        self,
        file: str,
        *,
        format: str | None = None,
        options: dict[str, str] | None = None,
        loop: bool = False,
    ) -> None:
        self.file = file
        self._player = MediaPlayer(file, format=format, options=options or {}, loop=loop)

    def tracks(self) -> Sequence[MediaStreamTrack]:
        tracks = [track for track in (self._player.audio, self._player.video) if track is not None]
        if not tracks:
            logger.warning("Media file %s has no audio or video stream", self.file)
        return tracks


__all__ = [
    "AUDIO_SAMPLE_RATE",
    "PlayerSource",
    "SyntheticVideoTrack",
    "ToneAudioTrack",
    "TrackSource",
    "colour_bars",
    "synthetic_source",
]
