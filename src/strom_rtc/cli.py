"""Command line entry point: ``publish``, ``play`` and ``diagnose``."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import Any, Sequence, TextIO

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from . import diagnostics
from .config import ClientConfig, SessionPolicy, load_client_config
from .event_log import SessionEventLog
from .observer import EventLogObserver, LogLevel, ObserverGroup, SessionObserver
from .session import SessionNegotiator, SessionState, WhepClient, WhipClient
from .signaling import ConnectError
from .tracks import PlayerSource, synthetic_source
from .transport import MediaSource
from .version import APP_VERSION

logger = logging.getLogger(__name__)


class ConsoleObserver(SessionObserver):
    """Print session diagnostics and remember when the session ended."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self.finished = asyncio.Event()
        self.connected = False

    def _write(self, text: str) -> None:
        print(text, file=self._stream if self._stream is not None else sys.stderr)

    def on_log(self, message: str, level: LogLevel) -> None:
        self._write(f"{level.value.upper():<7} {message}")

    def on_status(self, state: SessionState) -> None:
        if state is SessionState.CLOSED:
            self.finished.set()

    def on_error(self, message: str) -> None:
        self._write(f"ERROR   {message}")

    def on_connected(self) -> None:
        self.connected = True

    def on_disconnected(self) -> None:
        self.finished.set()


class TrackSink(SessionObserver):
    """Hand received tracks to an aiortc media sink."""

    def __init__(self, sink: Any) -> None:
        self.sink = sink

    def on_track(self, track: Any) -> None:
        self.sink.addTrack(track)


def _add_session_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("endpoint", help="WHIP/WHEP endpoint URL.")
    parser.add_argument("--config", help="JSON client configuration file.")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Forward verbose negotiation diagnostics to the console.",
    )
    parser.add_argument(
        "--relay",
        action="store_true",
        help="Only offer TURN relay candidates.",
    )
    parser.add_argument("--ice-config-url", help="URL of the ICE server configuration.")
    parser.add_argument("--max-bitrate", type=int, help="Maximum video bitrate in kbps.")
    parser.add_argument(
        "--duration",
        type=float,
        help="Stop after this many seconds (default: run until the session ends).",
    )
    parser.add_argument("--event-log", help="Append session events to this JSONL file.")


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the strom-rtc CLI."""

    parser = argparse.ArgumentParser(
        prog="strom-rtc",
        description="WHIP ingest and WHEP playback client",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase Python log verbosity (repeat for debug output).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    publish = commands.add_parser("publish", help="Send media to a WHIP endpoint.")
    _add_session_arguments(publish)
    publish.add_argument("--file", help="Media file or device to send instead of a test pattern.")
    publish.add_argument("--loop", action="store_true", help="Loop the media file.")
    publish.add_argument("--no-audio", action="store_true", help="Do not send the test tone.")
    publish.add_argument("--no-video", action="store_true", help="Do not send the test pattern.")
    publish.add_argument("--tone", type=float, default=440.0, help="Test tone frequency in Hz.")

    play = commands.add_parser("play", help="Receive media from a WHEP endpoint.")
    _add_session_arguments(play)
    play.add_argument("--record", help="Record received media to this file.")

    diagnose = commands.add_parser("diagnose", help="Check the WebRTC stack and an endpoint.")
    diagnostics.add_arguments(diagnose)
    return parser


def build_config(args: argparse.Namespace) -> ClientConfig:
    """Combine an optional configuration file with command line overrides."""

    if args.config:
        config = dataclasses.replace(load_client_config(args.config), endpoint=args.endpoint)
    else:
        config = ClientConfig(endpoint=args.endpoint)

    policy: SessionPolicy = config.policy
    if args.relay:
        policy = dataclasses.replace(policy, ice_transport_policy="relay")
    if args.max_bitrate is not None:
        maximum = args.max_bitrate
        policy = dataclasses.replace(
            policy,
            min_bitrate_kbps=min(policy.min_bitrate_kbps, maximum),
            start_bitrate_kbps=min(policy.start_bitrate_kbps, maximum),
            max_bitrate_kbps=maximum,
        )
    config = config.with_policy(policy)
    if args.ice_config_url:
        config = dataclasses.replace(config, ice_config_url=args.ice_config_url)
    if args.debug:
        config = dataclasses.replace(config, debug=True)
    return config


def _observers(
    args: argparse.Namespace, console: ConsoleObserver, *extra: SessionObserver
) -> SessionObserver:
    observers: list[SessionObserver] = [console, *extra]
    if args.event_log:
        observers.append(
            EventLogObserver(SessionEventLog(args.event_log), include_debug=args.debug)
        )
    return ObserverGroup(observers)


async def _wait_until_finished(console: ConsoleObserver, duration: float | None) -> None:
    if duration is None:
        await console.finished.wait()
        return
    try:
        await asyncio.wait_for(console.finished.wait(), duration)
    except asyncio.TimeoutError:
        logger.info("Stopping after %gs", duration)


async def _connect(client: SessionNegotiator, media: MediaSource | None) -> bool:
    try:
        await client.connect(media)
    except ConnectError as exc:
        print(f"Connection failed: {exc}", file=sys.stderr)
        return False
    return True


async def publish(args: argparse.Namespace) -> int:
    config = build_config(args)
    console = ConsoleObserver()
    if args.file:
        media: MediaSource = PlayerSource(args.file, loop=args.loop)
    else:
        media = synthetic_source(
            video=not args.no_video, audio=not args.no_audio, frequency=args.tone
        )
    async with WhipClient(config, observer=_observers(args, console)) as client:
        if not await _connect(client, media):
            return 1
        await _wait_until_finished(console, args.duration)
    return 0 if console.connected else 1


async def play(args: argparse.Namespace) -> int:
    config = build_config(args)
    console = ConsoleObserver()
    sink = MediaRecorder(args.record) if args.record else MediaBlackhole()
    observer = _observers(args, console, TrackSink(sink))
    async with WhepClient(config, observer=observer) as client:
        if not await _connect(client, None):
            return 1
        await sink.start()
        try:
            await _wait_until_finished(console, args.duration)
        finally:
            await sink.stop()
    return 0 if console.connected else 1


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "diagnose":
        return diagnostics.run_from_args(args)
    try:
        build_config(args)
    except ValueError as exc:
        parser.error(str(exc))
    command = publish if args.command == "publish" else play
    try:
        return asyncio.run(command(args))
    except KeyboardInterrupt:
        return 130


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``python -m strom_rtc`` and the console script."""

    return run(argv)


__all__ = [
    "ConsoleObserver",
    "TrackSink",
    "build_config",
    "build_parser",
    "main",
    "play",
    "publish",
    "run",
]
