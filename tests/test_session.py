import asyncio
from typing import Any, Sequence

import pytest

from strom_rtc.config import ClientConfig, NegotiationTimings, SessionPolicy
from strom_rtc.observer import LogLevel, SessionObserver
from strom_rtc.session import (
    AlreadyConnectedError,
    MediaAcquisitionError,
    NoActiveSenderError,
    SessionState,
    TransportInfo,
    WhepClient,
    WhipClient,
    transport_info_from_stats,
)
from strom_rtc.signaling import SignalingClient, SignalingError
from strom_rtc.transport import (
    Direction,
    MediaSource,
    MediaTransport,
    TransportCallbacks,
    TransportConfig,
    TransportError,
    TransportNotSupportedError,
)


def run_async(coro):
    return asyncio.run(coro)


BASE_OFFER = "\r\n".join(
    [
        "v=0",
        "o=- 1 2 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "a=rtpmap:111 opus/48000/2",
        "a=fmtp:111 minptime=10;useinbandfec=1",
        "m=video 9 UDP/TLS/RTP/SAVPF 96 97",
        "a=rtpmap:96 VP8/90000",
        "a=rtpmap:97 rtx/90000",
        "a=fmtp:97 apt=96",
        "",
    ]
)

HOST = "candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host"
RELAY = "candidate:3 1 udp 16777215 198.51.100.4 3478 typ relay raddr 203.0.113.7 rport 50001"

STATS = {
    "T01": {"id": "T01", "type": "transport", "selectedCandidatePairId": "CP1"},
    "CP1": {
        "id": "CP1",
        "type": "candidate-pair",
        "state": "succeeded",
        "localCandidateId": "L1",
        "remoteCandidateId": "R1",
    },
    "L1": {
        "id": "L1",
        "type": "local-candidate",
        "candidateType": "relay",
        "protocol": "udp",
        "relayProtocol": "tcp",
        "address": "198.51.100.4",
        "port": 3478,
    },
    "R1": {
        "id": "R1",
        "type": "remote-candidate",
        "candidateType": "host",
        "protocol": "udp",
        "address": "203.0.113.50",
        "port": 40000,
    },
}


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeSource(MediaSource):
    def __init__(self, *kinds: str) -> None:
        self._tracks = [FakeTrack(kind) for kind in kinds]

    def tracks(self) -> Sequence[Any]:
        return self._tracks


class FakeSender:
    def __init__(self, track: FakeTrack | None, kind: str) -> None:
        self.track = track
        self.kind = kind


class FakeTransport(MediaTransport):
    def __init__(
        self,
        config: TransportConfig,
        callbacks: TransportCallbacks,
        *,
        candidates: Sequence[str] = (HOST, RELAY),
        complete_gathering: bool = True,
        connect_on_answer: bool = True,
        encoding_error: bool = False,
        encoding_unsupported: bool = False,
        remote_tracks: Sequence[str] = (),
    ) -> None:
        self.config = config
        self.callbacks = callbacks
        self.candidates = list(candidates)
        self.complete_gathering = complete_gathering
        self.connect_on_answer = connect_on_answer
        self.encoding_error = encoding_error
        self.encoding_unsupported = encoding_unsupported
        self.remote_tracks = list(remote_tracks)
        self.transceivers: list[tuple[str, Direction]] = []
        self.encodings: list[dict[str, int]] = []
        self._senders: list[FakeSender] = []
        self._local: str | None = None
        self.remote: str | None = None
        self.closed = False
        self._ice_state = "new"
        self._gathering_state = "new"

    def add_transceiver(self, track_or_kind: Any, direction: Direction) -> FakeSender:
        if isinstance(track_or_kind, str):
            sender = FakeSender(None, track_or_kind)
        else:
            sender = FakeSender(track_or_kind, track_or_kind.kind)
        self.transceivers.append((sender.kind, direction))
        self._senders.append(sender)
        return sender

    async def set_encoding_parameters(
        self, sender: Any, *, max_bitrate: int, max_framerate: int
    ) -> None:
        if self.encoding_unsupported:
            raise TransportNotSupportedError("no per-sender encodings")
        if self.encoding_error:
            raise TransportError("encoding parameters rejected")
        self.encodings.append({"max_bitrate": max_bitrate, "max_framerate": max_framerate})

    async def create_offer(self) -> str:
        return BASE_OFFER

    async def set_local_description(self, sdp: str) -> None:
        self._local = sdp + "".join(f"a={line}\r\n" for line in self.candidates)
        self._gathering_state = "gathering"
        self.callbacks.on_ice_gathering_state("gathering")
        for line in self.candidates:
            self.callbacks.on_ice_candidate(line)
        if self.complete_gathering:
            self.callbacks.on_ice_candidate(None)
            self._gathering_state = "complete"
            self.callbacks.on_ice_gathering_state("complete")

    async def set_remote_description(self, sdp: str) -> None:
        self.remote = sdp
        for kind in self.remote_tracks:
            self.callbacks.on_track(FakeTrack(kind))
        if self.connect_on_answer:
            self.emit_ice("checking")
            self.emit_ice("connected")

    def emit_ice(self, state: str) -> None:
        self._ice_state = state
        self.callbacks.on_ice_connection_state(state)

    def emit_connection(self, state: str) -> None:
        self.callbacks.on_connection_state(state)

    @property
    def local_description(self) -> str | None:
        return self._local

    @property
    def ice_connection_state(self) -> str:
        return self._ice_state

    @property
    def ice_gathering_state(self) -> str:
        return self._gathering_state

    def senders(self) -> Sequence[Any]:
        return list(self._senders)

    async def replace_track(self, sender: Any, track: Any) -> None:
        sender.track = track

    async def get_stats(self):
        return STATS

    async def close(self) -> None:
        self.closed = True
        self._ice_state = "closed"


class FakeTransportFactory:
    def __init__(self, **options: Any) -> None:
        self.options = options
        self.created: list[FakeTransport] = []

    def __call__(self, config: TransportConfig, callbacks: TransportCallbacks) -> FakeTransport:
        transport = FakeTransport(config, callbacks, **self.options)
        self.created.append(transport)
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.created[-1]


class RecordingObserver(SessionObserver):
    def __init__(self) -> None:
        self.sessions: list[str] = []
        self.logs: list[tuple[str, LogLevel]] = []
        self.states: list[SessionState] = []
        self.errors: list[str] = []
        self.connected = 0
        self.disconnected = 0
        self.tracks: list[Any] = []

    def on_session_started(self, session_id: str) -> None:
        self.sessions.append(session_id)

    def on_log(self, message: str, level: LogLevel) -> None:
        self.logs.append((message, level))

    def on_status(self, state: SessionState) -> None:
        self.states.append(state)

    def on_error(self, message: str) -> None:
        self.errors.append(message)

    def on_connected(self) -> None:
        self.connected += 1

    def on_disconnected(self) -> None:
        self.disconnected += 1

    def on_track(self, track: Any) -> None:
        self.tracks.append(track)

    def messages(self) -> list[str]:
        return [message for message, _level in self.logs]


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []
        self.hook = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.hook is not None:
            await self.hook()


TIMINGS = NegotiationTimings(gather_timeout=0.05, degraded_timeout=0.02)


def _client(
    server,
    http,
    factory: FakeTransportFactory,
    *,
    cls=WhipClient,
    observer: SessionObserver | None = None,
    sleep: SleepRecorder | None = None,
    policy: SessionPolicy | None = None,
    debug: bool = False,
    ice_config_url: str | None = None,
):
    config = ClientConfig(
        endpoint=server.url("/whip/cam"),
        policy=policy or SessionPolicy(),
        timings=TIMINGS,
        ice_config_url=ice_config_url,
        debug=debug,
    )
    signaling = SignalingClient(TIMINGS, client=http, sleep=sleep or SleepRecorder())
    return cls(config, observer=observer, signaling=signaling, transport_factory=factory)


def test_publish_retries_then_connects(signaling_server):
    server = signaling_server([503, 503, 201], location="/r/1", answer="valid-answer")
    factory = FakeTransportFactory()
    observer = RecordingObserver()
    sleep = SleepRecorder()
    media = FakeSource("audio", "video")

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer, sleep=sleep)
            await client.connect(media)

            session = client.session
            assert session is not None
            assert session.state is SessionState.CONNECTED
            assert session.resource_handle == "http://testserver/r/1"
            assert client.is_connected()
            assert len(session.id) == 6

            await client.disconnect()
            assert session.state is SessionState.CLOSED
            assert session.resource_handle is None
            await client.disconnect()

    run_async(_test())

    transport = factory.transport
    assert sleep.delays == [2.0, 2.0]
    assert transport.remote == "valid-answer"
    assert transport.transceivers == [("audio", Direction.SEND_ONLY), ("video", Direction.SEND_ONLY)]
    assert transport.encodings == [{"max_bitrate": 6_000_000, "max_framerate": 30}]
    assert transport.closed
    assert all(track.stopped for track in media.tracks())
    assert server.deleted == ["1"]
    assert observer.connected == 1
    assert observer.errors == []
    assert observer.states == [
        SessionState.NEGOTIATING,
        SessionState.GATHERING_CANDIDATES,
        SessionState.SIGNALING,
        SessionState.AWAITING_ANSWER,
        SessionState.CONNECTED,
        SessionState.CLOSED,
    ]
    retries = [message for message, level in observer.logs if level is LogLevel.WARNING]
    assert any("Server returned 503, retrying in 2s (attempt 1/3)" in message for message in retries)


def test_offer_carries_policy_and_candidates(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory)
            await client.connect(FakeSource("audio", "video"))
            await client.aclose()

    run_async(_test())

    content_type, offer = server.offers[0]
    assert content_type == "application/sdp"
    assert "a=fmtp:111 minptime=10;useinbandfec=1;stereo=1;sprop-stereo=1" in offer
    assert "x-google-max-bitrate=6000" in offer
    assert "a=fmtp:97 apt=96\r\n" in offer
    assert "b=AS:6000" in offer
    assert f"a={HOST}" in offer
    assert f"a={RELAY}" in offer


def test_relay_policy_filters_offer_candidates(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(
                server, http, factory, policy=SessionPolicy(ice_transport_policy="relay")
            )
            await client.connect(FakeSource("audio"))
            await client.aclose()

    run_async(_test())

    _content_type, offer = server.offers[0]
    assert f"a={RELAY}" in offer
    assert HOST not in offer
    assert factory.transport.config.ice_transport_policy == "relay"


def test_client_error_closes_session_without_handle(signaling_server):
    server = signaling_server([404])
    factory = FakeTransportFactory()
    observer = RecordingObserver()
    sleep = SleepRecorder()
    media = FakeSource("audio", "video")

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer, sleep=sleep)
            with pytest.raises(SignalingError) as excinfo:
                await client.connect(media)
            assert excinfo.value.status == 404
            session = client.session
            assert session is not None
            assert session.state is SessionState.CLOSED
            assert session.resource_handle is None
            assert session.transport is None
            assert not client.is_connected()

    run_async(_test())

    assert sleep.delays == []
    assert len(server.offers) == 1
    assert server.deleted == []
    assert factory.transport.closed
    assert all(track.stopped for track in media.tracks())
    assert observer.errors and "404" in observer.errors[0]
    assert observer.states[-2:] == [SessionState.FAILED, SessionState.CLOSED]


def test_zero_candidates_and_gather_timeout_still_signal(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory(candidates=(), complete_gathering=False)
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            assert client.session.candidates.exhausted is False
            await client.aclose()

    run_async(_test())

    assert len(server.offers) == 1
    assert (
        "No ICE candidates gathered - TURN server may be unreachable",
        LogLevel.WARNING,
    ) in [(message.split("] ", 1)[1], level) for message, level in observer.logs]


def test_disconnect_during_retry_delay_sends_no_further_offer(signaling_server):
    server = signaling_server([503, 201], location="/r/9")
    factory = FakeTransportFactory()
    observer = RecordingObserver()
    sleep = SleepRecorder()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer, sleep=sleep)
            sleep.hook = client.disconnect
            await client.connect(FakeSource("audio"))
            assert client.session.state is SessionState.CLOSED
            assert client.session.resource_handle is None
            assert factory.transport.remote is None

    run_async(_test())

    assert len(server.offers) == 1
    assert server.deleted == []
    assert observer.errors == []
    assert observer.connected == 0


def test_disconnect_cancels_pending_retry_delay(signaling_server):
    server = signaling_server([503, 503, 201])
    factory = FakeTransportFactory()
    timings = NegotiationTimings(gather_timeout=0.05, retry_delay=30.0)

    async def _test() -> float:
        async with server.client() as http:
            config = ClientConfig(endpoint=server.url("/whip/cam"), timings=timings)
            signaling = SignalingClient(timings, client=http)
            client = WhipClient(config, signaling=signaling, transport_factory=factory)
            loop = asyncio.get_running_loop()
            connecting = loop.create_task(client.connect(FakeSource("audio")))
            while not server.offers:
                await asyncio.sleep(0.001)
            await asyncio.sleep(0.01)
            await client.disconnect()
            stopped = loop.time()
            await asyncio.wait_for(connecting, 1.0)
            assert client.state is SessionState.CLOSED
            return loop.time() - stopped

    elapsed = run_async(_test())

    assert elapsed < 1.0
    assert len(server.offers) == 1
    assert server.deleted == []
    assert factory.transport.closed


def test_second_connect_is_rejected(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory)
            await client.connect(FakeSource("audio"))
            first = client.session
            with pytest.raises(AlreadyConnectedError):
                await client.connect(FakeSource("audio"))
            assert client.session is first
            assert first.state is SessionState.CONNECTED
            await client.disconnect()

            await client.connect(FakeSource("audio"))
            assert client.session is not first
            await client.disconnect()

    run_async(_test())
    assert len(factory.created) == 2


def test_ingest_requires_media(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory)
            with pytest.raises(MediaAcquisitionError):
                await client.connect(None)
            assert client.state is SessionState.CLOSED

    run_async(_test())
    assert server.offers == []
    assert factory.transport.closed


def test_encoding_parameter_failure_is_not_fatal(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory(encoding_error=True)
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio", "video"))
            assert client.state is SessionState.CONNECTED
            await client.aclose()

    run_async(_test())
    assert any(
        "Failed to set video encoding params" in message and level is LogLevel.ERROR
        for message, level in observer.logs
    )


def test_sustained_ice_loss_tears_session_down(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            factory.transport.emit_ice("disconnected")
            assert client.state is SessionState.DEGRADED
            await asyncio.sleep(0.1)
            assert client.state is SessionState.CLOSED

    run_async(_test())

    assert observer.disconnected == 1
    assert observer.errors == []
    assert server.deleted == ["1"]
    assert factory.transport.closed
    assert SessionState.FAILED in observer.states


def test_ice_recovery_keeps_session(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            factory.transport.emit_ice("disconnected")
            await asyncio.sleep(0.005)
            factory.transport.emit_ice("connected")
            await asyncio.sleep(0.05)
            assert client.state is SessionState.CONNECTED
            await client.aclose()

    run_async(_test())

    assert observer.disconnected == 0
    assert observer.connected == 1
    assert observer.states.count(SessionState.DEGRADED) == 1


def test_ice_failure_reports_error(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            factory.transport.emit_ice("failed")
            await asyncio.sleep(0.05)
            assert client.state is SessionState.CLOSED
            await client.disconnect()

    run_async(_test())

    assert observer.errors == ["ICE connection failed"]
    assert observer.disconnected == 1
    assert server.deleted == ["1"]


def test_swap_track_replaces_sender_track(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory)
            media = FakeSource("audio", "video")
            await client.connect(media)
            old_audio = media.tracks()[0]

            new_audio = FakeTrack("audio")
            returned = await client.swap_track("audio", new_audio)
            assert returned is old_audio
            assert not old_audio.stopped
            audio_sender = next(s for s in factory.transport.senders() if s.kind == "audio")
            assert audio_sender.track is new_audio

            replacement = FakeSource("audio", "video")
            await client.swap_track("video", replacement)
            assert replacement.tracks()[0].stopped
            assert not replacement.tracks()[1].stopped

            await client.disconnect()
            assert new_audio.stopped
            assert replacement.tracks()[1].stopped
            assert not old_audio.stopped

    run_async(_test())
    assert len(factory.created) == 1


def test_swap_track_without_sender(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory)
            with pytest.raises(NoActiveSenderError):
                await client.swap_track("audio", FakeTrack("audio"))

            await client.connect(FakeSource("audio"))
            video = FakeTrack("video")
            with pytest.raises(NoActiveSenderError):
                await client.swap_track("video", video)
            assert video.stopped
            await client.aclose()

    run_async(_test())


def test_transport_info(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory)
            assert await client.get_transport_info() is None
            await client.connect(FakeSource("audio"))
            info = await client.get_transport_info()
            await client.aclose()
            assert await client.get_transport_info() is None
            return info

    info = run_async(_test())
    assert info == TransportInfo(
        candidate_type="relay",
        protocol="udp",
        remote_address="203.0.113.50:40000",
        relay_protocol="tcp",
    )


def test_transport_info_from_selected_pair_flag():
    stats = {
        "CP1": {
            "type": "candidate-pair",
            "selected": True,
            "localCandidateId": "L1",
            "remoteCandidateId": "R1",
        },
        "L1": {"type": "local-candidate", "candidateType": "host", "protocol": "tcp"},
        "R1": {"type": "remote-candidate", "ip": "10.0.0.2", "port": 9},
    }
    assert transport_info_from_stats(stats) == TransportInfo("host", "tcp", "10.0.0.2:9", None)
    assert transport_info_from_stats({}) is None


def test_playback_receives_tracks(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory(remote_tracks=("audio", "video"))
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, cls=WhepClient, observer=observer)
            assert client.protocol == "WHEP"
            await client.connect()
            assert client.state is SessionState.CONNECTED
            await client.aclose()

    run_async(_test())

    assert factory.transport.transceivers == [
        ("audio", Direction.RECV_ONLY),
        ("video", Direction.RECV_ONLY),
    ]
    assert factory.transport.encodings == []
    assert [track.kind for track in observer.tracks] == ["audio", "video"]


def test_debug_mode_controls_verbose_logs(signaling_server):
    quiet = RecordingObserver()
    verbose = RecordingObserver()

    async def _test(observer: RecordingObserver, debug: bool) -> None:
        server = signaling_server()
        async with server.client() as http:
            client = _client(server, http, FakeTransportFactory(), observer=observer, debug=debug)
            await client.connect(FakeSource("audio"))
            await client.aclose()

    run_async(_test(quiet, False))
    run_async(_test(verbose, True))

    assert not any("Creating SDP offer" in message for message in quiet.messages())
    assert any("Creating SDP offer" in message for message in verbose.messages())
    assert any("Local ICE candidate: type=relay" in message for message in verbose.messages())
    session_id = verbose.sessions[0]
    assert all(message.startswith(f"[{session_id}]") for message in verbose.messages())


def test_ice_configuration_is_fetched(signaling_server):
    server = signaling_server(
        ice_payload={"ice_servers": [{"urls": "turn:turn.example:3478"}]}
    )
    factory = FakeTransportFactory()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(
                server, http, factory, ice_config_url=server.url("/api/ice-servers")
            )
            await client.connect(FakeSource("audio"))
            await client.aclose()

    run_async(_test())
    servers = factory.transport.config.ice_servers
    assert [server.urls for server in servers] == [("turn:turn.example:3478",)]


def test_ice_configuration_failure_falls_back(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()
    policy = SessionPolicy()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(
                server,
                http,
                factory,
                policy=policy,
                ice_config_url=server.url("/api/ice-servers"),
            )
            await client.connect(FakeSource("audio"))
            assert client.state is SessionState.CONNECTED
            await client.aclose()

    run_async(_test())
    assert factory.transport.config.ice_servers == ()


def test_encoding_parameters_unsupported_is_a_warning(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory(encoding_unsupported=True)
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio", "video"))
            assert client.state is SessionState.CONNECTED
            await client.aclose()

    run_async(_test())
    levels = [level for message, level in observer.logs if "encoding params" in message]
    assert levels == [LogLevel.WARNING]


def test_peer_connection_failure_after_connect_tears_down(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory()
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            factory.transport.emit_connection("failed")
            assert client.state is SessionState.FAILED
            await asyncio.sleep(0.05)
            assert client.state is SessionState.CLOSED
            factory.transport.emit_connection("failed")

    run_async(_test())

    assert observer.disconnected == 1
    assert server.deleted == ["1"]
    assert factory.transport.closed
    assert any("Peer connection failed" in message for message in observer.messages())


def test_peer_connection_failure_before_connect_is_only_logged(signaling_server):
    server = signaling_server()
    factory = FakeTransportFactory(connect_on_answer=False)
    observer = RecordingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            factory.transport.emit_connection("failed")
            assert client.state is SessionState.AWAITING_ANSWER
            await client.aclose()

    run_async(_test())
    assert observer.disconnected == 0


def test_disconnect_survives_a_raising_observer(signaling_server, caplog):
    server = signaling_server()
    factory = FakeTransportFactory()

    class ExplodingObserver(RecordingObserver):
        def on_status(self, state: SessionState) -> None:
            super().on_status(state)
            if state is SessionState.CLOSED:
                raise RuntimeError("observer bug")

    observer = ExplodingObserver()

    async def _test() -> None:
        async with server.client() as http:
            client = _client(server, http, factory, observer=observer)
            await client.connect(FakeSource("audio"))
            await client.disconnect()
            assert client.state is SessionState.CLOSED

    run_async(_test())

    assert observer.states[-1] is SessionState.CLOSED
    assert server.deleted == ["1"]
    assert "observer bug" in caplog.text
