from __future__ import annotations

import asyncio
import os
import socket
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import suppress
from pathlib import Path

import numpy as np
import pytest
from aiohttp import web

from aiovoiceplayer.models.config import VoiceOptions
from aiovoiceplayer.models.signaling import JoinCallResponse
from aiovoiceplayer.models.types import DisconnectReason, StreamState
from aiovoiceplayer.voice.audio import PCMFormat, PCMFrame, PCMSamples, pcm_from_bytes
from aiovoiceplayer.voice.decode import DecodeInput, Decoder, DecodePipeline
from aiovoiceplayer.voice.errors import (
    ConnectionConflictError,
    DecodeError,
    InvalidInputError,
    PublishError,
    ResourceCleanupError,
    SessionConnectionError,
)
from aiovoiceplayer.voice.events import (
    ConnectedEvent,
    DecodeEndedEvent,
    DecodeErrorEvent,
    DecodeStartedEvent,
    DisconnectedEvent,
    ErrorEvent,
    MutedEvent,
    PlaybackEndedEvent,
    PlaybackErrorEvent,
    PlaybackStartedEvent,
    TrackPublishedEvent,
    TrackStoppedEvent,
    UnmutedEvent,
    VoiceEvent,
    VolumeChangedEvent,
)
from aiovoiceplayer.voice.player import VoicePlayer
from aiovoiceplayer.voice.transport import AudioSink, VoiceTransport


def _get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class FakeSink:
    def __init__(self) -> None:
        self.frames: list[PCMFrame] = []
        self.closed = False

    async def capture_frame(self, frame: PCMFrame) -> None:
        self.frames.append(frame)

    async def aclose(self) -> None:
        self.closed = True


class FakeTransport(VoiceTransport):
    def __init__(self, *, connect_delay: float = 0.0) -> None:
        self.connected_with: tuple[str, str] | None = None
        self.connect_options: dict[str, bool] = {}
        self.disconnected = False
        self.sinks: list[FakeSink] = []
        self.published: list[str] = []
        self.unpublished: list[str] = []
        self.failing_unpublish: set[str] = set()
        self.publish_returns_none = False
        self._listeners: list[Callable[[], None]] = []
        self._connect_delay = connect_delay

    @property
    def room_name(self) -> str | None:
        return "room-1" if self.connected_with else None

    async def connect(
        self, url: str, token: str, *, dynacast: bool = True, auto_subscribe: bool = True
    ) -> None:
        if self._connect_delay:
            await asyncio.sleep(self._connect_delay)
        self.connected_with = (url, token)
        self.connect_options = {"dynacast": dynacast, "auto_subscribe": auto_subscribe}

    async def disconnect(self) -> None:
        self.disconnected = True

    def create_audio_source(self, sample_rate: int, channels: int) -> FakeSink:
        sink = FakeSink()
        self.sinks.append(sink)
        return sink

    async def publish_track(self, source: AudioSink, *, name: str = "audio") -> str | None:
        if self.publish_returns_none:
            return None
        track_id = f"TR_{len(self.published) + 1}"
        self.published.append(track_id)
        return track_id

    async def unpublish_track(self, track_id: str) -> None:
        if track_id in self.failing_unpublish:
            raise RuntimeError(f"cannot unpublish {track_id}")
        self.unpublished.append(track_id)

    def add_disconnect_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._listeners.remove(callback)

        return _remove

    def drop(self) -> None:
        """Simulate the relay closing the connection."""
        for callback in list(self._listeners):
            callback()


class FakeSignaling:
    def __init__(self, error: Exception | None = None) -> None:
        self.negotiated: list[str] = []
        self._error = error

    async def negotiate(self, channel_id: str) -> JoinCallResponse:
        self.negotiated.append(channel_id)
        if self._error is not None:
            raise self._error
        return JoinCallResponse(token=f"tok-{channel_id}", url="wss://relay.example")


class RawDecoder(Decoder):
    """Treats its input as raw little-endian 16-bit PCM."""

    name = "raw"

    def __init__(self, error: str | None = None) -> None:
        self._error = error
        self.inputs: list[bytes] = []

    @property
    def available(self) -> bool:
        return True

    async def decode(self, source, fmt: PCMFormat) -> PCMSamples:
        if self._error:
            raise DecodeError(self._error)
        data = source if isinstance(source, bytes) else Path(os.fspath(source)).read_bytes()
        self.inputs.append(data)
        return pcm_from_bytes(data)

    async def iter_pcm(self, source: DecodeInput, fmt: PCMFormat) -> AsyncIterator[PCMSamples]:
        if self._error:
            raise DecodeError(self._error)
        if isinstance(source, AsyncIterable):
            async for data in source:
                self.inputs.append(data)
                yield pcm_from_bytes(data)
        else:
            yield await self.decode(source, fmt)


def _pcm_bytes(count: int, value: int = 1000) -> bytes:
    return np.full(count, value, dtype="<i2").tobytes()


class Harness:
    def __init__(
        self,
        *,
        decoder: RawDecoder | None = None,
        signaling: FakeSignaling | None = None,
        connect_timeout: float = 5.0,
        connect_delay: float = 0.0,
    ) -> None:
        self.options = VoiceOptions(
            api_url="http://signaling.invalid",
            sample_rate=1000,
            channels=1,
            chunk_duration_ms=10,
            connect_timeout=connect_timeout,
        )
        self.signaling = signaling or FakeSignaling()
        self.decoder = decoder or RawDecoder()
        self.transports: list[FakeTransport] = []
        self._connect_delay = connect_delay
        self.player = VoicePlayer(
            "chan-1",
            "server-1",
            options=self.options,
            signaling=self.signaling,  # type: ignore[arg-type]
            decoder=DecodePipeline([self.decoder]),
            transport_factory=self._make_transport,
        )
        self.events: list[VoiceEvent] = []
        self.player.add_event_listener(self.events.append)

    def _make_transport(self) -> FakeTransport:
        transport = FakeTransport(connect_delay=self._connect_delay)
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def of_type(self, event_type: type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


def _audio_file(tmp_path: Path, count: int, value: int = 1000, name: str = "a.raw") -> Path:
    path = tmp_path / name
    path.write_bytes(_pcm_bytes(count, value))
    return path


@pytest.mark.asyncio
async def test_connect_twice_same_channel_is_noop() -> None:
    h = Harness()
    await h.player.connect()
    await h.player.connect("chan-1")
    assert h.signaling.negotiated == ["chan-1"]
    assert len(h.transports) == 1
    assert h.player.state is StreamState.CONNECTED
    assert h.player.connected
    assert h.transport.connected_with == ("wss://relay.example", "tok-chan-1")
    assert h.transport.connect_options == {"dynacast": True, "auto_subscribe": True}
    connected = h.of_type(ConnectedEvent)
    assert connected == [ConnectedEvent("chan-1", "server-1", "room-1")]


@pytest.mark.asyncio
async def test_connect_other_channel_reconnects() -> None:
    h = Harness()
    await h.player.connect()
    first = h.transport
    await h.player.connect("chan-2")
    assert first.disconnected
    assert h.signaling.negotiated == ["chan-1", "chan-2"]
    assert h.player.channel_id == "chan-2"
    assert h.player.state is StreamState.CONNECTED
    kinds = [type(event) for event in h.events if isinstance(event, (ConnectedEvent, DisconnectedEvent))]
    assert kinds == [ConnectedEvent, DisconnectedEvent, ConnectedEvent]
    assert h.of_type(DisconnectedEvent)[0].reason is DisconnectReason.MANUAL


@pytest.mark.asyncio
async def test_connect_conflict_returns_to_idle() -> None:
    h = Harness(signaling=FakeSignaling(ConnectionConflictError("chan-1")))
    with pytest.raises(ConnectionConflictError):
        await h.player.connect()
    assert h.player.state is StreamState.IDLE
    assert h.transports == []
    assert h.of_type(ConnectedEvent) == []
    errors = h.of_type(ErrorEvent)
    assert len(errors) == 1
    assert errors[0].context == "connection"


@pytest.mark.asyncio
async def test_handshake_timeout_is_connection_error() -> None:
    h = Harness(connect_timeout=0.05, connect_delay=1.0)
    with pytest.raises(SessionConnectionError, match="timed out"):
        await h.player.connect()
    assert h.player.state is StreamState.IDLE
    assert h.transport.disconnected
    assert not h.player.connected


@pytest.mark.asyncio
async def test_finite_playback_sends_paced_chunks_with_volume(tmp_path: Path) -> None:
    h = Harness()
    h.player.set_volume(0.5)
    path = _audio_file(tmp_path, 45)
    result = await h.player.play(str(path))
    # auto-connected
    assert h.signaling.negotiated == ["chan-1"]
    assert result.frames == 5
    assert not result.cancelled
    sink = h.transport.sinks[0]
    assert [len(frame.data) for frame in sink.frames] == [10, 10, 10, 10, 5]
    assert all(frame.data.tolist() == [500] * len(frame.data) for frame in sink.frames)
    assert h.player.state is StreamState.CONNECTED
    assert h.player.track_ids == ["TR_1"]

    lifecycle = [
        type(event)
        for event in h.events
        if isinstance(
            event,
            (
                PlaybackStartedEvent,
                DecodeStartedEvent,
                DecodeEndedEvent,
                TrackPublishedEvent,
                PlaybackEndedEvent,
            ),
        )
    ]
    assert lifecycle == [
        PlaybackStartedEvent,
        DecodeStartedEvent,
        DecodeEndedEvent,
        TrackPublishedEvent,
        PlaybackEndedEvent,
    ]
    assert h.of_type(PlaybackStartedEvent)[0].kind == "file"
    assert h.of_type(DecodeEndedEvent)[0].samples == 45


@pytest.mark.asyncio
async def test_live_stream_playback() -> None:
    h = Harness()
    await h.player.connect()

    async def stream() -> AsyncIterator[bytes]:
        for _ in range(3):
            yield _pcm_bytes(10, 300)

    result = await h.player.play(stream(), live=True)
    assert result.frames == 3
    sink = h.transport.sinks[0]
    assert [frame.data.tolist() for frame in sink.frames] == [[300] * 10] * 3
    started = h.of_type(PlaybackStartedEvent)[0]
    assert (started.source, started.kind) == ("stream", "stream")
    lifecycle = [
        type(event)
        for event in h.events
        if isinstance(event, (TrackPublishedEvent, DecodeStartedEvent, DecodeEndedEvent))
    ]
    # Live mode publishes before the first chunk is decoded
    assert lifecycle == [TrackPublishedEvent, DecodeStartedEvent, DecodeEndedEvent]
    assert h.of_type(DecodeEndedEvent)[0].samples == 30


@pytest.mark.asyncio
async def test_stream_defaults_to_buffered_delivery() -> None:
    h = Harness()

    async def stream() -> AsyncIterator[bytes]:
        yield _pcm_bytes(7)
        yield _pcm_bytes(8)

    result = await h.player.play_from_stream(stream())
    assert result.frames == 2
    assert h.decoder.inputs == [_pcm_bytes(15)]


@pytest.mark.asyncio
async def test_stop_mid_stream_halts_transmission(tmp_path: Path) -> None:
    h = Harness()
    path = _audio_file(tmp_path, 10_000)
    task = asyncio.create_task(h.player.play_from_file(path))
    while not h.transports or not h.transport.sinks or len(h.transport.sinks[0].frames) < 2:
        await asyncio.sleep(0.005)
    await h.player.stop()
    sent_at_stop = len(h.transport.sinks[0].frames)
    result = await asyncio.wait_for(task, 1.0)
    assert result.cancelled
    assert len(h.transport.sinks[0].frames) == sent_at_stop
    assert h.player.track_ids == []
    assert h.transport.unpublished == ["TR_1"]
    assert h.transport.sinks[0].closed
    assert h.of_type(TrackStoppedEvent) == [TrackStoppedEvent("TR_1")]
    assert h.player.state is StreamState.CONNECTED


@pytest.mark.asyncio
async def test_new_playback_replaces_running_one(tmp_path: Path) -> None:
    h = Harness()
    long_file = _audio_file(tmp_path, 10_000, name="long.raw")
    short_file = _audio_file(tmp_path, 20, name="short.raw")
    first = asyncio.create_task(h.player.play_from_file(long_file))
    while not h.transports or not h.transport.sinks:
        await asyncio.sleep(0.005)
    second = await h.player.play_from_file(short_file)
    first_result = await asyncio.wait_for(first, 1.0)
    assert first_result.cancelled
    assert second.frames == 2
    assert h.player.track_ids == ["TR_1", "TR_2"]


@pytest.mark.asyncio
async def test_stop_single_track(tmp_path: Path) -> None:
    h = Harness()
    path = _audio_file(tmp_path, 10)
    await h.player.play_from_file(path)
    await h.player.play_from_file(path)
    assert h.player.track_ids == ["TR_1", "TR_2"]
    await h.player.stop("TR_1")
    assert h.player.track_ids == ["TR_2"]
    await h.player.stop("unknown")
    assert h.player.track_ids == ["TR_2"]


@pytest.mark.asyncio
async def test_disconnect_empties_tracks_even_when_unpublish_fails(tmp_path: Path) -> None:
    h = Harness()
    path = _audio_file(tmp_path, 10)
    await h.player.play_from_file(path)
    await h.player.play_from_file(path)
    transport = h.transport
    transport.failing_unpublish = {"TR_1"}

    await h.player.disconnect()
    assert h.player.track_ids == []
    assert h.player.get_status().active_track_count == 0
    assert transport.unpublished == ["TR_2"]
    assert transport.disconnected
    assert all(sink.closed for sink in transport.sinks)
    assert h.player.state is StreamState.DISCONNECTED
    assert not h.player.connected
    cleanup_errors = [e for e in h.of_type(ErrorEvent) if e.context == "track-cleanup"]
    assert len(cleanup_errors) == 1
    assert isinstance(cleanup_errors[0].error, ResourceCleanupError)
    disconnected = h.of_type(DisconnectedEvent)
    assert disconnected == [DisconnectedEvent("chan-1", "server-1", DisconnectReason.MANUAL)]


@pytest.mark.asyncio
async def test_disconnect_when_not_connected_is_noop() -> None:
    h = Harness()
    await h.player.disconnect()
    assert h.player.state is StreamState.IDLE
    assert h.of_type(DisconnectedEvent) == []


@pytest.mark.asyncio
async def test_unexpected_disconnect_releases_resources(tmp_path: Path) -> None:
    h = Harness()
    subscription = h.player.events()
    await h.player.play_from_file(_audio_file(tmp_path, 10))
    transport = h.transport
    transport.drop()

    async def _wait_disconnected() -> DisconnectedEvent:
        async for event in subscription:
            if isinstance(event, DisconnectedEvent):
                return event
        raise AssertionError("subscription closed")

    event = await asyncio.wait_for(_wait_disconnected(), 1.0)
    subscription.close()
    assert event.reason is DisconnectReason.UNEXPECTED
    assert h.player.track_ids == []
    assert transport.sinks[0].closed
    assert h.player.state is StreamState.DISCONNECTED
    assert not h.player.connected

    # A fresh negotiation starts on the next connect
    await h.player.connect()
    assert h.signaling.negotiated == ["chan-1", "chan-1"]
    assert h.player.state is StreamState.CONNECTED


@pytest.mark.asyncio
async def test_unexpected_disconnect_stops_running_playback(tmp_path: Path) -> None:
    h = Harness()
    task = asyncio.create_task(h.player.play_from_file(_audio_file(tmp_path, 10_000)))
    while not h.transports or not h.transport.sinks or not h.transport.sinks[0].frames:
        await asyncio.sleep(0.005)
    h.transport.drop()
    result = await asyncio.wait_for(task, 1.0)
    assert result.cancelled
    for _ in range(100):
        if h.player.state is StreamState.DISCONNECTED:
            break
        await asyncio.sleep(0.01)
    assert h.player.state is StreamState.DISCONNECTED
    assert h.player.track_ids == []


async def _wait_for_state(player: VoicePlayer, state: StreamState) -> None:
    for _ in range(100):
        if player.state is state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"player never reached {state}")


@pytest.mark.asyncio
async def test_unexpected_disconnect_reports_stopped_tracks(tmp_path: Path) -> None:
    h = Harness()
    await h.player.play_from_file(_audio_file(tmp_path, 10))
    await h.player.play_from_file(_audio_file(tmp_path, 10, name="b.raw"))
    published = [event.track_id for event in h.of_type(TrackPublishedEvent)]
    assert len(published) == 2
    h.transport.drop()
    await _wait_for_state(h.player, StreamState.DISCONNECTED)
    assert sorted(event.track_id for event in h.of_type(TrackStoppedEvent)) == sorted(published)
    assert h.transport.unpublished == []


@pytest.mark.asyncio
async def test_owned_session_closed_after_connection_loss() -> None:
    h = Harness()
    await h.player.connect()
    session = h.player.session
    h.transport.drop()
    await _wait_for_state(h.player, StreamState.DISCONNECTED)
    await h.player.disconnect()
    assert session.closed

    # A later disconnect without a live transport also releases a new session
    later = h.player.session
    await h.player.disconnect()
    assert later.closed


@pytest.mark.asyncio
async def test_playback_started_during_connection_loss_is_cancelled(tmp_path: Path) -> None:
    h = Harness()
    await h.player.connect()
    path = _audio_file(tmp_path, 10_000)
    async with h.player._connect_lock:  # noqa: SLF001
        h.transport.drop()
        task = asyncio.create_task(h.player.play_from_file(path))
        while not h.transport.sinks or not h.transport.sinks[0].frames:
            await asyncio.sleep(0.005)
    result = await asyncio.wait_for(task, 1.0)
    assert result.cancelled
    await _wait_for_state(h.player, StreamState.DISCONNECTED)
    assert h.player.track_ids == []


@pytest.mark.asyncio
async def test_decode_error_fails_only_the_playback(tmp_path: Path) -> None:
    h = Harness(decoder=RawDecoder(error="corrupt input"))
    path = _audio_file(tmp_path, 10)
    with pytest.raises(DecodeError, match="corrupt input"):
        await h.player.play_from_file(path)
    assert h.player.connected
    assert h.player.state is StreamState.CONNECTED
    assert len(h.of_type(DecodeErrorEvent)) == 1
    playback_errors = h.of_type(PlaybackErrorEvent)
    assert len(playback_errors) == 1
    assert playback_errors[0].kind == "file"
    assert h.of_type(PlaybackEndedEvent) == []
    assert "file-playback" in [e.context for e in h.of_type(ErrorEvent)]


@pytest.mark.asyncio
async def test_publish_without_track_id_fails_playback(tmp_path: Path) -> None:
    h = Harness()
    await h.player.connect()
    h.transport.publish_returns_none = True
    with pytest.raises(PublishError):
        await h.player.play_from_file(_audio_file(tmp_path, 10))
    assert h.player.track_ids == []
    assert h.transport.sinks[0].closed
    assert h.player.state is StreamState.CONNECTED


@pytest.mark.asyncio
async def test_invalid_input_is_rejected() -> None:
    h = Harness()
    with pytest.raises(InvalidInputError):
        await h.player.play("/tmp/nonexistent.mp3")
    assert h.signaling.negotiated == []
    assert h.of_type(ErrorEvent)[0].context == "play"


@pytest.mark.asyncio
async def test_playback_requires_successful_connect(tmp_path: Path) -> None:
    h = Harness(signaling=FakeSignaling(SessionConnectionError("endpoint down")))
    with pytest.raises(SessionConnectionError):
        await h.player.play_from_file(_audio_file(tmp_path, 10))
    assert h.of_type(PlaybackStartedEvent) == []


@pytest.mark.asyncio
async def test_volume_controls_and_events() -> None:
    h = Harness()
    h.player.set_volume(3.0)
    assert h.player.volume == 2.0
    h.player.decrease_volume()
    assert h.player.volume == pytest.approx(1.9)
    h.player.increase_volume(0.5)
    assert h.player.volume == 2.0
    h.player.set_volume(-1)
    assert h.player.volume == 0.0

    h.events.clear()
    h.player.unmute()
    assert h.player.volume == 1.0
    assert h.of_type(UnmutedEvent) == [UnmutedEvent(1.0)]

    h.player.set_volume(0.7)
    h.events.clear()
    h.player.mute()
    assert h.player.volume == 0.0
    assert h.of_type(VolumeChangedEvent) == [VolumeChangedEvent(0.7, 0.0)]
    assert h.of_type(MutedEvent) == [MutedEvent(0.7)]

    h.player.set_volume(0.4)
    h.events.clear()
    h.player.unmute()
    assert h.player.volume == 0.4
    assert h.events == []


@pytest.mark.asyncio
async def test_get_status() -> None:
    h = Harness()
    status = h.player.get_status()
    assert not status.connected
    assert status.state is StreamState.IDLE
    await h.player.connect()
    h.player.set_volume(1.5)
    status = h.player.get_status()
    assert status.connected
    assert status.volume == 1.5
    assert status.active_track_count == 0
    assert status.channel_id == "chan-1"
    assert status.session_key == "server-1"
    assert status.to_dict()["state"] == "connected"


@pytest.mark.asyncio
async def test_url_playback_modes() -> None:
    finite_body = _pcm_bytes(25, 200)
    live_body = _pcm_bytes(30, 400)

    async def finite(request: web.Request) -> web.Response:
        return web.Response(body=finite_body, content_type="audio/mpeg")

    async def live(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse()
        response.content_type = "audio/mpeg"
        await response.prepare(request)
        for start in range(0, len(live_body), 20):
            await response.write(live_body[start : start + 20])
        await response.write_eof()
        return response

    async def missing(request: web.Request) -> web.Response:
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/song.mp3", finite)
    app.router.add_get("/radio", live)
    app.router.add_get("/missing.mp3", missing)
    runner = web.AppRunner(app)
    await runner.setup()
    port = _get_free_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    base = f"http://127.0.0.1:{port}"

    h = Harness()
    try:
        result = await h.player.play(f"{base}/song.mp3")
        assert result.frames == 3
        assert h.decoder.inputs == [finite_body]
        assert h.of_type(PlaybackStartedEvent)[0].kind == "url"

        h.decoder.inputs.clear()
        result = await h.player.play(f"{base}/radio")
        assert result.frames == 3
        assert b"".join(h.decoder.inputs) == live_body
        assert len(h.decoder.inputs) >= 1

        with pytest.raises(DecodeError, match="HTTP 404"):
            await h.player.play_from_url(f"{base}/missing.mp3")
        assert h.player.connected
    finally:
        await h.player.disconnect()
        await runner.cleanup()
