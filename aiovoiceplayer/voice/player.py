"""Voice player: session lifecycle and playback for one channel."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import partial
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from aiovoiceplayer.models.config import VoiceOptions
from aiovoiceplayer.models.status import PlayerStatus
from aiovoiceplayer.models.types import DeliveryMode, DisconnectReason, SourceKind, StreamState

from .audio import PCMFormat
from .classify import (
    READ_CHUNK_SIZE,
    ByteStream,
    PlaybackRequest,
    PlaybackSource,
    is_live_response,
    iter_bytes,
)
from .decode import DecodeInput, DecodePipeline
from .delivery import CancellationToken, DeliveryResult, send_buffer, stream_live
from .errors import DecodeError, InvalidInputError, NotConnectedError, SessionConnectionError
from .events import (
    ConnectedEvent,
    DebugEvent,
    DecodeEndedEvent,
    DecodeErrorEvent,
    DecodeStartedEvent,
    DisconnectedEvent,
    ErrorEvent,
    EventChannel,
    EventSubscription,
    MutedEvent,
    PlaybackEndedEvent,
    PlaybackErrorEvent,
    PlaybackStartedEvent,
    UnmutedEvent,
    VoiceEvent,
    VolumeChangedEvent,
)
from .signaling import SignalingClient
from .tracks import PublishedTrack, TrackManager
from .transport import TransportFactory, VoiceTransport
from .volume import apply_volume, clamp_volume

logger = logging.getLogger(__name__)

SourceOpener = Callable[[], AbstractAsyncContextManager[tuple[DeliveryMode, DecodeInput]]]
"""Opens the decode input of a playback request and picks its delivery mode."""

_DELIVERY_STATES = (StreamState.PUBLISHING, StreamState.STREAMING)


def _default_transport_factory() -> VoiceTransport:
    from .livekit import LiveKitTransport  # noqa: PLC0415

    return LiveKitTransport()


class VoicePlayer:
    """
    Voice session for one channel, owned by one collection (server).

    The player negotiates a session grant, opens the relay transport and
    delivers audio from files, URLs or byte streams into it. At most one
    negotiation and one delivery loop run at a time; starting a new playback
    stops the current one first.
    """

    _channel_id: str
    """Target voice channel."""
    _collection_id: str
    """Owning collection (server) identifier."""
    _options: VoiceOptions
    """Shared player settings."""
    _format: PCMFormat
    """PCM format delivered to the transport."""
    _signaling: SignalingClient
    """Client used to obtain session grants."""
    _decoder: DecodePipeline
    """Decode capabilities, shared with other players."""
    _transport_factory: TransportFactory
    """Creates one transport per negotiation."""
    _session: ClientSession | None
    """aiohttp session used to fetch URL sources."""
    _owns_session: bool
    """Whether this player created the session and must close it."""

    _state: StreamState = StreamState.IDLE
    """Current lifecycle state."""
    _transport: VoiceTransport | None = None
    """Connected transport, owned exclusively by this player."""
    _remove_disconnect_listener: Callable[[], None] | None = None
    """Removes the unexpected-disconnect handler from the current transport."""
    _volume: float = 1.0
    """Volume level (0.0 to 2.0)."""
    _token: CancellationToken | None = None
    """Cancellation token of the running playback."""
    _disconnect_task: asyncio.Task[None] | None = None
    """Cleanup task started by an unexpected disconnect."""

    def __init__(
        self,
        channel_id: str,
        collection_id: str,
        *,
        options: VoiceOptions,
        signaling: SignalingClient,
        decoder: DecodePipeline,
        transport_factory: TransportFactory | None = None,
        session: ClientSession | None = None,
    ) -> None:
        """
        Create a voice player.

        Args:
            channel_id: Voice channel to connect to.
            collection_id: Collection (server) owning the player; hosts keep
                at most one player per collection.
            options: Player settings (output format, timeouts).
            signaling: Client used to negotiate session grants.
            decoder: Decode pipeline, usually shared between players.
            transport_factory: Creates the relay transport for each
                connection. Defaults to LiveKitTransport.
            session: Optional aiohttp ClientSession for URL sources. If None,
                a session is created on demand and closed on disconnect().
        """
        self._channel_id = channel_id
        self._collection_id = collection_id
        self._options = options
        self._format = PCMFormat(options.sample_rate, options.channels)
        self._signaling = signaling
        self._decoder = decoder
        self._transport_factory = transport_factory or _default_transport_factory
        self._session = session
        self._owns_session = session is None
        self._logger = logger.getChild(channel_id)
        self._events = EventChannel()
        self._tracks = TrackManager(self._events, self._logger)
        self._connect_lock = asyncio.Lock()
        self._playback_lock = asyncio.Lock()

    @property
    def channel_id(self) -> str:
        """Return the target voice channel."""
        return self._channel_id

    @property
    def collection_id(self) -> str:
        """Return the owning collection (server) identifier."""
        return self._collection_id

    @property
    def state(self) -> StreamState:
        """Return the current lifecycle state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Return True if the transport is up."""
        return self._state.is_connected and self._transport is not None

    @property
    def volume(self) -> float:
        """Return the current volume level."""
        return self._volume

    @property
    def track_ids(self) -> list[str]:
        """Return the identifiers of all published tracks."""
        return self._tracks.track_ids

    @property
    def session(self) -> ClientSession:
        """Return the aiohttp session used for URL sources, creating it if needed."""
        if self._session is None:
            self._session = ClientSession()
        return self._session

    # Events

    def events(self) -> EventSubscription:
        """
        Subscribe to events emitted from now on.

        The subscription is an async iterator; close() it when done.
        """
        return self._events.subscribe()

    def add_event_listener(self, callback: Callable[[VoiceEvent], None]) -> Callable[[], None]:
        """
        Register a callback for every event of this player.

        Returns a function to remove the listener.
        """
        return self._events.add_event_listener(callback)

    def _debug(self, message: str, **data: Any) -> None:
        self._logger.debug("%s %s", message, data or "")
        self._events.emit(DebugEvent(message, data))

    def _set_state(self, state: StreamState) -> None:
        if state is self._state:
            return
        self._logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state

    # Connection

    async def connect(self, channel_id: str | None = None) -> None:
        """
        Connect to a voice channel.

        Connecting again to the current channel is a no-op. Connecting to a
        different channel disconnects first.

        Raises:
            ConnectionConflictError: If an existing grant could not be cleared.
            SessionConnectionError: If negotiation or the transport handshake failed.
        """
        async with self._connect_lock:
            target = channel_id or self._channel_id
            if self.connected:
                if target == self._channel_id:
                    self._logger.debug("Already connected")
                    return
                self._logger.info("Switching from channel %s to %s", self._channel_id, target)
                await self._disconnect()
            self._channel_id = target
            if self._state is StreamState.DISCONNECTED:
                self._set_state(StreamState.IDLE)
            await self._connect()

    async def _connect(self) -> None:
        self._set_state(StreamState.CONNECTING)
        self._debug("Starting connection", channel_id=self._channel_id, server_id=self._collection_id)
        transport: VoiceTransport | None = None
        try:
            grant = await self._signaling.negotiate(self._channel_id)
            transport = self._transport_factory()
            await asyncio.wait_for(
                transport.connect(grant.url, grant.token, dynacast=True, auto_subscribe=True),
                timeout=self._options.connect_timeout,
            )
        except asyncio.CancelledError:
            await self._discard_transport(transport)
            self._set_state(StreamState.IDLE)
            raise
        except Exception as err:
            await self._discard_transport(transport)
            self._set_state(StreamState.IDLE)
            if isinstance(err, SessionConnectionError):
                error = err
            elif isinstance(err, TimeoutError):
                error = SessionConnectionError(
                    f"Transport handshake timed out after {self._options.connect_timeout}s"
                )
            else:
                error = SessionConnectionError(f"Transport handshake failed: {err}")
            self._logger.error("Failed to connect to channel %s: %s", self._channel_id, error)
            self._events.emit(ErrorEvent(error, "connection"))
            if error is err:
                raise
            raise error from err

        self._transport = transport
        self._remove_disconnect_listener = transport.add_disconnect_listener(
            partial(self._on_transport_disconnected, transport)
        )
        self._set_state(StreamState.CONNECTED)
        self._logger.info("Connected to voice channel %s", self._channel_id)
        self._events.emit(ConnectedEvent(self._channel_id, self._collection_id, transport.room_name))
        self._debug("Connection established", room_name=transport.room_name)

    async def _discard_transport(self, transport: VoiceTransport | None) -> None:
        """Best-effort close of a transport that never became current."""
        if transport is None:
            return
        try:
            await transport.disconnect()
        except Exception as err:  # noqa: BLE001
            self._logger.debug("Failed to close abandoned transport: %s", err)

    def _detach(self) -> VoiceTransport | None:
        """Forget the current transport and stop listening to it."""
        transport = self._transport
        self._transport = None
        if self._remove_disconnect_listener is not None:
            self._remove_disconnect_listener()
            self._remove_disconnect_listener = None
        return transport

    async def disconnect(self) -> None:
        """
        Leave the voice channel and release every track.

        Tracking is reset even when the transport is unreachable.

        Raises:
            SessionConnectionError: If closing the transport failed.
        """
        async with self._connect_lock:
            await self._disconnect()

    async def _disconnect(self) -> None:
        self._cancel_playback()
        transport = self._detach()
        if transport is None:
            self._logger.debug("Not connected")
            await self._close_session()
            return
        self._set_state(StreamState.STOPPING)
        try:
            await self._tracks.unpublish_all(transport)
            await transport.disconnect()
        except Exception as err:
            self._logger.warning("Error during disconnect: %s", err)
            raise SessionConnectionError(f"Error during disconnect: {err}") from err
        finally:
            await self._close_session()
            self._set_state(StreamState.DISCONNECTED)
            self._logger.info("Disconnected from voice channel %s", self._channel_id)
            self._events.emit(
                DisconnectedEvent(self._channel_id, self._collection_id, DisconnectReason.MANUAL)
            )
            self._debug("Disconnected manually")

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _on_transport_disconnected(self, transport: VoiceTransport) -> None:
        if transport is not self._transport:
            return
        self._cancel_playback()
        self._disconnect_task = asyncio.get_running_loop().create_task(
            self._handle_unexpected_disconnect(transport)
        )

    async def _handle_unexpected_disconnect(self, transport: VoiceTransport) -> None:
        async with self._connect_lock:
            if transport is not self._transport:
                return
            self._detach()
            self._cancel_playback()
            self._logger.warning("Voice connection to channel %s lost", self._channel_id)
            # The room is gone; release local sources without unpublishing
            await self._tracks.unpublish_all(None)
            await self._close_session()
            self._set_state(StreamState.DISCONNECTED)
            self._events.emit(
                DisconnectedEvent(self._channel_id, self._collection_id, DisconnectReason.UNEXPECTED)
            )
            self._debug("Voice disconnected unexpectedly")

    async def _ensure_connected(self) -> None:
        if not self.connected:
            await self.connect()

    def _require_transport(self) -> VoiceTransport:
        if self._transport is None or not self._state.is_connected:
            raise NotConnectedError(
                f"Not connected to voice channel {self._channel_id}. Call connect() first."
            )
        return self._transport

    # Playback

    async def play(self, source: PlaybackSource, *, live: bool | None = None) -> DeliveryResult:
        """
        Play a URL, a file path or a byte stream, detecting which one it is.

        Connects first if needed. Returns once playback finished or was stopped.

        Args:
            source: http(s) URL, existing file path, or readable byte stream.
            live: Force live (True) or buffered (False) delivery. By default
                URLs are classified from the response and streams are buffered.

        Raises:
            InvalidInputError: If source is none of the supported kinds.
        """
        try:
            request = PlaybackRequest.from_source(source, self._format, live=live)
        except InvalidInputError as err:
            self._events.emit(ErrorEvent(err, "play"))
            raise
        self._debug(f"Auto-detected {request.kind.value} input", source=request.description)
        if request.kind is SourceKind.URL:
            return await self._run_playback(request, partial(self._open_url, request))
        if request.kind is SourceKind.FILE:
            return await self._run_playback(request, partial(self._open_file, request))
        return await self._run_playback(request, partial(self._open_stream, request))

    async def play_from_file(self, path: str | os.PathLike[str]) -> DeliveryResult:
        """Decode a file completely, then send it at real-time cadence."""
        request = PlaybackRequest(path, SourceKind.FILE, os.fspath(path), self._format)
        return await self._run_playback(request, partial(self._open_file, request))

    async def play_from_url(self, url: str, *, live: bool | None = None) -> DeliveryResult:
        """
        Play an http(s) URL.

        Unless live is given, continuous streams (e.g. radio) are detected from
        the response and decoded while sending.
        """
        request = PlaybackRequest(url, SourceKind.URL, url, self._format, live=live)
        return await self._run_playback(request, partial(self._open_url, request))

    async def play_from_stream(self, stream: ByteStream, *, live: bool = False) -> DeliveryResult:
        """Play a readable byte stream, buffered unless live is True."""
        request = PlaybackRequest(stream, SourceKind.STREAM, "stream", self._format, live=live)
        return await self._run_playback(request, partial(self._open_stream, request))

    @asynccontextmanager
    async def _open_file(
        self, request: PlaybackRequest
    ) -> AsyncIterator[tuple[DeliveryMode, DecodeInput]]:
        yield DeliveryMode.FINITE, os.fspath(request.source)  # type: ignore[arg-type]

    @asynccontextmanager
    async def _open_stream(
        self, request: PlaybackRequest
    ) -> AsyncIterator[tuple[DeliveryMode, DecodeInput]]:
        mode = DeliveryMode.LIVE if request.live else DeliveryMode.FINITE
        yield mode, iter_bytes(request.source)  # type: ignore[arg-type]

    @asynccontextmanager
    async def _open_url(
        self, request: PlaybackRequest
    ) -> AsyncIterator[tuple[DeliveryMode, DecodeInput]]:
        url = request.description
        timeout = ClientTimeout(
            total=None,
            sock_connect=self._options.fetch_timeout,
            sock_read=self._options.fetch_timeout,
        )
        try:
            async with self.session.get(url, timeout=timeout) as response:
                if response.status != 200:
                    raise DecodeError(f"Failed to fetch {url}: HTTP {response.status}")
                live = request.live
                if live is None:
                    live = is_live_response(url, response.headers)
                self._debug(
                    "Fetched URL source",
                    url=url,
                    content_type=response.headers.get("Content-Type"),
                    live=live,
                )
                mode = DeliveryMode.LIVE if live else DeliveryMode.FINITE
                yield mode, response.content.iter_chunked(READ_CHUNK_SIZE)
        except (ClientError, TimeoutError) as err:
            raise DecodeError(f"Failed to fetch {url}: {err}") from err

    def _cancel_playback(self) -> None:
        if self._token is not None:
            self._token.cancel()

    async def _run_playback(self, request: PlaybackRequest, open_source: SourceOpener) -> DeliveryResult:
        await self._ensure_connected()
        # A new playback replaces the running one
        self._cancel_playback()
        async with self._playback_lock:
            transport = self._require_transport()
            token = CancellationToken()
            self._token = token
            kind = request.kind.value
            self._logger.info("Starting %s playback: %s", kind, request.description)
            self._events.emit(PlaybackStartedEvent(request.description, kind))
            try:
                async with open_source() as (mode, source):
                    self._debug(
                        "Starting delivery", source=request.description, kind=kind, mode=mode.value
                    )
                    if mode is DeliveryMode.LIVE:
                        result = await self._deliver_live(transport, request, source, token)
                    else:
                        result = await self._deliver_finite(transport, request, source, token)
            except Exception as err:
                self._logger.error("%s playback failed: %s", kind.capitalize(), err)
                self._events.emit(PlaybackErrorEvent(request.description, kind, err))
                self._events.emit(ErrorEvent(err, f"{kind}-playback"))
                raise
            finally:
                if self._token is token:
                    self._token = None
                if self._state in _DELIVERY_STATES:
                    self._set_state(StreamState.CONNECTED)

            if result.cancelled:
                self._debug("Audio playback stopped by user", frames=result.frames)
            else:
                self._debug("Audio playback completed", frames=result.frames, samples=result.samples)
            self._logger.info("%s playback ended: %s", kind.capitalize(), request.description)
            self._events.emit(PlaybackEndedEvent(request.description, kind))
            return result

    def _enter(self, state: StreamState) -> None:
        """Enter a delivery sub-state, unless the session already left CONNECTED."""
        if self._state.is_connected:
            self._set_state(state)

    async def _publish(
        self, transport: VoiceTransport, request: PlaybackRequest, token: CancellationToken
    ) -> PublishedTrack | None:
        """Publish the track of a playback; None if the playback was stopped meanwhile."""
        self._enter(StreamState.PUBLISHING)
        track = await self._tracks.publish(
            transport, self._format.sample_rate, self._format.channels, kind=request.kind.value
        )
        self._debug("Audio track published", track_id=track.track_id, track_count=len(self._tracks))
        if token.cancelled or transport is not self._transport:
            await self._tracks.unpublish(transport, track.track_id)
            return None
        return track

    async def _deliver_finite(
        self,
        transport: VoiceTransport,
        request: PlaybackRequest,
        source: DecodeInput,
        token: CancellationToken,
    ) -> DeliveryResult:
        self._events.emit(
            DecodeStartedEvent(request.description, self._format.sample_rate, self._format.channels)
        )
        try:
            samples = await self._decoder.decode(source, self._format)
        except DecodeError as err:
            self._events.emit(DecodeErrorEvent(request.description, err))
            raise
        self._events.emit(DecodeEndedEvent(request.description, len(samples)))
        if token.cancelled:
            return DeliveryResult(cancelled=True)

        samples = apply_volume(samples, self._volume)
        track = await self._publish(transport, request, token)
        if track is None:
            return DeliveryResult(cancelled=True)
        self._enter(StreamState.STREAMING)
        return await send_buffer(
            track.source,
            samples,
            self._format,
            token,
            chunk_duration_ms=self._options.chunk_duration_ms,
            log=self._logger,
        )

    async def _deliver_live(
        self,
        transport: VoiceTransport,
        request: PlaybackRequest,
        source: DecodeInput,
        token: CancellationToken,
    ) -> DeliveryResult:
        track = await self._publish(transport, request, token)
        if track is None:
            return DeliveryResult(cancelled=True)
        self._enter(StreamState.STREAMING)
        self._events.emit(
            DecodeStartedEvent(request.description, self._format.sample_rate, self._format.channels)
        )
        try:
            result = await stream_live(
                track.source,
                self._decoder,
                source,
                self._format,
                token,
                lambda: self._volume,
                chunk_duration_ms=self._options.chunk_duration_ms,
                log=self._logger,
            )
        except DecodeError as err:
            self._events.emit(DecodeErrorEvent(request.description, err))
            raise
        self._events.emit(DecodeEndedEvent(request.description, result.samples))
        return result

    async def stop(self, track_id: str | None = None) -> None:
        """
        Stop the running playback and unpublish tracks.

        Args:
            track_id: Unpublish only this track. The running playback is
                stopped either way.
        """
        self._cancel_playback()
        transport = self._transport
        if transport is None:
            return
        if track_id is None:
            await self._tracks.unpublish_all(transport)
        elif not await self._tracks.unpublish(transport, track_id):
            self._logger.debug("Unknown track %s", track_id)

    # Volume

    def set_volume(self, level: float) -> None:
        """Set the volume level, clamped to 0.0 (mute) .. 2.0 (200%)."""
        old_volume = self._volume
        self._volume = clamp_volume(level)
        self._debug(
            f"Volume set to {self._volume * 100:.0f}%",
            old_volume=old_volume,
            new_volume=self._volume,
        )
        self._events.emit(VolumeChangedEvent(old_volume, self._volume))

    def increase_volume(self, amount: float = 0.1) -> None:
        """Raise the volume by amount."""
        self.set_volume(self._volume + amount)

    def decrease_volume(self, amount: float = 0.1) -> None:
        """Lower the volume by amount."""
        self.set_volume(self._volume - amount)

    def mute(self) -> None:
        """Set the volume to zero."""
        old_volume = self._volume
        self.set_volume(0.0)
        self._events.emit(MutedEvent(old_volume))

    def unmute(self) -> None:
        """Restore the volume to 1.0 if it is currently zero."""
        if self._volume == 0.0:
            self.set_volume(1.0)
            self._events.emit(UnmutedEvent(1.0))

    def get_status(self) -> PlayerStatus:
        """Return a snapshot of the player."""
        return PlayerStatus(
            connected=self.connected,
            volume=self._volume,
            active_track_count=len(self._tracks),
            channel_id=self._channel_id,
            session_key=self._collection_id,
            state=self._state,
        )
