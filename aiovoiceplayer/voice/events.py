"""Events emitted by voice players."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from aiovoiceplayer.models.types import DisconnectReason

logger = logging.getLogger(__name__)


class VoiceEvent:
    """Base event type used by VoicePlayer.add_event_listener() and events()."""


@dataclass
class ConnectedEvent(VoiceEvent):
    """The transport handshake completed."""

    channel_id: str
    collection_id: str
    room_name: str | None = None


@dataclass
class DisconnectedEvent(VoiceEvent):
    """The session left the connected state."""

    channel_id: str
    collection_id: str
    reason: DisconnectReason


@dataclass
class PlaybackStartedEvent(VoiceEvent):
    """Playback of a source began."""

    source: str
    """Source descriptor (path, URL or 'stream')."""
    kind: str
    """Delivery kind ('file', 'url', 'stream')."""


@dataclass
class PlaybackEndedEvent(VoiceEvent):
    """Playback of a source finished or was stopped."""

    source: str
    kind: str


@dataclass
class PlaybackErrorEvent(VoiceEvent):
    """Playback of a source failed."""

    source: str
    kind: str
    error: Exception


@dataclass
class VolumeChangedEvent(VoiceEvent):
    """The volume level changed."""

    old_volume: float
    new_volume: float


@dataclass
class MutedEvent(VoiceEvent):
    """Volume was set to zero."""

    previous_volume: float


@dataclass
class UnmutedEvent(VoiceEvent):
    """Volume was restored after being muted."""

    volume: float


@dataclass
class TrackPublishedEvent(VoiceEvent):
    """A track was published."""

    track_id: str


@dataclass
class TrackStoppedEvent(VoiceEvent):
    """A track was unpublished."""

    track_id: str


@dataclass
class DecodeStartedEvent(VoiceEvent):
    """Conversion of a source to PCM started."""

    source: str
    sample_rate: int
    channels: int


@dataclass
class DecodeEndedEvent(VoiceEvent):
    """Conversion of a source to PCM finished."""

    source: str
    samples: int


@dataclass
class DecodeErrorEvent(VoiceEvent):
    """Conversion of a source to PCM failed."""

    source: str
    error: Exception


@dataclass
class ErrorEvent(VoiceEvent):
    """An operation failed."""

    error: Exception
    context: str | None = None


@dataclass
class DebugEvent(VoiceEvent):
    """Low-level diagnostic message."""

    message: str
    data: dict[str, Any] = field(default_factory=dict)


class EventSubscription:
    """Queue-backed, ordered view of the events emitted after subscribing."""

    def __init__(self, channel: EventChannel) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[VoiceEvent | None] = asyncio.Queue()
        self._closed = False

    def _put(self, event: VoiceEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop receiving events; iteration ends after queued events drain."""
        if self._closed:
            return
        self._closed = True
        self._channel._unsubscribe(self)  # noqa: SLF001
        self._queue.put_nowait(None)

    def pending(self) -> list[VoiceEvent]:
        """Return queued events without waiting."""
        events: list[VoiceEvent] = []
        while not self._queue.empty():
            if (event := self._queue.get_nowait()) is not None:
                events.append(event)
        return events

    async def get(self) -> VoiceEvent | None:
        """Wait for the next event; None once closed and drained."""
        return await self._queue.get()

    def __aiter__(self) -> AsyncIterator[VoiceEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[VoiceEvent]:
        while (event := await self._queue.get()) is not None:
            yield event


class EventChannel:
    """Outbound channel of tagged events, delivered in emission order."""

    def __init__(self) -> None:
        self._subscriptions: list[EventSubscription] = []
        self._event_cbs: list[Callable[[VoiceEvent], None]] = []

    def subscribe(self) -> EventSubscription:
        """Start queueing every subsequently emitted event."""
        subscription = EventSubscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: EventSubscription) -> None:
        with suppress(ValueError):
            self._subscriptions.remove(subscription)

    def add_event_listener(self, callback: Callable[[VoiceEvent], None]) -> Callable[[], None]:
        """
        Register a callback for every emitted event.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return _remove

    def emit(self, event: VoiceEvent) -> None:
        """Deliver an event to every subscription and listener."""
        for subscription in list(self._subscriptions):
            subscription._put(event)  # noqa: SLF001
        for cb in list(self._event_cbs):
            try:
                cb(event)
            except Exception:
                logger.exception("Error in event listener")
