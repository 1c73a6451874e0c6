"""Voice relay transport contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Protocol

from .audio import PCMFrame

# Callback invoked when the relay drops the connection without being asked to.
DisconnectCallback = Callable[[], None]


class AudioSink(Protocol):
    """An audio source owned by a published track."""

    async def capture_frame(self, frame: PCMFrame) -> None:
        """Hand one PCM frame to the transport."""

    async def aclose(self) -> None:
        """Release the source."""


class VoiceTransport(ABC):
    """
    Connection to a voice relay room.

    One instance represents one connection attempt; a new instance is created
    for every negotiation.
    """

    @property
    @abstractmethod
    def room_name(self) -> str | None:
        """Name of the joined room, once connected."""

    @abstractmethod
    async def connect(
        self, url: str, token: str, *, dynacast: bool = True, auto_subscribe: bool = True
    ) -> None:
        """Perform the transport handshake."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection."""

    @abstractmethod
    def create_audio_source(self, sample_rate: int, channels: int) -> AudioSink:
        """Create an audio source for a new track."""

    @abstractmethod
    async def publish_track(self, source: AudioSink, *, name: str = "audio") -> str | None:
        """Publish a track fed by source and return its identifier, or None on failure."""

    @abstractmethod
    async def unpublish_track(self, track_id: str) -> None:
        """Remove a published track."""

    @abstractmethod
    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """
        Register a callback for unexpected connection loss.

        Returns a function to remove the listener.
        """


TransportFactory = Callable[[], VoiceTransport]
