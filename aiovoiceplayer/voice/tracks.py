"""Published tracks and their audio sources."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from .errors import PublishError, ResourceCleanupError
from .events import ErrorEvent, EventChannel, TrackPublishedEvent, TrackStoppedEvent
from .transport import AudioSink, VoiceTransport

logger = logging.getLogger(__name__)


@dataclass
class PublishedTrack:
    """One outbound audio track within a session."""

    track_id: str
    """Identifier assigned by the transport on publish."""
    source_key: str
    """Generated key of the audio source feeding the track."""
    source: AudioSink
    """Audio source handle the delivery engine writes frames to."""


class TrackManager:
    """
    Sole owner of a session's published tracks and audio sources.

    Removal always drops the track from tracking, even when the transport
    call fails, so the set never claims a track the session cannot reach.
    """

    def __init__(self, events: EventChannel, log: logging.Logger | None = None) -> None:
        """Create an empty track set reporting to events."""
        self._events = events
        self._logger = log or logger
        self._tracks: dict[str, PublishedTrack] = {}

    def __len__(self) -> int:
        return len(self._tracks)

    @property
    def track_ids(self) -> list[str]:
        """Identifiers of all tracks believed to be published."""
        return list(self._tracks)

    def get(self, track_id: str) -> PublishedTrack | None:
        """Return a tracked track by identifier."""
        return self._tracks.get(track_id)

    async def publish(
        self, transport: VoiceTransport, sample_rate: int, channels: int, *, kind: str = "file"
    ) -> PublishedTrack:
        """
        Create one audio source and publish one track fed by it.

        Raises:
            PublishError: If the transport returned no track identifier.
        """
        source_key = f"{kind}_{uuid4().hex[:12]}"
        source = transport.create_audio_source(sample_rate, channels)
        track_id = await transport.publish_track(source)
        if not track_id:
            await self._close_source(source_key, source)
            raise PublishError("Failed to publish audio track")
        track = PublishedTrack(track_id=track_id, source_key=source_key, source=source)
        self._tracks[track_id] = track
        self._logger.debug(
            "Audio track %s published (source=%s, tracks=%d)", track_id, source_key, len(self._tracks)
        )
        self._events.emit(TrackPublishedEvent(track_id))
        return track

    async def unpublish(self, transport: VoiceTransport | None, track_id: str) -> bool:
        """
        Remove one track. Returns False if the track is not tracked.

        Transport failures are logged; the track is dropped regardless.
        """
        track = self._tracks.pop(track_id, None)
        if track is None:
            return False
        await self._release(transport, track)
        return True

    async def unpublish_all(self, transport: VoiceTransport | None) -> None:
        """
        Remove every track, tolerating individual failures.

        Pass transport=None when the connection is already gone; sources are
        still closed and tracking is reset.
        """
        tracks = list(self._tracks.values())
        self._tracks.clear()
        for track in tracks:
            await self._release(transport, track)

    async def _release(self, transport: VoiceTransport | None, track: PublishedTrack) -> None:
        if transport is not None:
            try:
                await transport.unpublish_track(track.track_id)
            except Exception as err:  # noqa: BLE001
                self._logger.warning("Failed to stop track %s: %s", track.track_id, err)
                cleanup_error = ResourceCleanupError(f"Failed to stop track {track.track_id}")
                cleanup_error.__cause__ = err
                self._events.emit(ErrorEvent(cleanup_error, "track-cleanup"))
            else:
                self._events.emit(TrackStoppedEvent(track.track_id))
        else:
            self._events.emit(TrackStoppedEvent(track.track_id))
        await self._close_source(track.source_key, track.source)

    async def _close_source(self, source_key: str, source: AudioSink) -> None:
        try:
            await source.aclose()
        except Exception as err:  # noqa: BLE001
            self._logger.debug("Failed to close audio source %s: %s", source_key, err)
