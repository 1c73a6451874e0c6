"""Voice relay transport backed by the LiveKit realtime SDK."""

from __future__ import annotations

import logging
import types
from collections.abc import Callable
from contextlib import suppress
from typing import Any

from .audio import PCMFrame
from .errors import FrameTransmitError
from .transport import AudioSink, DisconnectCallback, VoiceTransport

logger = logging.getLogger(__name__)


def _get_rtc() -> types.ModuleType:
    """Lazy import of the LiveKit rtc module (optional dependency)."""
    from livekit import rtc as _rtc  # noqa: PLC0415

    return _rtc


class LiveKitAudioSink:
    """AudioSink wrapping an rtc.AudioSource."""

    def __init__(self, rtc: types.ModuleType, sample_rate: int, channels: int) -> None:
        self._rtc = rtc
        self.source = rtc.AudioSource(sample_rate, channels)
        self.track = rtc.LocalAudioTrack.create_audio_track("audio", self.source)
        self._closed = False

    async def capture_frame(self, frame: PCMFrame) -> None:
        rtc_frame = self._rtc.AudioFrame(
            data=frame.data.tobytes(),
            sample_rate=frame.sample_rate,
            num_channels=frame.channels,
            samples_per_channel=frame.samples_per_channel,
        )
        try:
            await self.source.capture_frame(rtc_frame)
        except Exception as err:
            raise FrameTransmitError(
                f"capture_frame failed: {err}", transient="InvalidState" in str(err)
            ) from err

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.source.aclose()


class LiveKitTransport(VoiceTransport):
    """VoiceTransport implementation using livekit.rtc.Room."""

    def __init__(self) -> None:
        """Create an unconnected room."""
        self._rtc = _get_rtc()
        self._room: Any = self._rtc.Room()
        self._disconnect_cbs: list[DisconnectCallback] = []
        self._closing = False
        self._room.on("disconnected", self._on_disconnected)

    @property
    def room_name(self) -> str | None:
        return self._room.name or None

    async def connect(
        self, url: str, token: str, *, dynacast: bool = True, auto_subscribe: bool = True
    ) -> None:
        options = self._rtc.RoomOptions(auto_subscribe=auto_subscribe, dynacast=dynacast)
        await self._room.connect(url, token, options=options)

    async def disconnect(self) -> None:
        self._closing = True
        await self._room.disconnect()

    def create_audio_source(self, sample_rate: int, channels: int) -> LiveKitAudioSink:
        return LiveKitAudioSink(self._rtc, sample_rate, channels)

    async def publish_track(self, source: AudioSink, *, name: str = "audio") -> str | None:
        if not isinstance(source, LiveKitAudioSink):
            raise TypeError("LiveKitTransport can only publish its own audio sources")
        options = self._rtc.TrackPublishOptions()
        options.source = self._rtc.TrackSource.SOURCE_MICROPHONE
        publication = await self._room.local_participant.publish_track(source.track, options)
        if publication is None or not publication.sid:
            return None
        logger.debug("Published LiveKit track %s (%s)", publication.sid, name)
        return str(publication.sid)

    async def unpublish_track(self, track_id: str) -> None:
        await self._room.local_participant.unpublish_track(track_id)

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        self._disconnect_cbs.append(callback)

        def _remove() -> None:
            with suppress(ValueError):
                self._disconnect_cbs.remove(callback)

        return _remove

    def _on_disconnected(self, *args: Any) -> None:
        if self._closing:
            return
        logger.debug("LiveKit room disconnected: %s", args)
        for cb in list(self._disconnect_cbs):
            try:
                cb()
            except Exception:
                logger.exception("Error in disconnect listener")
