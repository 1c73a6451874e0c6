"""Player status snapshot."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import StreamState


@dataclass
class PlayerStatus(DataClassORJSONMixin):
    """Snapshot returned by VoicePlayer.get_status()."""

    connected: bool
    """Whether the transport is currently up."""
    volume: float
    """Current volume level (0.0 to 2.0)."""
    active_track_count: int
    """Number of tracks the player believes are published."""
    channel_id: str
    """Target voice channel."""
    session_key: str
    """Owning collection (server) identifier."""
    state: StreamState = StreamState.IDLE
    """Current lifecycle state."""
