"""Configuration for voice players."""

from __future__ import annotations

from dataclasses import dataclass, field

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

DEFAULT_NODE = "worldwide"


@dataclass
class VoiceNode(DataClassORJSONMixin):
    """A voice relay node the signaling endpoint can allocate from."""

    name: str
    """Node name sent as the relay preference."""


@dataclass
class VoiceOptions(DataClassORJSONMixin):
    """Settings shared by every player created from one host client."""

    api_url: str
    """Base URL of the signaling endpoint."""
    token: str | None = None
    """Credential sent with every signaling request."""
    token_header: str = "X-Bot-Token"
    """Header name carrying the credential."""
    nodes: list[VoiceNode] = field(default_factory=list)
    """Relay nodes in preference order; the first one is requested."""
    join_path: str = "/sessions/{channel_id}/join"
    """Path template of the grant endpoint."""
    request_timeout: float = 10.0
    """Timeout in seconds for each signaling request."""
    connect_timeout: float = 15.0
    """Timeout in seconds for the transport handshake."""
    fetch_timeout: float = 30.0
    """Connect/read stall timeout in seconds when fetching URL sources."""
    sample_rate: int = 48000
    """Output sample rate in Hz."""
    channels: int = 1
    """Output channel count."""
    chunk_duration_ms: int = 100
    """Duration of one transmitted chunk in milliseconds."""
    ffmpeg_path: str = "ffmpeg"
    """Executable used by the fallback decoder."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.api_url:
            raise ValueError("api_url cannot be empty")
        if "{channel_id}" not in self.join_path:
            raise ValueError("join_path must contain '{channel_id}'")
        if self.request_timeout <= 0 or self.connect_timeout <= 0 or self.fetch_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.channels <= 0:
            raise ValueError(f"channels must be positive, got {self.channels}")
        if self.chunk_duration_ms <= 0:
            raise ValueError(f"chunk_duration_ms must be positive, got {self.chunk_duration_ms}")

    @property
    def preferred_node(self) -> str:
        """Return the relay node to request."""
        return self.nodes[0].name if self.nodes else DEFAULT_NODE

    def join_url(self, channel_id: str) -> str:
        """Return the absolute grant URL for a channel."""
        return self.api_url.rstrip("/") + self.join_path.format(channel_id=channel_id)

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
