"""Models for enum types used by aiovoiceplayer."""

from enum import Enum


class StreamState(Enum):
    """Lifecycle state of a voice session."""

    IDLE = "idle"
    """No negotiation has started, or the last one failed."""
    CONNECTING = "connecting"
    """Session grant requested, transport handshake pending."""
    CONNECTED = "connected"
    """Transport is up; delivery operations are allowed from here only."""
    PUBLISHING = "publishing"
    """An audio track is being published (sub-state of CONNECTED)."""
    STREAMING = "streaming"
    """PCM chunks are being delivered (sub-state of CONNECTED)."""
    STOPPING = "stopping"
    """A manual disconnect is tearing the session down."""
    DISCONNECTED = "disconnected"
    """The transport handle has been released."""

    @property
    def is_connected(self) -> bool:
        """Return True for CONNECTED and its delivery sub-states."""
        return self in (StreamState.CONNECTED, StreamState.PUBLISHING, StreamState.STREAMING)


class SourceKind(Enum):
    """Classified kind of a playback source."""

    FILE = "file"
    URL = "url"
    STREAM = "stream"


class DeliveryMode(Enum):
    """How PCM is handed to the transport."""

    FINITE = "finite"
    """Decode everything first, then send paced chunks."""
    LIVE = "live"
    """Send each chunk as the decoder produces it."""


class DisconnectReason(Enum):
    """Why a session left the CONNECTED state."""

    MANUAL = "manual"
    UNEXPECTED = "unexpected"
