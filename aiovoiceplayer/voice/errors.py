"""Exceptions raised by voice players."""

from __future__ import annotations

CONFLICT_GUIDANCE = (
    "Unable to join voice channel: a session for this application is already active.\n\n"
    "This typically happens when:\n"
    "- a previous session was not disconnected properly\n"
    "- another instance of the application is running\n"
    "- the application crashed without cleaning up\n\n"
    "Things to try:\n"
    "1. Restart the application completely\n"
    "2. Wait 30-60 seconds for the stale session to time out\n"
    "3. Check whether another instance is running\n"
    "4. Check the voice channel permissions\n\n"
    "If this persists the signaling service may need manual intervention."
)


class VoicePlayerError(Exception):
    """Base class for all voice player errors."""


class InvalidInputError(VoicePlayerError, ValueError):
    """A playback source is neither a URL, an existing path, nor a byte stream."""


class SessionConnectionError(VoicePlayerError, ConnectionError):
    """Negotiation with the signaling endpoint or the transport failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Create the error, optionally recording the HTTP status."""
        super().__init__(message)
        self.status = status


class AlreadyConnectedError(SessionConnectionError):
    """The signaling endpoint reported an existing grant for this caller."""


class ConnectionConflictError(SessionConnectionError):
    """An existing grant could not be cleared; requires external intervention."""

    def __init__(self, channel_id: str) -> None:
        """Create the error with actionable guidance."""
        super().__init__(CONFLICT_GUIDANCE)
        self.channel_id = channel_id


class NotConnectedError(VoicePlayerError):
    """A delivery operation was attempted outside the connected state."""


class DecodeError(VoicePlayerError):
    """No decoder could turn the source into PCM, or decoding failed terminally."""


class FrameTransmitError(VoicePlayerError):
    """Handing one frame to the transport failed."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        """Create the error; transient errors are skipped silently."""
        super().__init__(message)
        self.transient = transient


class PublishError(VoicePlayerError):
    """The transport did not return a track handle for a publish request."""


class ResourceCleanupError(VoicePlayerError):
    """Releasing a track or audio source failed; logged, never re-raised."""
