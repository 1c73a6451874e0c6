"""
Signaling endpoint bodies.

The signaling endpoint hands out a session grant (a relay URL and an access
token) for a voice channel. These models describe the JSON exchanged with it.
"""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

ALREADY_CONNECTED = "AlreadyConnected"
"""Error discriminator returned when a grant for the caller already exists."""


@dataclass
class JoinCallRequest(DataClassORJSONMixin):
    """Body of a session grant request."""

    node: str
    """Preferred relay node name."""
    force: bool | None = None
    """Override an existing grant (last-resort conflict recovery)."""

    class Config(BaseConfig):
        """Config for serializing json messages."""

        omit_none = True


@dataclass
class JoinCallResponse(DataClassORJSONMixin):
    """Session grant returned by the signaling endpoint."""

    token: str
    """Access token for the voice relay."""
    url: str
    """Voice relay URL to connect the transport to."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if not self.token:
            raise ValueError("token cannot be empty")
        if not self.url:
            raise ValueError("url cannot be empty")


@dataclass
class ApiErrorBody(DataClassORJSONMixin):
    """Error body returned by the signaling endpoint."""

    type: str | None = None
    """Error discriminator (e.g. 'AlreadyConnected')."""
    message: str | None = None
    """Optional human readable description."""

    @property
    def is_already_connected(self) -> bool:
        """Return True if this error reports an existing grant."""
        return self.type == ALREADY_CONNECTED

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True
