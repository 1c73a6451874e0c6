"""Public interface for the voice client package."""

from .voice_client import VoiceClient

__all__ = [
    "VoiceClient",
]
