"""Models for aiovoiceplayer."""

from __future__ import annotations

__all__ = [
    "ALREADY_CONNECTED",
    "ApiErrorBody",
    "DeliveryMode",
    "DisconnectReason",
    "JoinCallRequest",
    "JoinCallResponse",
    "PlayerStatus",
    "SourceKind",
    "StreamState",
    "VoiceNode",
    "VoiceOptions",
    "config",
    "signaling",
    "status",
    "types",
]

from . import config, signaling, status, types
from .config import VoiceNode, VoiceOptions
from .signaling import ALREADY_CONNECTED, ApiErrorBody, JoinCallRequest, JoinCallResponse
from .status import PlayerStatus
from .types import DeliveryMode, DisconnectReason, SourceKind, StreamState
