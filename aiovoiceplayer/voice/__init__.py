"""Public interface for the voice session and audio delivery package."""

from .audio import PCMFormat, PCMFrame, PCMSamples
from .classify import PlaybackRequest, classify_source, is_live_response
from .decode import Decoder, DecodePipeline, FFmpegDecoder, PyAVDecoder
from .delivery import CancellationToken, DeliveryResult
from .errors import (
    AlreadyConnectedError,
    ConnectionConflictError,
    DecodeError,
    FrameTransmitError,
    InvalidInputError,
    NotConnectedError,
    PublishError,
    ResourceCleanupError,
    SessionConnectionError,
    VoicePlayerError,
)
from .events import (
    ConnectedEvent,
    DebugEvent,
    DecodeEndedEvent,
    DecodeErrorEvent,
    DecodeStartedEvent,
    DisconnectedEvent,
    ErrorEvent,
    EventSubscription,
    MutedEvent,
    PlaybackEndedEvent,
    PlaybackErrorEvent,
    PlaybackStartedEvent,
    TrackPublishedEvent,
    TrackStoppedEvent,
    UnmutedEvent,
    VoiceEvent,
    VolumeChangedEvent,
)
from .player import VoicePlayer
from .signaling import SignalingClient
from .transport import AudioSink, TransportFactory, VoiceTransport
from .volume import apply_volume

__all__ = [
    "AlreadyConnectedError",
    "AudioSink",
    "CancellationToken",
    "ConnectedEvent",
    "ConnectionConflictError",
    "DebugEvent",
    "DecodeEndedEvent",
    "DecodeError",
    "DecodeErrorEvent",
    "DecodePipeline",
    "DecodeStartedEvent",
    "Decoder",
    "DeliveryResult",
    "DisconnectedEvent",
    "ErrorEvent",
    "EventSubscription",
    "FFmpegDecoder",
    "FrameTransmitError",
    "InvalidInputError",
    "MutedEvent",
    "NotConnectedError",
    "PCMFormat",
    "PCMFrame",
    "PCMSamples",
    "PlaybackEndedEvent",
    "PlaybackErrorEvent",
    "PlaybackRequest",
    "PlaybackStartedEvent",
    "PublishError",
    "PyAVDecoder",
    "ResourceCleanupError",
    "SessionConnectionError",
    "SignalingClient",
    "TrackPublishedEvent",
    "TrackStoppedEvent",
    "TransportFactory",
    "UnmutedEvent",
    "VoiceEvent",
    "VoicePlayer",
    "VoicePlayerError",
    "VoiceTransport",
    "VolumeChangedEvent",
    "apply_volume",
    "classify_source",
    "is_live_response",
]
