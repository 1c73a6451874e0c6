"""PCM formats, frames and format conversion."""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt

PCMSamples = npt.NDArray[np.int16]
"""Interleaved signed 16-bit samples."""

INT16_MIN = -32768
INT16_MAX = 32767


@dataclass(frozen=True)
class PCMFormat:
    """Canonical PCM format delivered to the transport."""

    sample_rate: int = 48000
    """Sample rate in Hz."""
    channels: int = 1
    """Number of interleaved channels."""

    def __post_init__(self) -> None:
        """Validate the provided PCM format."""
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.channels <= 0:
            raise ValueError("channels must be positive")

    @property
    def frame_size(self) -> int:
        """Return bytes per PCM frame (16-bit samples)."""
        return self.channels * 2

    def samples_per_chunk(self, duration_ms: int) -> int:
        """Return the number of interleaved samples in a chunk of duration_ms."""
        return (self.sample_rate * duration_ms // 1000) * self.channels

    def duration_s(self, sample_count: int) -> float:
        """Return the playback duration of sample_count interleaved samples."""
        return sample_count / (self.sample_rate * self.channels)


@dataclass
class PCMFrame:
    """One chunk of interleaved 16-bit PCM handed to an audio sink."""

    data: PCMSamples
    sample_rate: int
    channels: int

    @property
    def samples_per_channel(self) -> int:
        """Number of samples in each channel."""
        return len(self.data) // self.channels


def round_half_up(values: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """Round to the nearest integer, with halves rounded towards +inf."""
    return np.floor(values + 0.5)


def to_int16(values: npt.NDArray[np.float64]) -> PCMSamples:
    """Round and clamp floating point samples into the 16-bit range."""
    return np.clip(round_half_up(values), INT16_MIN, INT16_MAX).astype(np.int16)


def convert_channels(samples: PCMSamples, src_channels: int, dst_channels: int) -> PCMSamples:
    """
    Change the channel count of interleaved samples.

    Reducing channels averages each frame's channels (rounded); expanding
    duplicates the first channel into every output channel.
    """
    if src_channels == dst_channels:
        return samples
    usable = len(samples) - len(samples) % src_channels
    frames = samples[:usable].reshape(-1, src_channels)
    if dst_channels < src_channels:
        mixed = to_int16(frames.astype(np.float64).mean(axis=1))
        if dst_channels == 1:
            return mixed
        return np.repeat(mixed, dst_channels)
    return np.repeat(frames[:, 0], dst_channels)


def resample_linear(
    samples: PCMSamples, channels: int, src_rate: int, dst_rate: int
) -> PCMSamples:
    """Resample interleaved samples by linear interpolation."""
    if src_rate == dst_rate or len(samples) == 0:
        return samples
    frames = samples.reshape(-1, channels).astype(np.float64)
    count = frames.shape[0]
    out_count = math.ceil(count * dst_rate / src_rate)
    positions = np.arange(out_count, dtype=np.float64) * (src_rate / dst_rate)
    source_index = np.arange(count, dtype=np.float64)
    out = np.empty((out_count, channels), dtype=np.float64)
    for channel in range(channels):
        # np.interp holds the last value past the end of the input
        out[:, channel] = np.interp(positions, source_index, frames[:, channel])
    return to_int16(out.reshape(-1))


def convert_pcm(
    samples: PCMSamples,
    *,
    src_channels: int,
    src_rate: int,
    target: PCMFormat,
) -> PCMSamples:
    """Convert natively decoded samples into the target format."""
    converted = convert_channels(samples, src_channels, target.channels)
    return resample_linear(converted, target.channels, src_rate, target.sample_rate)


def pcm_from_bytes(data: bytes) -> PCMSamples:
    """Interpret raw little-endian 16-bit bytes as samples."""
    usable = len(data) - len(data) % 2
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.int16)


def iter_chunks(samples: PCMSamples, chunk_samples: int) -> list[PCMSamples]:
    """Split a buffer into consecutive chunks; the last one may be shorter."""
    return [samples[i : i + chunk_samples] for i in range(0, len(samples), chunk_samples)]


class Rechunker:
    """Accumulate arbitrary PCM pieces and emit fixed-size chunks."""

    def __init__(self, chunk_samples: int) -> None:
        """Create a rechunker producing chunks of chunk_samples samples."""
        if chunk_samples <= 0:
            raise ValueError("chunk_samples must be positive")
        self._chunk_samples = chunk_samples
        self._pending: list[PCMSamples] = []
        self._pending_count = 0

    def push(self, samples: PCMSamples) -> list[PCMSamples]:
        """Add samples and return every complete chunk now available."""
        if len(samples) == 0:
            return []
        self._pending.append(samples)
        self._pending_count += len(samples)
        if self._pending_count < self._chunk_samples:
            return []
        buffer = np.concatenate(self._pending)
        full = len(buffer) - len(buffer) % self._chunk_samples
        rest = buffer[full:]
        self._pending = [rest] if len(rest) else []
        self._pending_count = len(rest)
        return iter_chunks(buffer[:full], self._chunk_samples)

    def flush(self) -> PCMSamples | None:
        """Return the remaining partial chunk, if any."""
        if not self._pending_count:
            return None
        buffer = np.concatenate(self._pending)
        self._pending = []
        self._pending_count = 0
        return buffer
