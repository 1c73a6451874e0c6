"""Real-time delivery of PCM chunks to an audio sink."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass

from .audio import PCMFormat, PCMFrame, PCMSamples, iter_chunks
from .decode import DecodeInput, DecodePipeline
from .errors import FrameTransmitError
from .transport import AudioSink
from .volume import apply_volume

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DURATION_MS = 100


class CancellationToken:
    """
    Cooperative stop signal for one playback.

    Delivery loops check it before every chunk; the pacing delay wakes up
    as soon as it is cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Request the owning loop to stop."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return True once cancel() was called."""
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; return True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except TimeoutError:
            return self._event.is_set()
        return True


@dataclass
class DeliveryResult:
    """Outcome of one delivery loop."""

    frames: int = 0
    """Frames accepted by the sink."""
    samples: int = 0
    """Interleaved samples handed to the sink, accepted or not."""
    cancelled: bool = False
    """Whether the loop exited because of the cancellation token."""


def is_transient_error(err: Exception) -> bool:
    """Return True for frame errors caused by a momentarily invalid transport state."""
    if isinstance(err, FrameTransmitError) and err.transient:
        return True
    return "InvalidState" in str(err)


async def _transmit(
    sink: AudioSink, frame: PCMFrame, token: CancellationToken, log: logging.Logger
) -> bool:
    """Hand one frame to the sink; failures never stop the loop."""
    try:
        await sink.capture_frame(frame)
    except Exception as err:  # noqa: BLE001
        if token.cancelled:
            return False
        if is_transient_error(err):
            log.debug("Skipping frame, transport not ready: %s", err)
        else:
            log.warning("Failed to send audio frame: %s", err)
        return False
    # Result of a call that completed after stop() is discarded
    return not token.cancelled


async def send_buffer(
    sink: AudioSink,
    samples: PCMSamples,
    fmt: PCMFormat,
    token: CancellationToken,
    *,
    chunk_duration_ms: int = DEFAULT_CHUNK_DURATION_MS,
    log: logging.Logger | None = None,
) -> DeliveryResult:
    """
    Send an already decoded buffer at real-time cadence.

    After each chunk the loop sleeps until the chunk's nominal end time.
    Deadlines accumulate on the loop clock so transport latency does not
    stretch the total playback time.
    """
    log = log or logger
    result = DeliveryResult()
    loop = asyncio.get_running_loop()
    deadline = loop.time()
    for chunk in iter_chunks(samples, fmt.samples_per_chunk(chunk_duration_ms)):
        if token.cancelled:
            break
        frame = PCMFrame(chunk, fmt.sample_rate, fmt.channels)
        if await _transmit(sink, frame, token, log):
            result.frames += 1
        result.samples += len(chunk)
        deadline += fmt.duration_s(len(chunk))
        if await token.wait(max(deadline - loop.time(), 0.0)):
            break
    result.cancelled = token.cancelled
    log.debug(
        "Buffered delivery finished (frames=%d, cancelled=%s)", result.frames, result.cancelled
    )
    return result


async def stream_live(
    sink: AudioSink,
    pipeline: DecodePipeline,
    source: DecodeInput,
    fmt: PCMFormat,
    token: CancellationToken,
    volume: Callable[[], float],
    *,
    chunk_duration_ms: int = DEFAULT_CHUNK_DURATION_MS,
    log: logging.Logger | None = None,
) -> DeliveryResult:
    """
    Send chunks as the decoder produces them.

    The next chunk is only requested after the previous one was handed to the
    sink, so the decoder is throttled by the transport. Volume is read per
    chunk so changes apply mid-stream.

    Raises:
        DecodeError: If decoding fails before the source is exhausted.
    """
    log = log or logger
    result = DeliveryResult()
    chunk_samples = fmt.samples_per_chunk(chunk_duration_ms)
    async with aclosing(pipeline.iter_chunks(source, fmt, chunk_samples)) as chunks:
        async for chunk in chunks:
            if token.cancelled:
                break
            frame = PCMFrame(apply_volume(chunk, volume()), fmt.sample_rate, fmt.channels)
            if await _transmit(sink, frame, token, log):
                result.frames += 1
            result.samples += len(chunk)
    result.cancelled = token.cancelled
    log.debug("Live delivery finished (frames=%d, cancelled=%s)", result.frames, result.cancelled)
    return result
