from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import numpy as np
import pytest

from aiovoiceplayer.voice.audio import PCMFormat, PCMFrame, PCMSamples
from aiovoiceplayer.voice.decode import DecodeInput, Decoder, DecodePipeline
from aiovoiceplayer.voice.delivery import (
    CancellationToken,
    is_transient_error,
    send_buffer,
    stream_live,
)
from aiovoiceplayer.voice.errors import FrameTransmitError

FMT = PCMFormat(1000, 1)
"""Small rate so 10 ms chunks are 10 samples."""


class RecordingSink:
    def __init__(self, failures: dict[int, Exception] | None = None) -> None:
        self.frames: list[PCMFrame] = []
        self.attempts = 0
        self._failures = failures or {}

    async def capture_frame(self, frame: PCMFrame) -> None:
        index = self.attempts
        self.attempts += 1
        if index in self._failures:
            raise self._failures[index]
        self.frames.append(frame)

    async def aclose(self) -> None:
        pass


class PiecesDecoder(Decoder):
    name = "pieces"

    def __init__(self, pieces: list[PCMSamples]) -> None:
        self._pieces = pieces
        self.pulled = 0

    @property
    def available(self) -> bool:
        return True

    async def decode(self, source, fmt: PCMFormat) -> PCMSamples:
        return np.concatenate(self._pieces)

    async def iter_pcm(self, source: DecodeInput, fmt: PCMFormat) -> AsyncIterator[PCMSamples]:
        for piece in self._pieces:
            self.pulled += 1
            yield piece


@pytest.mark.asyncio
async def test_cancellation_token() -> None:
    token = CancellationToken()
    assert not token.cancelled
    assert not await token.wait(0.01)
    asyncio.get_running_loop().call_later(0.01, token.cancel)
    assert await token.wait(5.0)
    assert token.cancelled


@pytest.mark.asyncio
async def test_send_buffer_sends_all_chunks_in_order() -> None:
    sink = RecordingSink()
    samples = np.arange(35, dtype=np.int16)
    result = await send_buffer(sink, samples, FMT, CancellationToken(), chunk_duration_ms=10)
    assert result.frames == 4
    assert result.samples == 35
    assert not result.cancelled
    assert [len(frame.data) for frame in sink.frames] == [10, 10, 10, 5]
    assert np.concatenate([frame.data for frame in sink.frames]).tolist() == samples.tolist()
    assert all(frame.sample_rate == 1000 and frame.channels == 1 for frame in sink.frames)


@pytest.mark.asyncio
async def test_send_buffer_paces_to_real_time() -> None:
    sink = RecordingSink()
    loop = asyncio.get_running_loop()
    start = loop.time()
    await send_buffer(sink, np.zeros(50, dtype=np.int16), FMT, CancellationToken(), chunk_duration_ms=10)
    assert loop.time() - start >= 0.045


@pytest.mark.asyncio
async def test_stop_halts_within_one_chunk() -> None:
    sink = RecordingSink()
    token = CancellationToken()
    task = asyncio.create_task(
        send_buffer(sink, np.zeros(10_000, dtype=np.int16), FMT, token, chunk_duration_ms=10)
    )
    await asyncio.sleep(0.035)
    token.cancel()
    sent_at_stop = len(sink.frames)
    result = await asyncio.wait_for(task, 1.0)
    assert result.cancelled
    assert len(sink.frames) == sent_at_stop
    assert sent_at_stop < 1000


@pytest.mark.asyncio
async def test_frame_errors_do_not_stop_playback() -> None:
    sink = RecordingSink(
        failures={
            0: FrameTransmitError("not ready", transient=True),
            1: RuntimeError("InvalidState: source closed"),
            2: RuntimeError("boom"),
        }
    )
    result = await send_buffer(
        sink, np.zeros(50, dtype=np.int16), FMT, CancellationToken(), chunk_duration_ms=10
    )
    assert sink.attempts == 5
    assert result.frames == 2


def test_transient_error_detection() -> None:
    assert is_transient_error(FrameTransmitError("x", transient=True))
    assert is_transient_error(RuntimeError("InvalidState"))
    assert not is_transient_error(FrameTransmitError("x"))
    assert not is_transient_error(RuntimeError("boom"))


@pytest.mark.asyncio
async def test_stream_live_applies_current_volume_per_chunk() -> None:
    pieces = [np.full(10, 100, dtype=np.int16), np.full(10, 100, dtype=np.int16)]
    decoder = PiecesDecoder(pieces)
    sink = RecordingSink()
    volumes = iter([2.0, 0.5])
    result = await stream_live(
        sink,
        DecodePipeline([decoder]),
        b"",
        FMT,
        CancellationToken(),
        lambda: next(volumes),
        chunk_duration_ms=10,
    )
    assert result.frames == 2
    assert result.samples == 20
    assert sink.frames[0].data.tolist() == [200] * 10
    assert sink.frames[1].data.tolist() == [50] * 10


@pytest.mark.asyncio
async def test_stream_live_stops_pulling_after_cancel() -> None:
    pieces = [np.zeros(10, dtype=np.int16) for _ in range(10)]
    decoder = PiecesDecoder(pieces)
    token = CancellationToken()

    class StoppingSink(RecordingSink):
        async def capture_frame(self, frame: PCMFrame) -> None:
            await super().capture_frame(frame)
            if len(self.frames) == 3:
                token.cancel()

    sink = StoppingSink()
    result = await stream_live(
        sink, DecodePipeline([decoder]), b"", FMT, token, lambda: 1.0, chunk_duration_ms=10
    )
    assert result.cancelled
    assert len(sink.frames) == 3
    # The third frame completed after cancel, so it is not counted
    assert result.frames == 2
    assert decoder.pulled <= 4
