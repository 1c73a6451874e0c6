"""Decode arbitrary audio into canonical PCM."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import shutil
import threading
import types
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterator, Sequence
from contextlib import aclosing, suppress
from functools import partial
from typing import Any, Union

import numpy as np

from aiovoiceplayer.util import StrategiesExhaustedError, Strategy, first_success

from .audio import PCMFormat, PCMSamples, Rechunker, convert_pcm, pcm_from_bytes
from .errors import DecodeError

logger = logging.getLogger(__name__)

DecodeInput = Union[str, os.PathLike[str], bytes, AsyncIterable[bytes]]
"""A path, an in-memory encoded buffer, or an async source of encoded bytes."""

ChunkCallback = Callable[[PCMSamples], Awaitable[None]]
EndCallback = Callable[[], None]
ErrorCallback = Callable[[DecodeError], None]

_PROCESS_STOP_TIMEOUT = 2.0


def _import_av() -> types.ModuleType:
    """Lazy import of av module to avoid slow startup."""
    import av as _av  # noqa: PLC0415

    return _av


class Decoder(ABC):
    """A decode capability producing interleaved 16-bit PCM."""

    name: str

    @property
    @abstractmethod
    def available(self) -> bool:
        """Return True if this capability can be used in this process."""

    @abstractmethod
    async def decode(self, source: str | os.PathLike[str] | bytes, fmt: PCMFormat) -> PCMSamples:
        """Decode a finite source completely."""

    @abstractmethod
    def iter_pcm(self, source: DecodeInput, fmt: PCMFormat) -> AsyncIterator[PCMSamples]:
        """Decode incrementally, yielding PCM pieces of arbitrary size in order."""


class _LoopReader(io.RawIOBase):
    """
    Blocking file object that pulls bytes from an async iterator.

    Read from a worker thread; each refill schedules one step of the async
    iterator on the event loop and waits for it.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, chunks: AsyncIterable[bytes]) -> None:
        super().__init__()
        self._loop = loop
        self._iterator = chunks.__aiter__()
        self._buffer = b""
        self._eof = False
        self._closing = threading.Event()

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        while not self._buffer and not self._eof:
            if self._closing.is_set():
                return 0
            data = asyncio.run_coroutine_threadsafe(self._next_chunk(), self._loop).result()
            if data is None:
                self._eof = True
            else:
                self._buffer = data
        count = min(len(buffer), len(self._buffer))
        buffer[:count] = self._buffer[:count]
        self._buffer = self._buffer[count:]
        return count

    def request_close(self) -> None:
        """Make further reads return end-of-file."""
        self._closing.set()

    async def _next_chunk(self) -> bytes | None:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return None


class PyAVDecoder(Decoder):
    """In-process decoder backed by PyAV."""

    name = "pyav"

    def __init__(self) -> None:
        """Probe for PyAV once; the result never changes afterwards."""
        self._av: types.ModuleType | None
        try:
            self._av = _import_av()
        except ImportError:
            self._av = None
            logger.debug("PyAV is not available")
        else:
            logger.debug("PyAV %s is available", getattr(self._av, "__version__", "?"))

    @property
    def available(self) -> bool:
        """Return True if PyAV could be imported."""
        return self._av is not None

    def _require_av(self) -> types.ModuleType:
        if self._av is None:
            raise DecodeError("PyAV is not available")
        return self._av

    def _iter_decoded(self, file: Any, fmt: PCMFormat) -> Iterator[PCMSamples]:
        """Blocking generator of converted PCM; runs in a worker thread."""
        av = self._require_av()
        try:
            with av.open(file, mode="r") as container:
                if not container.streams.audio:
                    raise DecodeError("Input contains no audio stream")
                stream = container.streams.audio[0]
                resampler = None
                src_channels = 0
                src_rate = 0
                for frame in container.decode(stream):
                    if resampler is None:
                        # Normalize sample format only; layout and rate stay native
                        src_channels = len(frame.layout.channels)
                        src_rate = frame.sample_rate
                        resampler = av.AudioResampler(
                            format="s16", layout=frame.layout.name, rate=src_rate
                        )
                        logger.debug(
                            "Decoding audio stream (codec=%s, rate=%d, channels=%d)",
                            stream.codec_context.name,
                            src_rate,
                            src_channels,
                        )
                    for out_frame in resampler.resample(frame):
                        samples = out_frame.to_ndarray().reshape(-1).astype(np.int16, copy=False)
                        yield convert_pcm(
                            samples, src_channels=src_channels, src_rate=src_rate, target=fmt
                        )
                if resampler is not None:
                    for out_frame in resampler.resample(None):
                        samples = out_frame.to_ndarray().reshape(-1).astype(np.int16, copy=False)
                        yield convert_pcm(
                            samples, src_channels=src_channels, src_rate=src_rate, target=fmt
                        )
        except DecodeError:
            raise
        except Exception as err:
            raise DecodeError(f"PyAV decoder error: {err}") from err

    async def decode(self, source: str | os.PathLike[str] | bytes, fmt: PCMFormat) -> PCMSamples:
        """Decode a path or an in-memory buffer in a worker thread."""
        self._require_av()
        file: Any = io.BytesIO(source) if isinstance(source, bytes) else os.fspath(source)

        def _run() -> PCMSamples:
            pieces = list(self._iter_decoded(file, fmt))
            if not pieces:
                return np.zeros(0, dtype=np.int16)
            return np.concatenate(pieces)

        return await asyncio.to_thread(_run)

    async def iter_pcm(self, source: DecodeInput, fmt: PCMFormat) -> AsyncIterator[PCMSamples]:
        """
        Decode incrementally.

        Each step of the blocking decoder runs in the default executor and is
        only requested when the consumer asks for the next piece, so decoding
        never runs ahead of delivery.
        """
        self._require_av()
        loop = asyncio.get_running_loop()
        reader: _LoopReader | None = None
        file: Any
        if isinstance(source, bytes):
            file = io.BytesIO(source)
        elif isinstance(source, AsyncIterable):
            reader = _LoopReader(loop, source)
            file = reader
        else:
            file = os.fspath(source)

        generator = self._iter_decoded(file, fmt)
        lock = threading.Lock()

        def _next() -> PCMSamples | None:
            with lock:
                return next(generator, None)

        def _close() -> None:
            with lock:
                generator.close()

        try:
            while (samples := await loop.run_in_executor(None, _next)) is not None:
                yield samples
        finally:
            if reader is not None:
                reader.request_close()
            await loop.run_in_executor(None, _close)


class FFmpegDecoder(Decoder):
    """Decoder running an external ffmpeg process writing raw s16le to stdout."""

    name = "ffmpeg"

    def __init__(self, executable: str = "ffmpeg") -> None:
        """Locate the ffmpeg executable once."""
        self._path = shutil.which(executable)
        if self._path is None:
            logger.debug("ffmpeg executable '%s' not found", executable)

    @property
    def available(self) -> bool:
        """Return True if the ffmpeg executable was found."""
        return self._path is not None

    def _build_args(self, input_arg: str, fmt: PCMFormat) -> list[str]:
        if self._path is None:
            raise DecodeError("ffmpeg is not available")
        return [
            self._path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            input_arg,
            "-f",
            "s16le",
            "-acodec",
            "pcm_s16le",
            "-ac",
            str(fmt.channels),
            "-ar",
            str(fmt.sample_rate),
            "pipe:1",
        ]

    async def decode(self, source: str | os.PathLike[str] | bytes, fmt: PCMFormat) -> PCMSamples:
        """Decode a path or an in-memory buffer; requires exit status 0."""
        data = source if isinstance(source, bytes) else None
        input_arg = "pipe:0" if data is not None else os.fspath(source)  # type: ignore[arg-type]
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._build_args(input_arg, fmt),
                stdin=asyncio.subprocess.PIPE if data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise DecodeError(f"ffmpeg spawn error: {err}") from err
        stdout, stderr = await proc.communicate(input=data)
        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise DecodeError(f"ffmpeg failed with code {proc.returncode}: {message}")
        return pcm_from_bytes(stdout)

    async def iter_pcm(self, source: DecodeInput, fmt: PCMFormat) -> AsyncIterator[PCMSamples]:
        """
        Decode incrementally from a path, a buffer, or an async byte source.

        Exit status 0 and termination by a signal both count as a normal end.
        """
        piped = not isinstance(source, (str, os.PathLike))
        input_arg = "pipe:0" if piped else os.fspath(source)  # type: ignore[arg-type]
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._build_args(input_arg, fmt),
                stdin=asyncio.subprocess.PIPE if piped else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as err:
            raise DecodeError(f"ffmpeg spawn error: {err}") from err
        assert proc.stdout is not None
        assert proc.stderr is not None

        writer: asyncio.Task[None] | None = None
        if piped:
            writer = asyncio.create_task(self._write_input(proc, source))  # type: ignore[arg-type]
        stderr_task = asyncio.create_task(proc.stderr.read())
        read_size = fmt.frame_size * max(fmt.sample_rate // 10, 1)

        try:
            carry = b""
            while data := await proc.stdout.read(read_size):
                data = carry + data
                usable = len(data) - len(data) % 2
                carry = data[usable:]
                if usable:
                    yield pcm_from_bytes(data[:usable])
            returncode = await proc.wait()
            if writer is not None and writer.done() and not writer.cancelled():
                if (input_error := writer.exception()) is not None:
                    raise DecodeError(f"Input stream error: {input_error}") from input_error
            if returncode > 0:
                message = (await stderr_task).decode(errors="replace").strip()
                raise DecodeError(f"ffmpeg exited with code {returncode}: {message}")
            logger.debug("ffmpeg streaming ended (code=%s)", returncode)
        finally:
            await self._stop_process(proc, writer, stderr_task)

    async def _write_input(
        self, proc: asyncio.subprocess.Process, source: bytes | AsyncIterable[bytes]
    ) -> None:
        """Feed the child's stdin, honoring pipe backpressure."""
        assert proc.stdin is not None
        try:
            if isinstance(source, bytes):
                proc.stdin.write(source)
                await proc.stdin.drain()
            else:
                async for data in source:
                    proc.stdin.write(data)
                    await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("ffmpeg closed its input early")
        finally:
            if not proc.stdin.is_closing():
                proc.stdin.close()

    async def _stop_process(
        self,
        proc: asyncio.subprocess.Process,
        writer: asyncio.Task[None] | None,
        stderr_task: asyncio.Task[bytes],
    ) -> None:
        if writer is not None and not writer.done():
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer
        if proc.returncode is None:
            with suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_PROCESS_STOP_TIMEOUT)
            except TimeoutError:
                with suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        if not stderr_task.done():
            stderr_task.cancel()
            with suppress(asyncio.CancelledError):
                await stderr_task


class DecodePipeline:
    """
    Ordered set of decode capabilities.

    Capabilities are probed once at construction (by the decoders themselves)
    and the pipeline is safe to share between players.
    """

    def __init__(self, decoders: Sequence[Decoder]) -> None:
        """Create a pipeline trying decoders in the given order."""
        self._decoders = tuple(decoders)

    @classmethod
    def default(cls, *, ffmpeg_path: str = "ffmpeg") -> DecodePipeline:
        """Return a pipeline using PyAV first and ffmpeg as the fallback."""
        return cls([PyAVDecoder(), FFmpegDecoder(ffmpeg_path)])

    @property
    def decoders(self) -> tuple[Decoder, ...]:
        """All configured decoders, in preference order."""
        return self._decoders

    @property
    def available(self) -> bool:
        """Return True if at least one decoder can be used."""
        return any(decoder.available for decoder in self._decoders)

    def _usable_decoders(self) -> list[Decoder]:
        usable = [decoder for decoder in self._decoders if decoder.available]
        if not usable:
            raise DecodeError("No decoder is available (install PyAV or ffmpeg)")
        return usable

    async def decode(self, source: DecodeInput, fmt: PCMFormat) -> PCMSamples:
        """
        Decode a finite source into a single PCM buffer.

        Async byte sources are buffered first so that every available decoder
        can be tried in order.

        Raises:
            DecodeError: If no decoder is available or all of them failed.
        """
        decoders = self._usable_decoders()
        if isinstance(source, AsyncIterable):
            source = b"".join([data async for data in source])
        strategies = [
            Strategy(decoder.name, partial(decoder.decode, source, fmt)) for decoder in decoders
        ]
        try:
            samples: PCMSamples = await first_success(strategies)
        except StrategiesExhaustedError as err:
            raise DecodeError(str(err)) from err.last_error
        return samples

    async def iter_chunks(
        self, source: DecodeInput, fmt: PCMFormat, chunk_samples: int
    ) -> AsyncIterator[PCMSamples]:
        """
        Decode incrementally, yielding fixed-size chunks in decode order.

        Only the first available decoder is used since a live source cannot be
        replayed. The final chunk may be shorter than chunk_samples.
        """
        decoder = self._usable_decoders()[0]
        logger.debug("Streaming decode using %s", decoder.name)
        rechunker = Rechunker(chunk_samples)
        try:
            async with aclosing(decoder.iter_pcm(source, fmt)) as pieces:
                async for piece in pieces:
                    for chunk in rechunker.push(piece):
                        yield chunk
        except DecodeError:
            raise
        except Exception as err:
            raise DecodeError(f"{decoder.name} streaming decode failed: {err}") from err
        if (rest := rechunker.flush()) is not None:
            yield rest

    async def decode_streaming(
        self,
        source: DecodeInput,
        fmt: PCMFormat,
        on_chunk: ChunkCallback,
        on_end: EndCallback | None = None,
        on_error: ErrorCallback | None = None,
        *,
        chunk_samples: int | None = None,
    ) -> None:
        """
        Push decoded chunks to on_chunk, awaiting it before decoding further.

        A decode failure is passed to on_error when given, otherwise raised.
        """
        if chunk_samples is None:
            chunk_samples = fmt.samples_per_chunk(100)
        try:
            async with aclosing(self.iter_chunks(source, fmt, chunk_samples)) as chunks:
                async for chunk in chunks:
                    await on_chunk(chunk)
        except DecodeError as err:
            if on_error is None:
                raise
            on_error(err)
            return
        if on_end is not None:
            on_end()
