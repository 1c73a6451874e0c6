"""Classification of playback sources."""

from __future__ import annotations

import asyncio
import inspect
import io
import os
from collections.abc import AsyncIterable, AsyncIterator, Mapping
from dataclasses import dataclass
from typing import IO, Any, Union
from urllib.parse import urlsplit

from aiovoiceplayer.models.types import SourceKind

from .audio import PCMFormat
from .errors import InvalidInputError

ByteStream = Union[AsyncIterable[bytes], IO[bytes], asyncio.StreamReader]
"""A live byte-stream handle: async iterable, async reader or binary file object."""

PlaybackSource = Union[str, os.PathLike[str], ByteStream]

READ_CHUNK_SIZE = 64 * 1024

_LIVE_MIME_TYPES = ("application/ogg",)
_LIVE_URL_HINTS = ("radio", "stream")


def is_url(value: str) -> bool:
    """Return True if value is an absolute http(s) URL."""
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def is_file_path(value: str | os.PathLike[str]) -> bool:
    """Return True if value names an existing filesystem entry."""
    try:
        return os.path.exists(value)
    except (OSError, ValueError):
        return False


def is_byte_stream(value: Any) -> bool:
    """Return True if value is a byte-stream handle we can read from."""
    if isinstance(value, (str, bytes, bytearray, os.PathLike)):
        return False
    if isinstance(value, io.IOBase):
        return value.readable()
    if inspect.iscoroutinefunction(getattr(value, "read", None)):
        return True
    return isinstance(value, AsyncIterable)


def classify_source(value: Any) -> SourceKind:
    """
    Classify a playback source as stream, url or file.

    Raises:
        InvalidInputError: If value is a string that is neither an http(s) URL
            nor an existing path, or is not a supported type at all.
    """
    if isinstance(value, (str, os.PathLike)):
        text = os.fspath(value)
        if isinstance(text, str) and is_url(text):
            return SourceKind.URL
        if is_file_path(text):
            return SourceKind.FILE
        raise InvalidInputError(
            f"Invalid input: '{text}' is neither a valid URL nor an existing file path"
        )
    if is_byte_stream(value):
        return SourceKind.STREAM
    raise InvalidInputError(
        f"Unsupported input type: expected a string or a byte stream, got {type(value).__name__}"
    )


def is_live_response(url: str, headers: Mapping[str, str]) -> bool:
    """
    Guess whether an HTTP response is a continuous stream.

    Advisory only: a wrong guess selects the other delivery mode but does not
    affect decoding.
    """
    normalized = {key.lower(): value for key, value in headers.items()}
    content_type = normalized.get("content-type", "").lower()
    lowered_url = url.lower()
    if not normalized.get("content-length"):
        return True
    if "audio/mpeg" in content_type and "stream" in lowered_url:
        return True
    if any(mime in content_type for mime in _LIVE_MIME_TYPES):
        return True
    return any(hint in lowered_url for hint in _LIVE_URL_HINTS)


async def iter_bytes(stream: ByteStream, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield raw bytes from any supported byte-stream handle until it is exhausted."""
    if isinstance(stream, io.IOBase):
        while data := await asyncio.to_thread(stream.read, chunk_size):
            yield data
        return
    read = getattr(stream, "read", None)
    if inspect.iscoroutinefunction(read):
        while data := await read(chunk_size):
            yield data
        return
    async for data in stream:  # type: ignore[union-attr]
        if data:
            yield bytes(data)


async def read_all(stream: ByteStream) -> bytes:
    """Read a byte-stream handle to the end."""
    buffer = bytearray()
    async for data in iter_bytes(stream):
        buffer.extend(data)
    return bytes(buffer)


@dataclass
class PlaybackRequest:
    """One playback invocation, resolved and classified."""

    source: PlaybackSource
    """What the host passed in."""
    kind: SourceKind
    """Classified kind of the source."""
    description: str
    """Printable descriptor used in events and logs."""
    pcm_format: PCMFormat
    """Target format for decoding."""
    live: bool | None = None
    """Explicit delivery mode override, None to auto-detect."""

    @classmethod
    def from_source(
        cls, source: PlaybackSource, pcm_format: PCMFormat, *, live: bool | None = None
    ) -> PlaybackRequest:
        """Classify source and build a request for it."""
        kind = classify_source(source)
        if kind == SourceKind.STREAM:
            description = "stream"
        else:
            description = os.fspath(source)  # type: ignore[arg-type]
        return cls(
            source=source,
            kind=kind,
            description=description,
            pcm_format=pcm_format,
            live=live,
        )
