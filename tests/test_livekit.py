from __future__ import annotations

import pytest

pytest.importorskip("livekit.rtc")

from aiovoiceplayer.voice.livekit import LiveKitTransport  # noqa: E402


@pytest.mark.asyncio
async def test_room_disconnect_notifies_listeners() -> None:
    transport = LiveKitTransport()
    calls: list[str] = []
    remove = transport.add_disconnect_listener(lambda: calls.append("a"))
    transport.add_disconnect_listener(lambda: calls.append("b"))

    transport._on_disconnected("remote")  # noqa: SLF001
    assert calls == ["a", "b"]

    remove()
    transport._on_disconnected("remote")  # noqa: SLF001
    assert calls == ["a", "b", "b"]


@pytest.mark.asyncio
async def test_manual_disconnect_is_not_reported() -> None:
    transport = LiveKitTransport()
    calls: list[str] = []
    transport.add_disconnect_listener(lambda: calls.append("lost"))
    await transport.disconnect()
    transport._on_disconnected("client initiated")  # noqa: SLF001
    assert calls == []


@pytest.mark.asyncio
async def test_audio_sink_closes_once() -> None:
    transport = LiveKitTransport()
    sink = transport.create_audio_source(48000, 1)
    await sink.aclose()
    await sink.aclose()
    assert transport.room_name is None
