"""Tests covering the client signaling channel with a fake WebSocket."""

from __future__ import annotations

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed

from duet.errors import RelayUnreachable
from duet.rtc.channel import SignalingChannel


class FakeWebSocket:
    def __init__(self, frames=(), *, drop: bool = False) -> None:
        self.frames = list(frames)
        self.drop = drop
        self.sent = []
        self.closed = False

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.drop:
            raise ConnectionClosed(None, None)

    async def close(self) -> None:
        self.closed = True


def fake_connect(ws: FakeWebSocket, calls: list):
    async def connect(url, **kwargs):
        calls.append((url, kwargs))
        return ws

    return connect


def test_open_send_and_receive_json_messages() -> None:
    async def scenario() -> None:
        calls = []
        ws = FakeWebSocket(['{"type": "welcome", "sessionId": "s1"}', "garbage", "[1, 2]", '{"type": "ping"}'])
        channel = SignalingChannel("ws://relay/ws", open_timeout=3.0, connect=fake_connect(ws, calls))

        await channel.open()
        await channel.send({"type": "join", "roomId": "ROOM"})
        received = []
        with pytest.raises(RelayUnreachable):
            async for message in channel:
                received.append(message)

        assert calls == [("ws://relay/ws", {"open_timeout": 3.0})]
        assert ws.sent == [{"type": "join", "roomId": "ROOM"}]
        assert received == [{"type": "welcome", "sessionId": "s1"}, {"type": "ping"}]

    asyncio.run(scenario())


def test_unreachable_relay_raises() -> None:
    async def refuse(url, **kwargs):
        raise OSError("Connection refused")

    channel = SignalingChannel("ws://nowhere/ws", connect=refuse)

    with pytest.raises(RelayUnreachable, match="nowhere"):
        asyncio.run(channel.open())
    assert channel.is_open is False


def test_drop_mid_call_raises_relay_unreachable() -> None:
    async def scenario() -> None:
        ws = FakeWebSocket(['{"type": "joined", "roomId": "R"}'], drop=True)
        channel = SignalingChannel("ws://relay/ws", connect=fake_connect(ws, []))
        await channel.open()

        received = []
        with pytest.raises(RelayUnreachable):
            async for message in channel:
                received.append(message)
        assert received == [{"type": "joined", "roomId": "R"}]

    asyncio.run(scenario())


def test_close_is_clean_and_idempotent() -> None:
    async def scenario() -> None:
        ws = FakeWebSocket()
        channel = SignalingChannel("ws://relay/ws", connect=fake_connect(ws, []))
        await channel.open()
        assert channel.is_open is True

        await channel.close()
        await channel.close()

        assert ws.closed is True
        assert channel.is_open is False
        with pytest.raises(RelayUnreachable):
            await channel.send({"type": "leave"})
        with pytest.raises(RelayUnreachable):
            await channel.open()

    asyncio.run(scenario())
