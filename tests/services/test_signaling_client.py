"""Tests for SignalingClient reconnect and intent replay."""

import asyncio
from unittest.mock import AsyncMock, patch

import orjson
import pytest
from websockets.exceptions import ConnectionClosedError

from app.schemas.signaling import MessageKind, SignalingMessage
from app.services.signaling_client import SignalingClient, reconnect_delay
from app.utils.app_errors import AppError, AppErrorCode


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, frames: list[str] | None = None):
        self.inbound: asyncio.Queue = asyncio.Queue()
        for frame in frames or []:
            self.inbound.put_nowait(frame)
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(orjson.loads(text))

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(None)

    def drop(self) -> None:
        self.inbound.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        frame = await self.inbound.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class Connector:
    def __init__(self, outcomes: list):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url: str):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Handler:
    def __init__(self):
        self.messages: list[SignalingMessage] = []
        self.lost = 0

    async def handle(self, message: SignalingMessage) -> None:
        self.messages.append(message)

    async def on_channel_lost(self) -> None:
        self.lost += 1


async def settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


class TestReconnectDelay:
    def test_exponential_and_capped(self):
        assert [reconnect_delay(n, 1.0, 30.0) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]


class TestSignalingClient:
    async def test_dispatches_frames_and_records_connection_id(self):
        sock = FakeSocket(
            [
                '{"event": "connected", "data": {"connectionId": "cn_1"}}',
                '{"event": "stream-status", "data": true}',
                "garbage",
            ]
        )
        client = SignalingClient("ws://relay", connector=Connector([sock]))
        handler = Handler()
        client.bind(handler)

        runner = asyncio.create_task(client.run())
        await client.wait_connected(timeout=1)
        await settle()

        assert client.connection_id == "cn_1"
        assert [m.kind for m in handler.messages] == [
            MessageKind.CONNECTED,
            MessageKind.STREAM_STATUS,
        ]

        await client.close()
        await asyncio.wait_for(runner, 1)

    async def test_intent_sent_on_connect_and_replayed_after_drop(self):
        first, second = FakeSocket(), FakeSocket()
        client = SignalingClient("ws://relay", connector=Connector([first, second]))
        handler = Handler()
        client.bind(handler)

        # Sent before the channel is up: remembered, not lost
        assert await client.send(SignalingMessage(kind=MessageKind.JOIN_STREAM, stream_id="s1")) is False

        runner = asyncio.create_task(client.run())
        await settle()
        assert first.sent == [{"event": "join-stream", "data": "s1"}]

        first.drop()
        await settle()

        assert handler.lost == 1
        assert second.sent == [{"event": "join-stream", "data": "s1"}]

        await client.close()
        await asyncio.wait_for(runner, 1)

    async def test_leave_clears_intent(self):
        sock = FakeSocket()
        client = SignalingClient("ws://relay", connector=Connector([sock]))
        runner = asyncio.create_task(client.run())
        await client.wait_connected(timeout=1)

        await client.send(SignalingMessage(kind=MessageKind.START_STREAM, stream_id="s1"))
        assert client.intent is not None
        await client.send(SignalingMessage(kind=MessageKind.END_STREAM, stream_id="s1"))

        assert client.intent is None
        assert [f["event"] for f in sock.sent] == ["start-stream", "end-stream"]

        await client.close()
        await asyncio.wait_for(runner, 1)

    async def test_takeover_clears_start_intent(self):
        sock = FakeSocket()
        client = SignalingClient("ws://relay", connector=Connector([sock]))
        runner = asyncio.create_task(client.run())
        await client.wait_connected(timeout=1)
        await client.send(SignalingMessage(kind=MessageKind.START_STREAM, stream_id="s1"))

        sock.inbound.put_nowait('{"event": "stream-status", "data": false}')
        await settle()

        assert client.intent is None

        await client.close()
        await asyncio.wait_for(runner, 1)

    async def test_stream_status_keeps_viewer_intent(self):
        sock = FakeSocket()
        client = SignalingClient("ws://relay", connector=Connector([sock]))
        runner = asyncio.create_task(client.run())
        await client.wait_connected(timeout=1)
        await client.send(SignalingMessage(kind=MessageKind.JOIN_STREAM, stream_id="s1"))

        sock.inbound.put_nowait('{"event": "stream-status", "data": false}')
        await settle()

        assert client.intent.kind == MessageKind.JOIN_STREAM

        await client.close()
        await asyncio.wait_for(runner, 1)

    async def test_message_dropped_while_disconnected(self):
        client = SignalingClient("ws://relay", connector=Connector([]))

        sent = await client.send(SignalingMessage(kind=MessageKind.OFFER, payload="x"))

        assert sent is False
        assert client.intent is None

    async def test_backs_off_then_connects(self):
        sock = FakeSocket()
        connector = Connector([OSError("refused"), OSError("refused"), sock])
        client = SignalingClient(
            "ws://relay", connector=connector, base_delay=1.0, max_delay=30.0, max_retries=5
        )

        with patch("app.services.signaling_client.asyncio.sleep", new=AsyncMock()) as sleep:
            runner = asyncio.create_task(client.run())
            await client.wait_connected(timeout=1)

            assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
            assert connector.calls == 3

            await client.close()
            await asyncio.wait_for(runner, 1)

    async def test_gives_up_after_max_retries(self):
        connector = Connector([OSError("refused")] * 3)
        client = SignalingClient("ws://relay", connector=connector, max_retries=3)

        with patch("app.services.signaling_client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(AppError) as exc_info:
                await client.run()

        assert exc_info.value.errcode == AppErrorCode.E_CHANNEL_UNAVAILABLE
        assert connector.calls == 3
