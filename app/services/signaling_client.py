"""Client side of the signaling channel.

Usage:
    client = SignalingClient("ws://localhost:8000/ws/signaling")
    coordinator = ViewerCoordinator("main-stream", client.send, transport_factory)
    client.bind(coordinator)
    runner = asyncio.create_task(client.run())
    await coordinator.join()

The client remembers the last start-stream/join-stream it sent and replays it after every
reconnect, so a coordinator does not have to re-announce itself. Reconnects back off
exponentially; after ``max_retries`` consecutive failed attempts ``run`` raises
E_CHANNEL_UNAVAILABLE.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from loguru import logger
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from app.schemas.signaling import MessageKind, SignalingMessage, parse_frame
from app.shared.api.utils import format_error
from app.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

Connector = Callable[[str], Awaitable[Any]]

_INTENT_KINDS = {MessageKind.START_STREAM, MessageKind.JOIN_STREAM}
_CLEAR_INTENT_KINDS = {MessageKind.LEAVE_STREAM, MessageKind.END_STREAM}


class SignalingHandler(Protocol):
    async def handle(self, message: SignalingMessage) -> None: ...

    async def on_channel_lost(self) -> None: ...


def reconnect_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before reconnect ``attempt`` (0-based): base * 2^attempt, capped."""
    return min(base_delay * (2**attempt), max_delay)


class SignalingClient:
    def __init__(
        self,
        url: str,
        *,
        max_retries: int = 10,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        connector: Connector | None = None,
    ):
        self.url = url
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.connection_id: str | None = None
        self._connector = connector or connect
        self._handler: SignalingHandler | None = None
        self._ws = None
        self._intent: SignalingMessage | None = None
        self._closing = False
        self._connected = asyncio.Event()

    def bind(self, handler: SignalingHandler) -> None:
        self._handler = handler

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def intent(self) -> SignalingMessage | None:
        return self._intent

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout)

    async def send(self, message: SignalingMessage) -> bool:
        """Send one message. Returns False when the channel is down and it was dropped.

        A start-stream/join-stream sent while disconnected is still remembered and goes out
        as soon as the channel is up.
        """
        kind = message.kind.canonical()
        if kind in _INTENT_KINDS:
            self._intent = message
        elif kind in _CLEAR_INTENT_KINDS:
            self._intent = None

        ws = self._ws
        if ws is None:
            if kind not in _INTENT_KINDS:
                logger.warning("Signaling channel down, dropping {}", message.kind)
            return False

        try:
            await ws.send(message.encode())
        except ConnectionClosed as e:
            logger.warning("Signaling channel closed while sending {}: {}", message.kind, e)
            return False
        return True

    async def run(self) -> None:
        """Connect and pump inbound messages to the bound handler until ``close``.

        Raises:
            AppError: E_CHANNEL_UNAVAILABLE once reconnecting has failed ``max_retries`` times
        """
        retry_count = 0
        while not self._closing:
            try:
                ws = await self._connector(self.url)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Signaling connection error: {}", format_error(e))
                delay = reconnect_delay(retry_count, self.base_delay, self.max_delay)
                retry_count += 1

                if retry_count >= self.max_retries:
                    logger.error("Max retries reached, giving up on {}", self.url)
                    raise AppError(
                        errcode=AppErrorCode.E_CHANNEL_UNAVAILABLE,
                        errmesg=f"Signaling server unreachable after {retry_count} attempts",
                        status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
                    ) from e

                logger.info(
                    "Retrying in {} seconds... (attempt {}/{})", delay, retry_count, self.max_retries
                )
                await asyncio.sleep(delay)
                continue

            retry_count = 0
            await self._pump(ws)

            if self._closing:
                break
            logger.warning("Signaling channel lost, reconnecting")
            if self._handler is not None:
                await self._handler.on_channel_lost()

    async def close(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()

    async def _pump(self, ws) -> None:
        self._ws = ws
        self._connected.set()
        logger.info("Signaling channel open: {}", self.url)
        try:
            if self._intent is not None:
                logger.info("Replaying {} for {}", self._intent.kind, self._intent.stream_id)
                await ws.send(self._intent.encode())

            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            logger.warning("Signaling channel closed: {}", e)
        finally:
            self._ws = None
            self.connection_id = None
            self._connected.clear()

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = parse_frame(raw)
        except AppError as e:
            logger.warning("Ignoring malformed frame: {}", e.errmesg)
            return

        if message.kind == MessageKind.CONNECTED:
            self.connection_id = message.payload
        elif (
            message.kind == MessageKind.STREAM_STATUS
            and not message.payload
            and self._intent is not None
            and self._intent.kind.canonical() == MessageKind.START_STREAM
        ):
            # Our broadcast was taken over; do not reclaim it on reconnect
            logger.info("Broadcast on {} taken over, dropping start intent", self._intent.stream_id)
            self._intent = None

        if self._handler is None:
            return
        try:
            await self._handler.handle(message)
        except Exception as e:
            logger.error("Error while handling {}: {}", message.kind, format_error(e))
