"""Outbound delivery to connected clients.

Each connection gets an outbox drained by a single writer task, so messages reach a client
in exactly the order the relay produced them even when several handlers deliver to it.
Enqueueing never awaits: the relay result is handed off synchronously. A client that stops
reading fills its outbox; once it holds ``max_pending`` frames the connection is dropped.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from loguru import logger

from .signaling_relay import Delivery

SendText = Callable[[str], Awaitable[None]]
CloseConnection = Callable[[], Awaitable[None]]


class ConnectionHub:
    """Registry of live send channels keyed by connection id."""

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._outboxes: dict[str, asyncio.Queue[str | None]] = {}
        self._writers: dict[str, asyncio.Task] = {}
        self._closers: dict[str, CloseConnection] = {}
        self._closing: set[asyncio.Task] = set()

    def register(self, conn_id: str, send: SendText, close: CloseConnection | None = None) -> None:
        if conn_id in self._outboxes:
            raise ValueError(f"Connection {conn_id} already registered")

        # One slot on top of the limit for the writer's stop marker
        outbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self.max_pending + 1)
        self._outboxes[conn_id] = outbox
        if close is not None:
            self._closers[conn_id] = close
        self._writers[conn_id] = asyncio.create_task(
            self._drain(conn_id, outbox, send), name=f"outbox:{conn_id}"
        )

    def deliver(self, deliveries: Iterable[Delivery]) -> int:
        """Queue deliveries for their targets. Unknown targets are skipped.

        Returns:
            Number of messages queued
        """
        queued = 0
        for delivery in deliveries:
            outbox = self._outboxes.get(delivery.target_id)
            if outbox is None:
                logger.debug(
                    "Skipping {} for gone connection {}", delivery.message.kind, delivery.target_id
                )
                continue
            if outbox.qsize() >= self.max_pending:
                self._overflow(delivery.target_id)
                continue
            outbox.put_nowait(delivery.message.encode())
            queued += 1
        return queued

    async def unregister(self, conn_id: str) -> None:
        """Flush what is queued for ``conn_id`` and stop its writer."""
        self._closers.pop(conn_id, None)
        outbox = self._outboxes.pop(conn_id, None)
        writer = self._writers.pop(conn_id, None)
        if outbox is None or writer is None:
            return

        outbox.put_nowait(None)
        try:
            await writer
        except asyncio.CancelledError:
            pass

    async def close_all(self) -> None:
        for conn_id in list(self._outboxes):
            await self.unregister(conn_id)

    def is_registered(self, conn_id: str) -> bool:
        return conn_id in self._outboxes

    def __len__(self) -> int:
        return len(self._outboxes)

    def _overflow(self, conn_id: str) -> None:
        logger.warning(
            "Outbox for {} exceeded {} pending frames, dropping the connection",
            conn_id,
            self.max_pending,
        )
        self._outboxes.pop(conn_id, None)
        writer = self._writers.pop(conn_id, None)
        if writer is not None:
            writer.cancel()

        close = self._closers.pop(conn_id, None)
        if close is not None:
            task = asyncio.create_task(self._close(conn_id, close), name=f"close:{conn_id}")
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _drain(self, conn_id: str, outbox: asyncio.Queue[str | None], send: SendText) -> None:
        while True:
            text = await outbox.get()
            if text is None:
                break
            try:
                await send(text)
            except Exception as e:
                # Socket is gone; the receive loop will see the close and unregister.
                logger.warning("Send to {} failed, dropping its outbox: {}", conn_id, e)
                self._outboxes.pop(conn_id, None)
                self._writers.pop(conn_id, None)
                self._closers.pop(conn_id, None)
                break

    async def _close(self, conn_id: str, close: CloseConnection) -> None:
        try:
            await close()
        except Exception as e:
            logger.warning("Closing overflowed connection {} failed: {}", conn_id, e)
