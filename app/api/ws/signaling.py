"""Signaling message channel.

One websocket per client. The first frame a client receives is
``{"event": "connected", "data": {"connectionId": ...}}``; after that every inbound frame is
handed to the relay and the resulting deliveries are queued on the target connections.
"""

from fastapi import APIRouter, WebSocket, status
from loguru import logger

from app.api.v1.dependency import Hub, Relay
from app.domain.live.relay.signaling_relay import Delivery
from app.schemas.signaling import MessageKind, SignalingMessage

router = APIRouter(tags=["Signaling"])


@router.websocket("/ws/signaling")
async def signaling(websocket: WebSocket, relay: Relay, hub: Hub):
    await websocket.accept()
    conn_id = relay.connect()

    async def close_stalled() -> None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Outbox overflow")

    hub.register(conn_id, websocket.send_text, close_stalled)
    hub.deliver(
        [Delivery(conn_id, SignalingMessage(kind=MessageKind.CONNECTED, payload=conn_id))]
    )

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                logger.debug("Client {} disconnected with code {}", conn_id, frame.get("code"))
                break

            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes")
            if raw is None:
                continue

            hub.deliver(relay.handle_frame(conn_id, raw))
    finally:
        hub.deliver(relay.disconnect(conn_id))
        await hub.unregister(conn_id)
