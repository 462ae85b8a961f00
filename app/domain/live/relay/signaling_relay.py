"""Signaling relay: protocol interpretation and fan-out.

The relay is a synchronous dispatcher. ``handle`` maps ``(connection_id, message)`` to the
list of deliveries the caller must perform, with all registry mutation happening inside the
call. Nothing here awaits, so on an asyncio loop every inbound message is handled to
completion before the next one starts and registry updates never interleave.
"""

from dataclasses import dataclass

from loguru import logger

from app.domain.live.session.session_models import (
    BroadcasterLeft,
    BroadcasterRole,
    Unassigned,
    ViewerLeft,
    ViewerRole,
)
from app.domain.live.session.session_registry import SessionRegistry
from app.domain.utils.idgen import new_connection_id
from app.schemas.signaling import MessageKind, SignalingMessage, parse_frame
from app.utils.app_errors import AppError, AppErrorCode


@dataclass(frozen=True)
class Delivery:
    """One message to send to one connection."""

    target_id: str
    message: SignalingMessage


class SignalingRelay:
    """Routes signaling messages between the broadcaster and the viewers of each stream."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        default_stream_id: str = "main-stream",
        echo_protocol_errors: bool = True,
        max_message_bytes: int | None = None,
    ):
        self.registry = registry
        self.default_stream_id = default_stream_id
        self.echo_protocol_errors = echo_protocol_errors
        self.max_message_bytes = max_message_bytes
        self._connections: set[str] = set()
        self._handlers = {
            MessageKind.START_STREAM: self._on_start_stream,
            MessageKind.JOIN_STREAM: self._on_join_stream,
            MessageKind.LEAVE_STREAM: self._on_leave_stream,
            MessageKind.OFFER: self._on_offer,
            MessageKind.ANSWER: self._on_answer,
            MessageKind.ICE_CANDIDATE: self._on_ice_candidate,
            MessageKind.END_STREAM: self._on_end_stream,
        }

    # ==================== CONNECTIONS ====================

    def connect(self, conn_id: str | None = None) -> str:
        """Record a new connection and return its id."""
        conn_id = conn_id or new_connection_id()
        self._connections.add(conn_id)
        logger.info("Connection {} opened (total={})", conn_id, len(self._connections))
        return conn_id

    def disconnect(self, conn_id: str) -> list[Delivery]:
        """Forget ``conn_id`` and notify whoever its departure affects."""
        self._connections.discard(conn_id)
        deliveries = self._detach(conn_id)
        logger.info("Connection {} closed (total={})", conn_id, len(self._connections))
        return deliveries

    def is_connected(self, conn_id: str) -> bool:
        return conn_id in self._connections

    def get_stats(self) -> dict[str, int]:
        return {"connections": len(self._connections), **self.registry.get_stats()}

    # ==================== DISPATCH ====================

    def handle_frame(self, conn_id: str, raw: str | bytes | dict) -> list[Delivery]:
        """Decode one wire frame from ``conn_id`` and dispatch it."""
        if self.max_message_bytes and isinstance(raw, (str, bytes)):
            size = len(raw.encode()) if isinstance(raw, str) else len(raw)
            if size > self.max_message_bytes:
                return self._protocol_error(
                    conn_id, f"Frame of {size} bytes exceeds limit of {self.max_message_bytes}"
                )

        try:
            message = parse_frame(raw)
        except AppError as e:
            return self._protocol_error(conn_id, e.errmesg)
        return self.handle(conn_id, message)

    def handle(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        """Apply one inbound message and return the resulting deliveries.

        Protocol errors are logged and dropped (optionally echoed to the sender). No error
        raised while handling one message escapes to the caller.
        """
        if not self.is_connected(conn_id):
            logger.warning("Dropping {} from unknown connection {}", message.kind, conn_id)
            return []

        kind = message.kind.canonical()
        handler = self._handlers.get(kind)
        if handler is None:
            return self._protocol_error(conn_id, f"Event {kind.value} is not accepted from clients")

        try:
            return handler(conn_id, message)
        except AppError as e:
            return self._protocol_error(conn_id, e.errmesg)
        except Exception:
            logger.exception("Unexpected error handling {} from {}", kind, conn_id)
            return []

    # ==================== HANDLERS ====================

    def _on_start_stream(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        stream_id = message.stream_id or self.default_stream_id
        deliveries = []

        role = self.registry.role_of(conn_id)
        if not isinstance(role, Unassigned) and role != BroadcasterRole(stream_id):
            deliveries += self._detach(conn_id)

        registration = self.registry.register_broadcaster(stream_id, conn_id)
        logger.info(
            "Broadcaster {} started stream {} with {} waiting viewers",
            conn_id,
            stream_id,
            len(registration.viewer_ids),
        )

        if registration.replaced_id:
            # stream-status(false) tells the replaced broadcaster's client to tear down
            deliveries += [
                Delivery(
                    registration.replaced_id,
                    SignalingMessage(
                        kind=MessageKind.ERROR,
                        stream_id=stream_id,
                        payload=f"Stream {stream_id} was taken over by another broadcaster",
                    ),
                ),
                Delivery(registration.replaced_id, self._stream_status(stream_id, False)),
            ]

        viewer_ids = sorted(registration.viewer_ids)
        for viewer_id in viewer_ids:
            deliveries.append(Delivery(viewer_id, self._stream_status(stream_id, True)))

        deliveries.append(Delivery(conn_id, self._viewer_count(stream_id, len(viewer_ids))))
        for viewer_id in viewer_ids:
            deliveries.append(
                Delivery(
                    conn_id,
                    SignalingMessage(
                        kind=MessageKind.VIEWER_JOINED, stream_id=stream_id, payload=viewer_id
                    ),
                )
            )

        return deliveries

    def _on_join_stream(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        stream_id = message.stream_id or self.default_stream_id
        deliveries = []

        role = self.registry.role_of(conn_id)
        if not isinstance(role, Unassigned) and role != ViewerRole(stream_id):
            deliveries += self._detach(conn_id)

        registration = self.registry.register_viewer(stream_id, conn_id)
        logger.info(
            "Viewer {} joined stream {} (active={}, viewers={})",
            conn_id,
            stream_id,
            registration.active,
            registration.viewer_count,
        )

        deliveries.append(Delivery(conn_id, self._stream_status(stream_id, registration.active)))

        if registration.broadcaster_id:
            deliveries.append(
                Delivery(
                    registration.broadcaster_id,
                    self._viewer_count(stream_id, registration.viewer_count),
                )
            )
            deliveries.append(
                Delivery(
                    registration.broadcaster_id,
                    SignalingMessage(
                        kind=MessageKind.VIEWER_JOINED, stream_id=stream_id, payload=conn_id
                    ),
                )
            )

        return deliveries

    def _on_leave_stream(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        role = self.registry.role_of(conn_id)
        if isinstance(role, Unassigned):
            return self._protocol_error(conn_id, "Not part of any stream")

        if message.stream_id and message.stream_id != role.stream_id:
            return self._protocol_error(conn_id, f"Not part of stream {message.stream_id}")

        logger.info("Connection {} leaving stream {}", conn_id, role.stream_id)
        return self._detach(conn_id)

    def _on_offer(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        stream_id = self._require_broadcaster(conn_id, message)

        forwarded = SignalingMessage(
            kind=MessageKind.OFFER,
            stream_id=stream_id,
            from_id=conn_id,
            to_id=message.to_id,
            payload=message.payload,
        )

        if message.to_id:
            return self._unicast_to_viewer(stream_id, message.to_id, forwarded)

        viewer_ids = sorted(self.registry.viewer_ids(stream_id))
        logger.debug("Offer from {} fanned out to {} viewers", conn_id, len(viewer_ids))
        return [Delivery(viewer_id, forwarded) for viewer_id in viewer_ids]

    def _on_answer(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        stream_id = self._require_viewer(conn_id, message)

        broadcaster_id = self.registry.broadcaster_of(stream_id)
        if broadcaster_id is None:
            logger.warning("Answer from {} dropped: stream {} has no broadcaster", conn_id, stream_id)
            return []

        return [
            Delivery(
                broadcaster_id,
                SignalingMessage(
                    kind=MessageKind.ANSWER,
                    stream_id=stream_id,
                    from_id=conn_id,
                    payload=message.payload,
                ),
            )
        ]

    def _on_ice_candidate(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        role = self.registry.role_of(conn_id)

        if isinstance(role, BroadcasterRole):
            stream_id = self._require_broadcaster(conn_id, message)
            forwarded = SignalingMessage(
                kind=MessageKind.ICE_CANDIDATE,
                stream_id=stream_id,
                from_id=conn_id,
                to_id=message.to_id,
                payload=message.payload,
            )
            if message.to_id:
                return self._unicast_to_viewer(stream_id, message.to_id, forwarded)
            return [Delivery(v, forwarded) for v in sorted(self.registry.viewer_ids(stream_id))]

        stream_id = self._require_viewer(conn_id, message)
        broadcaster_id = self.registry.broadcaster_of(stream_id)
        if broadcaster_id is None:
            logger.debug("Candidate from {} dropped: stream {} has no broadcaster", conn_id, stream_id)
            return []

        return [
            Delivery(
                broadcaster_id,
                SignalingMessage(
                    kind=MessageKind.ICE_CANDIDATE,
                    stream_id=stream_id,
                    from_id=conn_id,
                    to_id=broadcaster_id,
                    payload=message.payload,
                ),
            )
        ]

    def _on_end_stream(self, conn_id: str, message: SignalingMessage) -> list[Delivery]:
        stream_id = message.stream_id or self._role_stream(conn_id) or self.default_stream_id

        try:
            viewer_ids = self.registry.end_stream(stream_id, conn_id)
        except AppError as e:
            logger.warning("end-stream for {} by {} rejected: {}", stream_id, conn_id, e.errmesg)
            return [Delivery(conn_id, SignalingMessage(kind=MessageKind.ERROR, payload=e.errmesg))]

        logger.info("Stream {} ended by {}, notifying {} viewers", stream_id, conn_id, len(viewer_ids))
        return self._stream_ended(stream_id, viewer_ids)

    # ==================== HELPERS ====================

    def _detach(self, conn_id: str) -> list[Delivery]:
        result = self.registry.remove_connection(conn_id)

        if isinstance(result, BroadcasterLeft):
            logger.info(
                "Broadcaster {} left stream {}, notifying {} viewers",
                conn_id,
                result.stream_id,
                len(result.viewer_ids),
            )
            return self._stream_ended(result.stream_id, result.viewer_ids)

        if isinstance(result, ViewerLeft):
            if result.broadcaster_id is None:
                return []
            return [
                Delivery(result.broadcaster_id, self._viewer_count(result.stream_id, result.viewer_count)),
                Delivery(
                    result.broadcaster_id,
                    SignalingMessage(
                        kind=MessageKind.VIEWER_LEFT,
                        stream_id=result.stream_id,
                        payload=result.viewer_id,
                    ),
                ),
            ]

        return []

    def _stream_ended(self, stream_id: str, viewer_ids: frozenset[str]) -> list[Delivery]:
        deliveries = []
        ended = SignalingMessage(kind=MessageKind.END_STREAM, stream_id=stream_id)
        status = self._stream_status(stream_id, False)
        for viewer_id in sorted(viewer_ids):
            deliveries.append(Delivery(viewer_id, ended))
            deliveries.append(Delivery(viewer_id, status))
        return deliveries

    def _unicast_to_viewer(
        self, stream_id: str, viewer_id: str, message: SignalingMessage
    ) -> list[Delivery]:
        if viewer_id not in self.registry.viewer_ids(stream_id):
            # The viewer already left; not an error for the sender.
            logger.debug("{} to {} dropped: not a viewer of {}", message.kind, viewer_id, stream_id)
            return []
        return [Delivery(viewer_id, message)]

    def _require_broadcaster(self, conn_id: str, message: SignalingMessage) -> str:
        role = self.registry.role_of(conn_id)
        stream_id = message.stream_id or self._role_stream(conn_id) or self.default_stream_id
        if role != BroadcasterRole(stream_id):
            raise AppError(
                errcode=AppErrorCode.E_NOT_STREAM_OWNER,
                errmesg=f"{message.kind.value} rejected: not the broadcaster of {stream_id}",
            )
        return stream_id

    def _require_viewer(self, conn_id: str, message: SignalingMessage) -> str:
        role = self.registry.role_of(conn_id)
        stream_id = message.stream_id or self._role_stream(conn_id) or self.default_stream_id
        if role != ViewerRole(stream_id):
            raise AppError(
                errcode=AppErrorCode.E_NOT_STREAM_MEMBER,
                errmesg=f"{message.kind.value} rejected: not a viewer of {stream_id}",
            )
        return stream_id

    def _role_stream(self, conn_id: str) -> str | None:
        role = self.registry.role_of(conn_id)
        return None if isinstance(role, Unassigned) else role.stream_id

    def _protocol_error(self, conn_id: str, errmesg: str) -> list[Delivery]:
        logger.warning("Protocol error from {}: {}", conn_id, errmesg)
        if not self.echo_protocol_errors or conn_id not in self._connections:
            return []
        return [Delivery(conn_id, SignalingMessage(kind=MessageKind.ERROR, payload=errmesg))]

    @staticmethod
    def _stream_status(stream_id: str, active: bool) -> SignalingMessage:
        return SignalingMessage(kind=MessageKind.STREAM_STATUS, stream_id=stream_id, payload=active)

    @staticmethod
    def _viewer_count(stream_id: str, count: int) -> SignalingMessage:
        return SignalingMessage(kind=MessageKind.VIEWER_COUNT, stream_id=stream_id, payload=count)
