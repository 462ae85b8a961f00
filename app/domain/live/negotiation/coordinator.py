"""Client-side negotiation coordinators.

A coordinator consumes the signaling messages a client receives, owns the client's peer
transports and produces the outbound messages that negotiate them. The broadcaster keeps one
PeerLink per viewer; a viewer keeps at most one, to its stream's broadcaster.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from app.schemas.signaling import MessageKind, SignalingMessage
from app.utils.app_errors import AppError

from .peer_link import PeerLink, SendSignal
from .peer_state_machine import PeerState
from .peer_transport import LocalMedia, NegotiationError, PeerTransportFactory

# (event, data) for the application: stream-status, viewer-count, stream-ended,
# taken-over, peer-connected, connection-error, error
EventCallback = Callable[[str, Any], None]

Handler = Callable[[SignalingMessage], Awaitable[None]]


class NegotiationCoordinator:
    """Shared plumbing: dispatch by message kind and application event reporting."""

    role = "client"

    def __init__(
        self,
        stream_id: str,
        send: SendSignal,
        transport_factory: PeerTransportFactory,
        *,
        on_event: EventCallback | None = None,
    ):
        self.stream_id = stream_id
        self.send = send
        self.transport_factory = transport_factory
        self.on_event = on_event
        self.connection_id: str | None = None
        self._handlers: dict[MessageKind, Handler] = {
            MessageKind.CONNECTED: self._on_connected,
            MessageKind.ERROR: self._on_error,
        }

    async def handle(self, message: SignalingMessage) -> None:
        """Apply one inbound message. Messages for other streams and stray ones are dropped."""
        if message.stream_id and message.stream_id != self.stream_id:
            logger.debug("{} {} for stream {} ignored", self.role, message.kind, message.stream_id)
            return

        handler = self._handlers.get(message.kind.canonical())
        if handler is None:
            logger.debug("{} ignoring {}", self.role, message.kind)
            return

        try:
            await handler(message)
        except AppError as e:
            # Out-of-order or duplicate negotiation step
            logger.warning("{} dropped {}: {}", self.role, message.kind, e.errmesg)

    async def on_channel_lost(self) -> None:
        """The signaling channel dropped; the relay has already forgotten our role."""
        await self.close_links()

    async def close_links(self) -> None:
        raise NotImplementedError

    def emit(self, event: str, data: Any = None) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event, data)
        except Exception:
            logger.exception("{} event callback failed for {}", self.role, event)

    async def _on_connected(self, message: SignalingMessage) -> None:
        self.connection_id = message.payload
        logger.info("{} signaling as {}", self.role, self.connection_id)

    async def _on_error(self, message: SignalingMessage) -> None:
        logger.warning("{} received relay error: {}", self.role, message.payload)
        self.emit("error", message.payload)


class BroadcasterCoordinator(NegotiationCoordinator):
    """Offers the local media to every viewer of the stream, one transport per viewer."""

    role = "broadcaster"

    def __init__(
        self,
        stream_id: str,
        send: SendSignal,
        transport_factory: PeerTransportFactory,
        *,
        on_event: EventCallback | None = None,
    ):
        super().__init__(stream_id, send, transport_factory, on_event=on_event)
        self.media: LocalMedia | None = None
        self.links: dict[str, PeerLink] = {}
        self.viewer_count = 0
        self._handlers.update(
            {
                MessageKind.VIEWER_JOINED: self._on_viewer_joined,
                MessageKind.VIEWER_LEFT: self._on_viewer_left,
                MessageKind.VIEWER_COUNT: self._on_viewer_count,
                MessageKind.STREAM_STATUS: self._on_stream_status,
                MessageKind.ANSWER: self._on_answer,
                MessageKind.ICE_CANDIDATE: self._on_ice_candidate,
            }
        )

    async def start(self, media: LocalMedia) -> None:
        """Announce the broadcast once local media is ready."""
        self.media = media
        logger.info("Starting broadcast on {}", self.stream_id)
        await self.send(SignalingMessage(kind=MessageKind.START_STREAM, stream_id=self.stream_id))

    async def end(self) -> None:
        """End the broadcast for everyone and release local media."""
        await self.send(SignalingMessage(kind=MessageKind.END_STREAM, stream_id=self.stream_id))
        await self.close()

    async def close(self) -> None:
        await self.close_links()
        if self.media is not None:
            self.media.stop()
            self.media = None

    async def close_links(self) -> None:
        links = list(self.links.values())
        self.links.clear()
        for link in links:
            await link.close()

    async def _on_viewer_joined(self, message: SignalingMessage) -> None:
        viewer_id = message.payload
        if self.media is None:
            logger.warning("Viewer {} joined before local media was ready", viewer_id)
            return

        previous = self.links.pop(viewer_id, None)
        if previous is not None:
            # Rejoin: the viewer dropped its old transport
            await previous.close()

        transport = self.transport_factory()
        transport.attach_media(self.media)
        link = PeerLink(
            viewer_id,
            transport,
            self.send,
            stream_id=self.stream_id,
            candidate_target=viewer_id,
            on_failure=self._on_link_failure,
            on_connected=self._on_link_connected,
        )
        self.links[viewer_id] = link
        await link.start_offer()

    async def _on_viewer_left(self, message: SignalingMessage) -> None:
        link = self.links.pop(message.payload, None)
        if link is not None:
            logger.info("Viewer {} left, closing its transport", link.peer_id)
            await link.close()

    async def _on_viewer_count(self, message: SignalingMessage) -> None:
        self.viewer_count = message.payload
        self.emit("viewer-count", self.viewer_count)

    async def _on_stream_status(self, message: SignalingMessage) -> None:
        if message.payload:
            return
        # The relay only tells a broadcaster its stream is down when another one took it over
        logger.warning(
            "Stream {} was taken over, releasing {} viewers", self.stream_id, len(self.links)
        )
        await self.close()
        self.emit("taken-over", self.stream_id)

    async def _on_answer(self, message: SignalingMessage) -> None:
        link = self.links.get(message.from_id) if message.from_id else None
        if link is None:
            logger.warning("Answer from unknown viewer {} dropped", message.from_id)
            return
        await link.accept_answer(message.payload)

    async def _on_ice_candidate(self, message: SignalingMessage) -> None:
        link = self.links.get(message.from_id) if message.from_id else None
        if link is None:
            logger.debug("Candidate from unknown viewer {} dropped", message.from_id)
            return
        await link.add_remote_candidate(message.payload)

    async def _on_link_connected(self, link: PeerLink) -> None:
        self.emit("peer-connected", link.peer_id)

    async def _on_link_failure(self, link: PeerLink, error: NegotiationError) -> None:
        if self.links.get(link.peer_id) is link:
            del self.links[link.peer_id]
        self.emit("connection-error", {"peer_id": link.peer_id, "message": error.errmesg})


class ViewerCoordinator(NegotiationCoordinator):
    """Answers the broadcaster's offer and plays the remote media."""

    role = "viewer"

    def __init__(
        self,
        stream_id: str,
        send: SendSignal,
        transport_factory: PeerTransportFactory,
        *,
        on_event: EventCallback | None = None,
        wait_for_next_broadcast: bool = True,
    ):
        super().__init__(stream_id, send, transport_factory, on_event=on_event)
        self.wait_for_next_broadcast = wait_for_next_broadcast
        self.link: PeerLink | None = None
        self.stream_active = False
        self.joined = False
        # Candidates that arrived before the offer that creates their link
        self._early_candidates: dict[str, list[Any]] = {}
        # Peer whose negotiation failed; its candidates are discarded until the next join
        self._failed_peer: str | None = None
        self._handlers.update(
            {
                MessageKind.STREAM_STATUS: self._on_stream_status,
                MessageKind.OFFER: self._on_offer,
                MessageKind.ICE_CANDIDATE: self._on_ice_candidate,
                MessageKind.END_STREAM: self._on_end_stream,
            }
        )

    async def join(self) -> None:
        self.joined = True
        self._failed_peer = None
        self._early_candidates.clear()
        logger.info("Joining stream {}", self.stream_id)
        await self.send(SignalingMessage(kind=MessageKind.JOIN_STREAM, stream_id=self.stream_id))

    async def leave(self) -> None:
        self.joined = False
        await self.send(SignalingMessage(kind=MessageKind.LEAVE_STREAM, stream_id=self.stream_id))
        await self.close()

    async def close(self) -> None:
        await self.close_links()

    async def close_links(self) -> None:
        link, self.link = self.link, None
        self._early_candidates.clear()
        if link is not None:
            await link.close()

    async def _on_stream_status(self, message: SignalingMessage) -> None:
        self.stream_active = bool(message.payload)
        self.emit("stream-status", self.stream_active)

    async def _on_offer(self, message: SignalingMessage) -> None:
        broadcaster_id = message.from_id
        if not broadcaster_id:
            logger.warning("Offer without a sender dropped")
            return

        if self.link is not None:
            if self.link.state != PeerState.IDLE:
                # Renegotiation is done by replacing the transport
                logger.info("New offer from {}, replacing {}", broadcaster_id, self.link)
            await self.close_links()

        link = PeerLink(
            broadcaster_id,
            self.transport_factory(),
            self.send,
            stream_id=self.stream_id,
            on_failure=self._on_link_failure,
            on_connected=self._on_link_connected,
        )
        self.link = link
        self._failed_peer = None
        for candidate in self._early_candidates.pop(broadcaster_id, []):
            link.pending_remote.append(candidate)
        self._early_candidates.clear()

        await link.accept_offer(message.payload)

    async def _on_ice_candidate(self, message: SignalingMessage) -> None:
        if self.link is None or self.link.closed:
            if not message.from_id or not self.joined or message.from_id == self._failed_peer:
                logger.debug("Candidate from {} without a negotiation dropped", message.from_id)
                return
            self._early_candidates.setdefault(message.from_id, []).append(message.payload)
            return
        if message.from_id and message.from_id != self.link.peer_id:
            logger.debug("Candidate from stale broadcaster {} dropped", message.from_id)
            return
        await self.link.add_remote_candidate(message.payload)

    async def _on_end_stream(self, message: SignalingMessage) -> None:
        logger.info("Stream {} ended", self.stream_id)
        self.stream_active = False
        await self.close_links()
        self.emit("stream-ended", self.stream_id)
        if self.wait_for_next_broadcast and self.joined:
            await self.send(
                SignalingMessage(kind=MessageKind.JOIN_STREAM, stream_id=self.stream_id)
            )

    async def _on_link_connected(self, link: PeerLink) -> None:
        self.emit("peer-connected", link.peer_id)

    async def _on_link_failure(self, link: PeerLink, error: NegotiationError) -> None:
        if self.link is link:
            self.link = None
            self._failed_peer = link.peer_id
            self._early_candidates.clear()
        self.emit("connection-error", {"peer_id": link.peer_id, "message": error.errmesg})
