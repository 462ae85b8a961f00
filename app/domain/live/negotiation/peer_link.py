"""One negotiated peer transport and the signaling glue around it."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from loguru import logger

from app.schemas.signaling import MessageKind, SignalingMessage
from app.utils.app_errors import AppError, AppErrorCode

from .peer_state_machine import PeerState, PeerStateMachine
from .peer_transport import IceCandidate, NegotiationError, PeerTransport, SessionDescription

SendSignal = Callable[[SignalingMessage], Awaitable[None]]


class PeerLink:
    """Drives one peer transport through negotiation with one remote peer.

    Candidate ordering:
    - remote candidates that arrive before the remote description is applied are kept and
      applied, in arrival order, right after it
    - local candidates discovered before our description went out are kept and sent right
      after it

    Any description or candidate the transport rejects closes the link and reports a
    NegotiationError through ``on_failure``. A closed link ignores everything.
    """

    def __init__(
        self,
        peer_id: str,
        transport: PeerTransport,
        send: SendSignal,
        *,
        stream_id: str | None = None,
        candidate_target: str | None = None,
        on_failure: Callable[[PeerLink, NegotiationError], Awaitable[None]] | None = None,
        on_connected: Callable[[PeerLink], Awaitable[None]] | None = None,
    ):
        self.peer_id = peer_id
        self.transport = transport
        self.stream_id = stream_id
        # toId for outgoing offers and candidates; None lets the relay route to the broadcaster
        self.candidate_target = candidate_target
        self._send = send
        self._on_failure = on_failure
        self._on_connected = on_connected

        self.state = PeerState.IDLE
        self.description_sent = False
        self.pending_remote: list[IceCandidate] = []
        self.pending_local: list[IceCandidate] = []

        transport.on_local_candidate = self._on_local_candidate
        transport.on_connection_state = self._on_connection_state

    def __repr__(self) -> str:
        return f"PeerLink(peer_id={self.peer_id!r}, state={self.state})"

    @property
    def closed(self) -> bool:
        return PeerStateMachine.is_terminal(self.state)

    @property
    def remote_applied(self) -> bool:
        return self.state in PeerStateMachine.REMOTE_APPLIED_STATES

    # ==================== OFFERING SIDE ====================

    async def start_offer(self) -> None:
        """Create an offer and send it to the peer."""
        self._check_transition(PeerState.HAVE_LOCAL_OFFER)
        try:
            offer = await self.transport.create_offer()
        except Exception as e:
            await self.fail(f"Could not create offer for {self.peer_id}: {e}")
            return
        if self.closed:
            return

        self._transition(PeerState.HAVE_LOCAL_OFFER)
        await self._send(
            SignalingMessage(
                kind=MessageKind.OFFER,
                stream_id=self.stream_id,
                to_id=self.candidate_target,
                payload=offer,
            )
        )
        await self._description_sent()

    async def accept_answer(self, answer: SessionDescription) -> None:
        """Apply the peer's answer to our offer.

        Raises:
            AppError: E_INVALID_PEER_TRANSITION when no offer is outstanding (duplicate or
                stray answer); the link is left untouched
        """
        self._check_transition(PeerState.CONNECTED, expected=PeerState.HAVE_LOCAL_OFFER)
        if not await self._apply_remote(answer):
            return
        self._transition(PeerState.CONNECTED)
        await self._flush_remote()
        if self._on_connected and not self.closed:
            await self._on_connected(self)

    # ==================== ANSWERING SIDE ====================

    async def accept_offer(self, offer: SessionDescription) -> None:
        """Apply the peer's offer, answer it and send the answer back."""
        self._check_transition(PeerState.HAVE_REMOTE_OFFER)
        if not await self._apply_remote(offer):
            return
        self._transition(PeerState.HAVE_REMOTE_OFFER)
        await self._flush_remote()
        if self.closed:
            return

        try:
            answer = await self.transport.create_answer()
        except Exception as e:
            await self.fail(f"Could not create answer for {self.peer_id}: {e}")
            return
        if self.closed:
            return

        self._transition(PeerState.HAVE_LOCAL_ANSWER)
        await self._send(
            SignalingMessage(kind=MessageKind.ANSWER, stream_id=self.stream_id, payload=answer)
        )
        await self._description_sent()

    # ==================== CANDIDATES ====================

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        if self.closed:
            logger.debug("Candidate for closed link {} ignored", self.peer_id)
            return
        if not self.remote_applied:
            self.pending_remote.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if self.closed:
            return
        if not self.description_sent:
            self.pending_local.append(candidate)
            return
        await self._send_candidate(candidate)

    async def _on_connection_state(self, state: str) -> None:
        if self.closed:
            return
        if state == "connected":
            if self.state == PeerState.HAVE_LOCAL_ANSWER:
                self._transition(PeerState.CONNECTED)
                if self._on_connected:
                    await self._on_connected(self)
        elif state == "failed":
            await self.fail(f"Transport to {self.peer_id} failed")
        elif state == "closed":
            await self.close()

    # ==================== TEARDOWN ====================

    async def close(self) -> None:
        """Close the transport. Idempotent."""
        if self.closed:
            return
        self._transition(PeerState.CLOSED)
        self.pending_remote.clear()
        self.pending_local.clear()
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning("Error closing transport to {}: {}", self.peer_id, e)

    async def fail(self, errmesg: str) -> None:
        """Close and report a connection failure for this peer."""
        if self.closed:
            return
        logger.warning("Negotiation with {} failed: {}", self.peer_id, errmesg)
        await self.close()
        if self._on_failure:
            await self._on_failure(self, NegotiationError(errmesg))

    # ==================== INTERNALS ====================

    async def _apply_remote(self, description: SessionDescription) -> bool:
        try:
            await self.transport.set_remote_description(description)
        except Exception as e:
            await self.fail(f"Remote description from {self.peer_id} rejected: {e}")
            return False
        return not self.closed

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as e:
            await self.fail(f"Candidate from {self.peer_id} rejected: {e}")

    async def _flush_remote(self) -> None:
        while self.pending_remote and not self.closed:
            await self._apply_candidate(self.pending_remote.pop(0))

    async def _description_sent(self) -> None:
        self.description_sent = True
        while self.pending_local and not self.closed:
            await self._send_candidate(self.pending_local.pop(0))

    async def _send_candidate(self, candidate: IceCandidate) -> None:
        await self._send(
            SignalingMessage(
                kind=MessageKind.ICE_CANDIDATE,
                stream_id=self.stream_id,
                to_id=self.candidate_target,
                payload=candidate,
            )
        )

    def _check_transition(self, new_state: PeerState, expected: PeerState | None = None) -> None:
        if expected is not None and self.state != expected:
            raise AppError(
                errcode=AppErrorCode.E_INVALID_PEER_TRANSITION,
                errmesg=f"Link {self.peer_id} is {self.state}, expected {expected}",
            )
        if not PeerStateMachine.can_transition(self.state, new_state):
            valid = PeerStateMachine.get_valid_transitions(self.state)
            raise AppError(
                errcode=AppErrorCode.E_INVALID_PEER_TRANSITION,
                errmesg=(
                    f"Invalid transition {self.state} -> {new_state} for {self.peer_id}. "
                    f"Valid: {sorted(str(s) for s in valid)}"
                ),
            )

    def _transition(self, new_state: PeerState) -> None:
        self._check_transition(new_state)
        logger.debug("Link {}: {} -> {}", self.peer_id, self.state, new_state)
        self.state = new_state
