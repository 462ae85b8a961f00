"""Peer transport negotiation state machine."""

from enum import Enum


class PeerState(str, Enum):
    """Negotiation states of one peer transport.

    Offering side:  IDLE -> HAVE_LOCAL_OFFER -> CONNECTED -> CLOSED
    Answering side: IDLE -> HAVE_REMOTE_OFFER -> HAVE_LOCAL_ANSWER -> CONNECTED -> CLOSED

    Any state may move to CLOSED (teardown, failure, end of stream). CLOSED is terminal.
    """

    IDLE = "idle"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HAVE_LOCAL_ANSWER = "have-local-answer"
    CONNECTED = "connected"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value


class PeerStateMachine:
    """Valid negotiation transitions.

    Triggers:
    1. HAVE_LOCAL_OFFER: local offer created and set (broadcaster, per viewer)
    2. HAVE_REMOTE_OFFER: broadcaster offer applied as remote description (viewer)
    3. HAVE_LOCAL_ANSWER: local answer created and set (viewer)
    4. CONNECTED: matching answer applied (broadcaster) or transport reported connected (viewer)
    5. CLOSED: end-stream, viewer left, channel lost, or a rejected description/candidate
    """

    TRANSITIONS: dict[PeerState, set[PeerState]] = {
        PeerState.IDLE: {
            PeerState.HAVE_LOCAL_OFFER,
            PeerState.HAVE_REMOTE_OFFER,
            PeerState.CLOSED,
        },
        PeerState.HAVE_LOCAL_OFFER: {PeerState.CONNECTED, PeerState.CLOSED},
        PeerState.HAVE_REMOTE_OFFER: {PeerState.HAVE_LOCAL_ANSWER, PeerState.CLOSED},
        PeerState.HAVE_LOCAL_ANSWER: {PeerState.CONNECTED, PeerState.CLOSED},
        PeerState.CONNECTED: {PeerState.CLOSED},
        PeerState.CLOSED: set(),
    }

    TERMINAL_STATES: set[PeerState] = {PeerState.CLOSED}

    # States in which a remote description has been applied
    REMOTE_APPLIED_STATES: set[PeerState] = {
        PeerState.HAVE_REMOTE_OFFER,
        PeerState.HAVE_LOCAL_ANSWER,
        PeerState.CONNECTED,
    }

    @classmethod
    def can_transition(cls, current: PeerState, new: PeerState) -> bool:
        return new in cls.TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, state: PeerState) -> bool:
        return state in cls.TERMINAL_STATES

    @classmethod
    def get_valid_transitions(cls, state: PeerState) -> set[PeerState]:
        return cls.TRANSITIONS.get(state, set())
