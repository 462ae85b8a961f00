from .coordinator import BroadcasterCoordinator, NegotiationCoordinator, ViewerCoordinator
from .peer_link import PeerLink
from .peer_state_machine import PeerState, PeerStateMachine
from .peer_transport import (
    LocalMedia,
    MediaCaptureError,
    NegotiationError,
    PeerTransport,
    PeerTransportFactory,
)

__all__ = [
    "BroadcasterCoordinator",
    "LocalMedia",
    "MediaCaptureError",
    "NegotiationCoordinator",
    "NegotiationError",
    "PeerLink",
    "PeerState",
    "PeerStateMachine",
    "PeerTransport",
    "PeerTransportFactory",
    "ViewerCoordinator",
]
