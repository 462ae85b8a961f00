"""
Live streaming domain logic.

Includes:
- session: Stream sessions and connection roles (SessionRegistry).
- relay: Signaling message routing (SignalingRelay) and outbound delivery.
- negotiation: Client-side peer transport negotiation (coordinators, PeerLink).
"""
