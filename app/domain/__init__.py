"""
Domain layer containing core signaling logic.

Submodules:
- live: Live streaming domain logic (sessions, relay, peer negotiation).
- utils: Domain-specific utilities (e.g., ID generation).
"""
