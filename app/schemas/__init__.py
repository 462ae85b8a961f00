"""Wire schemas shared by the relay and its clients."""

from .signaling import MessageKind, SignalingMessage, parse_frame

__all__ = [
    "MessageKind",
    "SignalingMessage",
    "parse_frame",
]
