"""Contracts of the collaborators the negotiation layer drives.

Descriptions and candidates are opaque JSON-compatible values, in the browser shape:
``{"type": "offer", "sdp": "..."}`` and ``{"candidate": "candidate:...", "sdpMid": "0",
"sdpMLineIndex": 0}``. ``None`` as a candidate marks the end of candidates.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from app.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

SessionDescription = dict[str, Any]
IceCandidate = dict[str, Any] | None


class LocalMedia(Protocol):
    """Captured local media (broadcaster side only)."""

    def tracks(self) -> list[Any]: ...

    def stop(self) -> None: ...


class PeerTransport(Protocol):
    """One encrypted point-to-point media channel.

    ``on_local_candidate`` is awaited for each locally discovered candidate once gathering
    starts; ``on_connection_state`` is awaited with ``new | connecting | connected |
    disconnected | failed | closed``.
    """

    on_local_candidate: Callable[[IceCandidate], Awaitable[None]] | None
    on_connection_state: Callable[[str], Awaitable[None]] | None

    def attach_media(self, media: LocalMedia) -> None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...


PeerTransportFactory = Callable[[], PeerTransport]


class NegotiationError(AppError):
    """A peer transport rejected a description or candidate, or failed outright."""

    def __init__(self, errmesg: str):
        super().__init__(
            errcode=AppErrorCode.E_NEGOTIATION_FAILED,
            errmesg=errmesg,
            status_code=HttpStatusCode.BAD_REQUEST,
        )


class MediaCaptureError(AppError):
    """Local media is unavailable or access was denied."""

    def __init__(self, errmesg: str):
        super().__init__(
            errcode=AppErrorCode.E_MEDIA_UNAVAILABLE,
            errmesg=errmesg,
            status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
        )
