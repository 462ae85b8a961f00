"""aiortc-backed peer transport.

aiortc gathers all local candidates while setting the local description and embeds them in
the SDP, so ``on_local_candidate`` is never called. Remote candidates trickled by browser
peers are still applied.

Usage:
    factory = aiortc_transport_factory(stun_servers=cfg.STUN_SERVERS)
    transport = factory()
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from loguru import logger

from app.domain.live.negotiation.peer_transport import (
    IceCandidate,
    LocalMedia,
    SessionDescription,
)


def build_rtc_configuration(stun_servers: list[str] | None = None) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in stun_servers or []])


class AiortcPeerTransport:
    """PeerTransport over an ``RTCPeerConnection``."""

    def __init__(
        self,
        stun_servers: list[str] | None = None,
        *,
        on_remote_track: Callable[[Any], None] | None = None,
    ):
        self.pc = RTCPeerConnection(configuration=build_rtc_configuration(stun_servers))
        self.on_local_candidate: Callable[[IceCandidate], Awaitable[None]] | None = None
        self.on_connection_state: Callable[[str], Awaitable[None]] | None = None
        self._on_remote_track = on_remote_track

        @self.pc.on("connectionstatechange")
        async def _on_connectionstatechange():
            state = self.pc.connectionState
            logger.debug("Peer connection state: {}", state)
            if self.on_connection_state is not None:
                await self.on_connection_state(state)

        @self.pc.on("track")
        def _on_track(track):
            logger.info("Remote {} track received", track.kind)
            if self._on_remote_track is not None:
                self._on_remote_track(track)

    def attach_media(self, media: LocalMedia) -> None:
        for track in media.tracks():
            self.pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> SessionDescription:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: SessionDescription) -> None:
        if not isinstance(description, dict) or "sdp" not in description or "type" not in description:
            raise ValueError(f"Malformed session description: {description!r}")
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if not candidate or not candidate.get("candidate"):
            # End of candidates
            return

        sdp = candidate["candidate"]
        if sdp.startswith("candidate:"):
            sdp = sdp.split(":", 1)[1]
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    async def close(self) -> None:
        await self.pc.close()

    def _local_description(self) -> SessionDescription:
        desc = self.pc.localDescription
        return {"type": desc.type, "sdp": desc.sdp}


def aiortc_transport_factory(
    stun_servers: list[str] | None = None,
    *,
    on_remote_track: Callable[[Any], None] | None = None,
) -> Callable[[], AiortcPeerTransport]:
    def factory() -> AiortcPeerTransport:
        return AiortcPeerTransport(stun_servers, on_remote_track=on_remote_track)

    return factory
