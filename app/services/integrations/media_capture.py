"""Local media capture for the broadcaster.

Wraps ``aiortc.contrib.media.MediaPlayer`` (FFmpeg via PyAV). One capture feeds any number
of peer transports through a ``MediaRelay``; each ``tracks()`` call hands out fresh
subscriptions so closing one transport does not stop the source.
"""

import sys
from typing import Any

from aiortc.contrib.media import MediaPlayer, MediaRelay
from loguru import logger

from app.domain.live.negotiation.peer_transport import MediaCaptureError

# FFmpeg input options per source
MEDIA_CONSTRAINTS: dict[str, dict[str, str]] = {
    "camera": {"video_size": "1280x720", "framerate": "30"},
    "screen": {"video_size": "1920x1080", "framerate": "30"},
}


class CapturedMedia:
    def __init__(self, player: MediaPlayer, source: str):
        self.source = source
        self._player = player
        self._relay = MediaRelay()
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def tracks(self) -> list[Any]:
        if self._stopped:
            raise MediaCaptureError(f"Capture of {self.source} already stopped")
        return [
            self._relay.subscribe(track)
            for track in (self._player.audio, self._player.video)
            if track is not None
        ]

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in (self._player.audio, self._player.video):
            if track is not None:
                track.stop()
        logger.info("Released local media {}", self.source)


def _open(file: str, source: str, fmt: str | None = None, options: dict | None = None) -> CapturedMedia:
    try:
        player = MediaPlayer(file, format=fmt, options=options)
    except Exception as e:
        raise MediaCaptureError(f"Cannot open {source} ({file}): {e}") from e

    if player.audio is None and player.video is None:
        raise MediaCaptureError(f"{source} ({file}) has no audio or video")

    logger.info(
        "Captured {} from {} (audio={}, video={})",
        source,
        file,
        player.audio is not None,
        player.video is not None,
    )
    return CapturedMedia(player, source)


def open_camera(device: str | None = None) -> CapturedMedia:
    """Open the default camera (and microphone on macOS)."""
    options = MEDIA_CONSTRAINTS["camera"]
    if sys.platform == "darwin":
        return _open(device or "default:default", "camera", "avfoundation", options)
    if sys.platform == "win32":
        return _open(device or "video=Integrated Camera", "camera", "dshow", options)
    return _open(device or "/dev/video0", "camera", "v4l2", options)


def open_screen(display: str | None = None) -> CapturedMedia:
    options = MEDIA_CONSTRAINTS["screen"]
    if sys.platform == "darwin":
        return _open(display or "Capture screen 0", "screen", "avfoundation", options)
    if sys.platform == "win32":
        return _open(display or "desktop", "screen", "gdigrab", options)
    return _open(display or ":0.0", "screen", "x11grab", options)


def open_file(path: str, *, loop: bool = True) -> CapturedMedia:
    """Stream a media file as if it were a live source."""
    try:
        player = MediaPlayer(path, loop=loop)
    except Exception as e:
        raise MediaCaptureError(f"Cannot open file ({path}): {e}") from e
    if player.audio is None and player.video is None:
        raise MediaCaptureError(f"file ({path}) has no audio or video")
    return CapturedMedia(player, "file")
