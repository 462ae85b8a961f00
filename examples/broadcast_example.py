"""Example: Broadcast local media to every viewer of a stream.

Usage:
    # Camera (and microphone on macOS)
    python examples/broadcast_example.py --stream-id main-stream --source camera

    # Screen
    python examples/broadcast_example.py --source screen

    # A media file, looped
    python examples/broadcast_example.py --source file --file demo.mp4
"""

import argparse
import asyncio

from loguru import logger

from app.app_config import get_app_environ_config
from app.domain.live.negotiation import BroadcasterCoordinator, MediaCaptureError
from app.services.integrations.aiortc_transport import aiortc_transport_factory
from app.services.integrations.media_capture import open_camera, open_file, open_screen
from app.services.signaling_client import SignalingClient
from app.shared.api.utils import init_logger


def open_media(source: str, file: str | None):
    if source == "screen":
        return open_screen()
    if source == "file":
        if not file:
            raise MediaCaptureError("--file is required with --source file")
        return open_file(file)
    return open_camera()


def on_event(event: str, data) -> None:
    logger.info("[broadcaster] {}: {}", event, data)


async def main(stream_id: str, source: str, file: str | None, url: str | None):
    cfg = get_app_environ_config()

    try:
        media = open_media(source, file)
    except MediaCaptureError as e:
        logger.error("Cannot broadcast: {}", e.errmesg)
        return

    client = SignalingClient(
        url or cfg.SIGNALING_URL,
        max_retries=cfg.SIGNALING_RECONNECT_MAX_RETRIES,
        base_delay=cfg.SIGNALING_RECONNECT_BASE_DELAY,
        max_delay=cfg.SIGNALING_RECONNECT_MAX_DELAY,
    )
    coordinator = BroadcasterCoordinator(
        stream_id,
        client.send,
        aiortc_transport_factory(cfg.STUN_SERVERS),
        on_event=on_event,
    )
    client.bind(coordinator)

    runner = asyncio.create_task(client.run())
    await coordinator.start(media)
    logger.info("Broadcasting {} on {} (Ctrl+C to stop)", source, stream_id)

    try:
        await runner
    except asyncio.CancelledError:
        pass
    finally:
        await coordinator.end()
        await client.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Broadcast local media")
    parser.add_argument("--stream-id", default=get_app_environ_config().DEFAULT_STREAM_ID)
    parser.add_argument("--source", choices=["camera", "screen", "file"], default="camera")
    parser.add_argument("--file", help="Media file for --source file")
    parser.add_argument("--url", help="Signaling URL (default: SIGNALING_URL)")
    args = parser.parse_args()

    init_logger()
    try:
        asyncio.run(main(args.stream_id, args.source, args.file, args.url))
    except KeyboardInterrupt:
        pass
