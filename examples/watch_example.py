"""Example: Watch a stream and record what arrives.

Usage:
    python examples/watch_example.py --stream-id main-stream --record out.mp4

Without --record the remote tracks are consumed and discarded.
"""

import argparse
import asyncio

from aiortc.contrib.media import MediaBlackhole, MediaRecorder
from loguru import logger

from app.app_config import get_app_environ_config
from app.domain.live.negotiation import ViewerCoordinator
from app.services.integrations.aiortc_transport import aiortc_transport_factory
from app.services.signaling_client import SignalingClient
from app.shared.api.utils import init_logger


async def main(stream_id: str, record: str | None, url: str | None):
    cfg = get_app_environ_config()
    sink = MediaRecorder(record) if record else MediaBlackhole()
    started = False

    def on_track(track) -> None:
        sink.addTrack(track)

    def on_event(event: str, data) -> None:
        nonlocal started
        logger.info("[viewer] {}: {}", event, data)
        if event == "peer-connected" and not started:
            started = True
            asyncio.ensure_future(sink.start())

    client = SignalingClient(
        url or cfg.SIGNALING_URL,
        max_retries=cfg.SIGNALING_RECONNECT_MAX_RETRIES,
        base_delay=cfg.SIGNALING_RECONNECT_BASE_DELAY,
        max_delay=cfg.SIGNALING_RECONNECT_MAX_DELAY,
    )
    coordinator = ViewerCoordinator(
        stream_id,
        client.send,
        aiortc_transport_factory(cfg.STUN_SERVERS, on_remote_track=on_track),
        on_event=on_event,
    )
    client.bind(coordinator)

    runner = asyncio.create_task(client.run())
    await coordinator.join()
    logger.info("Waiting for {} (Ctrl+C to stop)", stream_id)

    try:
        await runner
    except asyncio.CancelledError:
        pass
    finally:
        await coordinator.leave()
        await client.close()
        await sink.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Watch a stream")
    parser.add_argument("--stream-id", default=get_app_environ_config().DEFAULT_STREAM_ID)
    parser.add_argument("--record", help="Write the received media to this file")
    parser.add_argument("--url", help="Signaling URL (default: SIGNALING_URL)")
    args = parser.parse_args()

    init_logger()
    try:
        asyncio.run(main(args.stream_id, args.record, args.url))
    except KeyboardInterrupt:
        pass
