from fastapi import APIRouter

from app.api.v1.schemas.base import ApiOut
from app.api.v1.schemas.rtc_config import IceServerOut, RtcConfigOut
from app.app_config import get_app_environ_config

router = APIRouter(prefix="/rtc", tags=["Streams"])


@router.get("/config")
async def get_rtc_config() -> ApiOut[RtcConfigOut]:
    """Get peer transport configuration.

    Browser clients use it as-is:
    ``new RTCPeerConnection({iceServers, iceCandidatePoolSize})``
    """
    config = get_app_environ_config()

    return ApiOut[RtcConfigOut](
        results=RtcConfigOut(
            ice_servers=[IceServerOut(urls=url) for url in config.STUN_SERVERS],
            ice_candidate_pool_size=config.ICE_CANDIDATE_POOL_SIZE,
            default_stream_id=config.DEFAULT_STREAM_ID,
        )
    )
