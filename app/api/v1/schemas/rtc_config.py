from pydantic import BaseModel, Field


class IceServerOut(BaseModel):
    urls: str


class RtcConfigOut(BaseModel):
    """Settings a browser client passes to ``new RTCPeerConnection``."""

    ice_servers: list[IceServerOut]
    ice_candidate_pool_size: int = Field(ge=0)
    default_stream_id: str
