from fastapi import APIRouter

from app.api.v1.dependency import Registry
from app.api.v1.schemas.base import ApiOut
from app.api.v1.schemas.stream import ListStreamsOut, StreamOut
from app.domain.live.session.session_models import SessionResponse
from app.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

router = APIRouter(prefix="/streams", tags=["Streams"])


def _stream_out(session: SessionResponse) -> StreamOut:
    return StreamOut(
        stream_id=session.stream_id,
        broadcaster_id=session.broadcaster_id,
        active=session.active,
        viewer_count=session.viewer_count,
    )


@router.get("")
async def list_streams(registry: Registry) -> ApiOut[ListStreamsOut]:
    """List every known stream, live or waiting for its broadcaster."""
    streams = [_stream_out(s) for s in registry.list_sessions()]

    return ApiOut[ListStreamsOut](
        results=ListStreamsOut(
            items=streams,
            total=len(streams),
            active=sum(1 for s in streams if s.active),
        )
    )


@router.get("/{stream_id}")
async def get_stream(stream_id: str, registry: Registry) -> ApiOut[StreamOut]:
    session = registry.get_session(stream_id)
    if session is None:
        raise AppError(
            errcode=AppErrorCode.E_SESSION_NOT_FOUND,
            errmesg=f"Stream not found: {stream_id}",
            status_code=HttpStatusCode.NOT_FOUND,
        )

    return ApiOut[StreamOut](results=_stream_out(session))
