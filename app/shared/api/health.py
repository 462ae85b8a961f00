from fastapi import APIRouter, Request
from .utils import ApiSuccess


router = APIRouter()


@router.get('/health', response_model=ApiSuccess)
async def health(request: Request):
    relay = getattr(request.app.state, 'relay', None)
    if relay is None:
        return ApiSuccess(results="OK")

    return ApiSuccess(results={"status": "OK", **relay.get_stats()})
