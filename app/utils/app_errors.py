"""Application error types shared by the relay, the HTTP layer and the client library."""

import inspect
from enum import IntEnum, StrEnum
from uuid import uuid4


class AppErrorCode(StrEnum):
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_MESSAGE = "E_INVALID_MESSAGE"
    E_SESSION_NOT_FOUND = "E_SESSION_NOT_FOUND"
    E_NOT_STREAM_OWNER = "E_NOT_STREAM_OWNER"
    E_NOT_STREAM_MEMBER = "E_NOT_STREAM_MEMBER"
    E_INVALID_PEER_TRANSITION = "E_INVALID_PEER_TRANSITION"
    E_NEGOTIATION_FAILED = "E_NEGOTIATION_FAILED"
    E_MEDIA_UNAVAILABLE = "E_MEDIA_UNAVAILABLE"
    E_CHANNEL_UNAVAILABLE = "E_CHANNEL_UNAVAILABLE"
    E_INTERNAL_ERROR = "E_INTERNAL_ERROR"


class HttpStatusCode(IntEnum):
    OK = 200
    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    CONFLICT = 409
    UNPROCESSABLE_ENTITY = 422
    INTERNAL_SERVER_ERROR = 500
    SERVICE_UNAVAILABLE = 503


class AppError(Exception):
    """Error carrying an API error code, a short resid for log correlation and the raise site."""

    def __init__(
        self,
        errcode: AppErrorCode | str,
        errmesg: str,
        status_code: int = HttpStatusCode.BAD_REQUEST,
    ):
        self.errcode = errcode.value if isinstance(errcode, AppErrorCode) else str(errcode)
        self.errmesg = errmesg
        self.status_code = int(status_code)
        self.erresid = uuid4().hex[:10]

        caller_frame = inspect.stack()[1]
        module = inspect.getmodule(caller_frame.frame)
        module_name = (
            module.__name__ if module and getattr(module, "__name__", None) else caller_frame.filename
        )
        self.caller_info = f"{module_name}:{caller_frame.function}:{caller_frame.lineno}"

        super().__init__(f"[{self.errcode}] {errmesg}")
