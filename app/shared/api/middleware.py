from time import perf_counter
from uuid import uuid4

from fastapi import Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from .errors import E_INTERNAL
from .utils import api_failure, format_error, make_response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with a short request id and its duration.

    Websocket traffic does not pass through here; the signaling endpoint logs its own
    connection lifecycle.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore
        request_id = uuid4().hex[:8]
        started = perf_counter()

        with logger.contextualize(request_id=request_id):
            logger.info("[{}] {} {}", request_id, request.method, request.url.path)
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    "[{}] {} {} failed after {:.2f}ms: {}",
                    request_id, request.method, request.url.path,
                    (perf_counter() - started) * 1000, format_error(e),
                )
                failure = api_failure(E_INTERNAL, f"Internal server error (request_id: {request_id})")
                return make_response(failure, status_code=500)

            logger.info(
                "[{}] {} {} {} {:.2f}ms",
                request_id, request.method, request.url.path, response.status_code,
                (perf_counter() - started) * 1000,
            )
            return response
