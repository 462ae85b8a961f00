from contextlib import asynccontextmanager
from os import environ

import logfire
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from granian import Granian
from loguru import logger

from app.api.errors import app_error_handler
from app.app_config import AppEnvironConfig, get_app_environ_config
from app.domain.live.relay.connection_hub import ConnectionHub
from app.domain.live.relay.signaling_relay import SignalingRelay
from app.domain.live.session.session_registry import SessionRegistry
from app.shared.api.health import router as health_router
from app.shared.api.middleware import RequestLoggingMiddleware
from app.shared.api.utils import init_logger, load_routes, validation_exception_handler
from app.utils.app_errors import AppError


def _instrument(server: FastAPI, cfg: AppEnvironConfig):
    logger.info("Logfire initializing")
    logfire.configure(
        token=cfg.LOGFIRE_TOKEN,
        service_name="p2p-live-relay",
        service_version=environ.get("BUILD_COMMIT") or "dev",
    )
    logfire.instrument_fastapi(server, capture_headers=True)
    logfire.instrument_pydantic()


@asynccontextmanager
async def lifespan(server: FastAPI):
    init_logger()
    cfg = get_app_environ_config()
    logger.info("Relay starting on {}:{}", cfg.API_HOST, cfg.API_PORT)

    if cfg.API_WORKERS != 1:
        logger.warning(
            "API_WORKERS={}: each worker keeps its own sessions, clients on different "
            "workers will not see each other",
            cfg.API_WORKERS,
        )

    registry = SessionRegistry()
    server.state.relay = SignalingRelay(
        registry,
        default_stream_id=cfg.DEFAULT_STREAM_ID,
        echo_protocol_errors=cfg.SIGNALING_ECHO_PROTOCOL_ERRORS,
        max_message_bytes=cfg.SIGNALING_MAX_MESSAGE_BYTES,
    )
    server.state.hub = ConnectionHub(max_pending=cfg.SIGNALING_OUTBOX_MAX_PENDING)

    if cfg.LOGFIRE_ENABLE:
        _instrument(server, cfg)

    yield

    logger.info("Relay shutting down, {} open connections", len(server.state.hub))
    await server.state.hub.close_all()
    registry.close()


def create_app() -> FastAPI:
    cfg = get_app_environ_config()
    server = FastAPI(
        version="1.0",
        title="P2P Live Relay",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    server.add_middleware(RequestLoggingMiddleware)
    server.add_middleware(
        CORSMiddleware,  # type: ignore
        allow_origins=cfg.API_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    server.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore
    server.add_exception_handler(AppError, app_error_handler)  # type: ignore

    server.include_router(health_router)
    load_routes(server, "", "app.api.ws")
    load_routes(server, "/api/v1", "app.api.v1.routers")
    return server


app = create_app()


if __name__ == "__main__":
    cfg = get_app_environ_config()
    Granian(
        "app.main:app",
        interface="asgi",
        address=cfg.API_HOST,
        port=cfg.API_PORT,
        workers=cfg.API_WORKERS,
        reload=cfg.DEBUG,
    ).serve()
