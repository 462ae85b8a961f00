from pydantic import BaseModel

from app.shared.config import config


class AppEnvironConfig(BaseModel):
    DEBUG: bool = config.get_bool("DEBUG")

    API_HOST: str = config.get_str("API_HOST", "0.0.0.0")
    API_PORT: int = config.get_int("API_PORT", 8000)
    # Sessions live in process memory, so more than one worker splits the registry.
    API_WORKERS: int = config.get_int("API_WORKERS", 1)
    API_CORS_ORIGINS: list[str] = config.get_list("API_CORS_ORIGINS", "*")

    # Stream used when a client does not name one
    DEFAULT_STREAM_ID: str = config.get_str("DEFAULT_STREAM_ID", "main-stream")

    # Peer transport configuration handed to every peer connection
    STUN_SERVERS: list[str] = config.get_list(
        "STUN_SERVERS",
        "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302",
    )
    ICE_CANDIDATE_POOL_SIZE: int = config.get_int("ICE_CANDIDATE_POOL_SIZE", 10)

    # Relay limits
    SIGNALING_MAX_MESSAGE_BYTES: int = config.get_int("SIGNALING_MAX_MESSAGE_BYTES", 65536)
    SIGNALING_OUTBOX_MAX_PENDING: int = config.get_int("SIGNALING_OUTBOX_MAX_PENDING", 256)
    SIGNALING_ECHO_PROTOCOL_ERRORS: bool = config.get_bool("SIGNALING_ECHO_PROTOCOL_ERRORS", True)

    # Client side message channel
    SIGNALING_URL: str = config.get_str("SIGNALING_URL", "ws://localhost:8000/ws/signaling")
    SIGNALING_RECONNECT_MAX_RETRIES: int = config.get_int("SIGNALING_RECONNECT_MAX_RETRIES", 10)
    SIGNALING_RECONNECT_BASE_DELAY: float = config.get_float("SIGNALING_RECONNECT_BASE_DELAY", 1.0)
    SIGNALING_RECONNECT_MAX_DELAY: float = config.get_float("SIGNALING_RECONNECT_MAX_DELAY", 30.0)

    LOGFIRE_ENABLE: bool = config.get_bool("LOGFIRE_ENABLE")
    LOGFIRE_TOKEN: str | None = config.get("LOGFIRE_TOKEN")


_app_environ_config = AppEnvironConfig()


def get_app_environ_config() -> AppEnvironConfig:
    return _app_environ_config
