from typing import Annotated

from fastapi import Depends
from starlette.requests import HTTPConnection

from app.domain.live.relay.connection_hub import ConnectionHub
from app.domain.live.relay.signaling_relay import SignalingRelay
from app.domain.live.session.session_registry import SessionRegistry


# HTTPConnection so the same dependencies resolve for websocket routes
def get_relay(conn: HTTPConnection) -> SignalingRelay:
    return conn.app.state.relay


def get_connection_hub(conn: HTTPConnection) -> ConnectionHub:
    return conn.app.state.hub


def get_session_registry(relay: Annotated[SignalingRelay, Depends(get_relay)]) -> SessionRegistry:
    return relay.registry


Relay = Annotated[SignalingRelay, Depends(get_relay)]
Hub = Annotated[ConnectionHub, Depends(get_connection_hub)]
Registry = Annotated[SessionRegistry, Depends(get_session_registry)]
