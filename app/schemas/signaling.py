"""Signaling wire protocol.

Every frame on the message channel is a JSON object ``{"event": <kind>, "data": <payload>}``.
Frames that carry their fields at the top level (``{"event": "offer", "sdp": ...}``) are
accepted too. ``type`` is accepted as an alias of ``event``.

Client -> relay:
- start-stream / join-broadcaster: streamId (string, ``{"streamId": ...}`` or null)
- join-stream / join-viewer: streamId
- leave-stream / leave-viewer: streamId
- offer: {sdp, streamId, toId?}
- answer: {sdp, streamId}
- ice-candidate: {candidate, streamId, toId?}
- end-stream: streamId

Relay -> client:
- connected: {connectionId}
- offer: {sdp, streamId, fromId, toId?}
- answer: {sdp, streamId, viewerId}
- ice-candidate: {candidate, streamId, fromId, toId?}
- end-stream: streamId
- viewer-count: integer
- stream-status: boolean
- viewer-joined / viewer-left: {viewerId, streamId}
- error: message string
"""

from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.utils.app_errors import AppError, AppErrorCode


class MessageKind(str, Enum):
    """Signaling event names as they appear on the wire."""

    START_STREAM = "start-stream"
    JOIN_BROADCASTER = "join-broadcaster"
    JOIN_STREAM = "join-stream"
    JOIN_VIEWER = "join-viewer"
    LEAVE_STREAM = "leave-stream"
    LEAVE_VIEWER = "leave-viewer"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    END_STREAM = "end-stream"
    VIEWER_COUNT = "viewer-count"
    STREAM_STATUS = "stream-status"
    VIEWER_JOINED = "viewer-joined"
    VIEWER_LEFT = "viewer-left"
    CONNECTED = "connected"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value

    def canonical(self) -> "MessageKind":
        """Resolve legacy event aliases to the event they stand for."""
        return _ALIASES.get(self, self)


_ALIASES = {
    MessageKind.JOIN_BROADCASTER: MessageKind.START_STREAM,
    MessageKind.JOIN_VIEWER: MessageKind.JOIN_STREAM,
    MessageKind.LEAVE_VIEWER: MessageKind.LEAVE_STREAM,
}

_STREAM_ID_EVENTS = {
    MessageKind.START_STREAM,
    MessageKind.JOIN_STREAM,
    MessageKind.LEAVE_STREAM,
    MessageKind.END_STREAM,
}


class SignalingMessage(BaseModel):
    """One immutable signaling message.

    ``payload`` is the opaque session description for offer/answer, the opaque candidate
    for ice-candidate, a count for viewer-count, a boolean for stream-status, the viewer id
    for viewer-joined/viewer-left, the connection id for connected and a text for error.
    """

    model_config = ConfigDict(frozen=True)

    kind: MessageKind
    stream_id: str | None = None
    from_id: str | None = None
    to_id: str | None = None
    payload: Any = None

    def to_frame(self) -> dict[str, Any]:
        kind = self.kind
        if kind == MessageKind.OFFER:
            data: Any = {"sdp": self.payload, "streamId": self.stream_id, "fromId": self.from_id}
            if self.to_id:
                data["toId"] = self.to_id
        elif kind == MessageKind.ANSWER:
            data = {"sdp": self.payload, "streamId": self.stream_id, "viewerId": self.from_id}
        elif kind == MessageKind.ICE_CANDIDATE:
            data = {"candidate": self.payload, "streamId": self.stream_id, "fromId": self.from_id}
            if self.to_id:
                data["toId"] = self.to_id
        elif kind in (MessageKind.VIEWER_JOINED, MessageKind.VIEWER_LEFT):
            data = {"viewerId": self.payload, "streamId": self.stream_id}
        elif kind == MessageKind.CONNECTED:
            data = {"connectionId": self.payload}
        elif kind in _STREAM_ID_EVENTS or kind in _ALIASES:
            data = self.stream_id
        else:
            data = self.payload

        return {"event": kind.value, "data": data}

    def encode(self) -> str:
        return orjson.dumps(self.to_frame()).decode()


class _WireData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stream_id: str | None = Field(default=None, alias="streamId")


class DescriptionData(_WireData):
    """Payload of offer/answer frames."""

    sdp: Any = Field(..., description="Opaque session description")
    from_id: str | None = Field(default=None, alias="fromId")
    to_id: str | None = Field(default=None, alias="toId")
    viewer_id: str | None = Field(default=None, alias="viewerId")

    @field_validator("sdp")
    @classmethod
    def _require_sdp(cls, v: Any) -> Any:
        if v is None or v == "" or v == {}:
            raise ValueError("sdp must not be empty")
        return v


class CandidateData(_WireData):
    """Payload of ice-candidate frames. A null candidate marks the end of candidates."""

    candidate: Any = Field(..., description="Opaque network candidate")
    from_id: str | None = Field(default=None, alias="fromId")
    to_id: str | None = Field(default=None, alias="toId")


class ViewerData(_WireData):
    viewer_id: str = Field(..., alias="viewerId")


def _stream_id_from(data: Any) -> str | None:
    if data is None:
        return None
    if isinstance(data, str):
        return data.strip() or None
    if isinstance(data, dict):
        value = data.get("streamId", data.get("stream_id"))
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("streamId must be a string")
        return value.strip() or None
    raise ValueError(f"unexpected stream id payload: {type(data).__name__}")


def _load_frame(raw: str | bytes | dict) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        frame = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise AppError(AppErrorCode.E_INVALID_MESSAGE, f"Frame is not valid JSON: {e}") from e
    if not isinstance(frame, dict):
        raise AppError(AppErrorCode.E_INVALID_MESSAGE, "Frame must be a JSON object")
    return frame


def parse_frame(raw: str | bytes | dict) -> SignalingMessage:
    """Decode one wire frame into a SignalingMessage.

    Aliased events are resolved to their canonical kind. Missing stream ids stay ``None`` so
    the receiver can apply its own default.

    Raises:
        AppError: E_INVALID_MESSAGE for unparseable frames, unknown events or bad payloads
    """
    frame = _load_frame(raw)

    event = frame.get("event", frame.get("type"))
    try:
        kind = MessageKind(event).canonical()
    except ValueError as e:
        raise AppError(AppErrorCode.E_INVALID_MESSAGE, f"Unknown event: {event!r}") from e

    if "data" in frame:
        data = frame["data"]
    else:
        data = {k: v for k, v in frame.items() if k not in ("event", "type")} or None

    try:
        if kind in _STREAM_ID_EVENTS:
            return SignalingMessage(kind=kind, stream_id=_stream_id_from(data))

        if kind in (MessageKind.OFFER, MessageKind.ANSWER):
            desc = DescriptionData.model_validate(data)
            from_id = desc.viewer_id if kind == MessageKind.ANSWER and desc.viewer_id else desc.from_id
            return SignalingMessage(
                kind=kind,
                stream_id=desc.stream_id,
                from_id=from_id,
                to_id=desc.to_id,
                payload=desc.sdp,
            )

        if kind == MessageKind.ICE_CANDIDATE:
            cand = CandidateData.model_validate(data)
            return SignalingMessage(
                kind=kind,
                stream_id=cand.stream_id,
                from_id=cand.from_id,
                to_id=cand.to_id,
                payload=cand.candidate,
            )

        if kind in (MessageKind.VIEWER_JOINED, MessageKind.VIEWER_LEFT):
            viewer = ViewerData.model_validate(data)
            return SignalingMessage(kind=kind, stream_id=viewer.stream_id, payload=viewer.viewer_id)

        if kind == MessageKind.VIEWER_COUNT:
            if isinstance(data, bool) or not isinstance(data, int) or data < 0:
                raise ValueError("viewer-count must be a non-negative integer")
            return SignalingMessage(kind=kind, payload=data)

        if kind == MessageKind.STREAM_STATUS:
            if not isinstance(data, bool):
                raise ValueError("stream-status must be a boolean")
            return SignalingMessage(kind=kind, payload=data)

        if kind == MessageKind.CONNECTED:
            if not isinstance(data, dict) or not data.get("connectionId"):
                raise ValueError("connected must carry a connectionId")
            return SignalingMessage(kind=kind, payload=data["connectionId"])

        return SignalingMessage(kind=kind, payload=None if data is None else str(data))

    except (ValidationError, ValueError) as e:
        raise AppError(
            AppErrorCode.E_INVALID_MESSAGE,
            f"Invalid payload for {kind.value}: {e}",
        ) from e


__all__ = [
    "CandidateData",
    "DescriptionData",
    "MessageKind",
    "SignalingMessage",
    "parse_frame",
]
