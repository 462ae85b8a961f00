from pydantic import BaseModel, Field

from .base import ListOut


class StreamOut(BaseModel):
    stream_id: str
    broadcaster_id: str | None = Field(default=None, description="Connection id of the broadcaster")
    active: bool = Field(description="True while a broadcaster is live")
    viewer_count: int = Field(ge=0)


class ListStreamsOut(ListOut[StreamOut]):
    active: int = Field(description="Number of live streams")
