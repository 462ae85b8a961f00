"""Session domain models."""

from dataclasses import dataclass, field

from pydantic import BaseModel


@dataclass(frozen=True)
class Unassigned:
    """Connection that has not started or joined any stream yet."""


@dataclass(frozen=True)
class BroadcasterRole:
    stream_id: str


@dataclass(frozen=True)
class ViewerRole:
    stream_id: str


ConnectionRole = Unassigned | BroadcasterRole | ViewerRole

UNASSIGNED = Unassigned()


@dataclass
class StreamSession:
    """Mutable session state owned by the registry."""

    stream_id: str
    broadcaster_id: str | None = None
    viewer_ids: set[str] = field(default_factory=set)
    active: bool = False

    def snapshot(self) -> "SessionResponse":
        return SessionResponse(
            stream_id=self.stream_id,
            broadcaster_id=self.broadcaster_id,
            active=self.active,
            viewer_count=len(self.viewer_ids),
        )


class SessionResponse(BaseModel):
    """Read-only view of one session."""

    stream_id: str
    broadcaster_id: str | None = None
    active: bool
    viewer_count: int


@dataclass(frozen=True)
class BroadcasterRegistration:
    """Outcome of register_broadcaster.

    ``replaced_id`` is the broadcaster that held the session before this registration, if
    it was a different connection.
    """

    stream_id: str
    viewer_ids: frozenset[str]
    replaced_id: str | None = None


@dataclass(frozen=True)
class ViewerRegistration:
    stream_id: str
    active: bool
    broadcaster_id: str | None
    viewer_count: int


@dataclass(frozen=True)
class BroadcasterLeft:
    """The removed connection was the broadcaster; the session is gone."""

    stream_id: str
    viewer_ids: frozenset[str]


@dataclass(frozen=True)
class ViewerLeft:
    """The removed connection was a viewer; ``broadcaster_id`` is who to tell the new count."""

    stream_id: str
    viewer_id: str
    viewer_count: int
    broadcaster_id: str | None


RemovalResult = BroadcasterLeft | ViewerLeft | None
