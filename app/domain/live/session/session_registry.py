"""In-memory session registry.

Maps stream ids to session state and connection ids to their role. Pure state: no I/O, no
notifications. Every operation either completes or raises ``AppError`` without mutating.
"""

from loguru import logger

from app.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

from .session_models import (
    UNASSIGNED,
    BroadcasterLeft,
    BroadcasterRegistration,
    BroadcasterRole,
    ConnectionRole,
    RemovalResult,
    SessionResponse,
    StreamSession,
    ViewerLeft,
    ViewerRegistration,
    ViewerRole,
)


class SessionRegistry:
    """Stream sessions and connection roles for one relay instance.

    Invariants:
    - a session has at most one broadcaster; ``active`` implies a broadcaster
    - a connection holds at most one role; a viewer in ``viewer_ids`` has a ViewerRole for
      that same stream
    - a session with no broadcaster and no viewers is dropped
    """

    def __init__(self):
        self._sessions: dict[str, StreamSession] = {}
        self._roles: dict[str, BroadcasterRole | ViewerRole] = {}
        self._closed = False

    def close(self) -> None:
        """Drop every session and role. The registry cannot be used afterwards."""
        logger.info(
            "Closing session registry: sessions={} roles={}",
            len(self._sessions),
            len(self._roles),
        )
        self._sessions.clear()
        self._roles.clear()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # ==================== QUERIES ====================

    def role_of(self, conn_id: str) -> ConnectionRole:
        return self._roles.get(conn_id, UNASSIGNED)

    def get_session(self, stream_id: str) -> SessionResponse | None:
        session = self._sessions.get(stream_id)
        return session.snapshot() if session else None

    def list_sessions(self) -> list[SessionResponse]:
        return [s.snapshot() for s in sorted(self._sessions.values(), key=lambda s: s.stream_id)]

    def broadcaster_of(self, stream_id: str) -> str | None:
        session = self._sessions.get(stream_id)
        return session.broadcaster_id if session else None

    def viewer_ids(self, stream_id: str) -> frozenset[str]:
        session = self._sessions.get(stream_id)
        return frozenset(session.viewer_ids) if session else frozenset()

    def viewer_count(self, stream_id: str) -> int:
        session = self._sessions.get(stream_id)
        return len(session.viewer_ids) if session else 0

    def get_stats(self) -> dict[str, int]:
        return {
            "streams": len(self._sessions),
            "active_streams": sum(1 for s in self._sessions.values() if s.active),
            "viewers": sum(len(s.viewer_ids) for s in self._sessions.values()),
        }

    # ==================== MUTATIONS ====================

    def register_broadcaster(self, stream_id: str, conn_id: str) -> BroadcasterRegistration:
        """Make ``conn_id`` the broadcaster of ``stream_id`` and mark the session active.

        Last writer wins: a different broadcaster already holding the session is replaced
        and loses its role. Its connection is left open; the caller decides what to tell it.

        Raises:
            AppError: E_INVALID_REQUEST if the connection holds a role on another stream or
                is a viewer
        """
        self._ensure_open()
        self._check_role_free(conn_id, BroadcasterRole(stream_id))

        session = self._sessions.get(stream_id)
        if session is None:
            session = StreamSession(stream_id=stream_id)
            self._sessions[stream_id] = session
            logger.debug("Session {} created by broadcaster {}", stream_id, conn_id)

        replaced_id = None
        if session.broadcaster_id is not None and session.broadcaster_id != conn_id:
            replaced_id = session.broadcaster_id
            self._roles.pop(replaced_id, None)
            logger.warning(
                "Broadcaster {} replaced by {} on stream {}", replaced_id, conn_id, stream_id
            )

        session.broadcaster_id = conn_id
        session.active = True
        self._roles[conn_id] = BroadcasterRole(stream_id)

        return BroadcasterRegistration(
            stream_id=stream_id,
            viewer_ids=frozenset(session.viewer_ids),
            replaced_id=replaced_id,
        )

    def register_viewer(self, stream_id: str, conn_id: str) -> ViewerRegistration:
        """Add ``conn_id`` to the viewers of ``stream_id``, creating an inactive session if needed.

        Joining the same stream twice is a no-op.

        Raises:
            AppError: E_INVALID_REQUEST if the connection holds any other role
        """
        self._ensure_open()
        self._check_role_free(conn_id, ViewerRole(stream_id))

        session = self._sessions.get(stream_id)
        if session is None:
            session = StreamSession(stream_id=stream_id, active=False)
            self._sessions[stream_id] = session
            logger.debug("Session {} created by viewer {}", stream_id, conn_id)

        session.viewer_ids.add(conn_id)
        self._roles[conn_id] = ViewerRole(stream_id)

        return ViewerRegistration(
            stream_id=stream_id,
            active=session.active,
            broadcaster_id=session.broadcaster_id,
            viewer_count=len(session.viewer_ids),
        )

    def remove_connection(self, conn_id: str) -> RemovalResult:
        """Detach ``conn_id`` from whatever it holds.

        Returns:
            BroadcasterLeft with the former viewers when it was the broadcaster (the session
            is removed), ViewerLeft with the new count when it was a viewer, None when the
            connection held no role.
        """
        role = self._roles.pop(conn_id, None)
        if role is None:
            return None

        session = self._sessions.get(role.stream_id)
        if session is None:
            logger.warning("Connection {} had role {} without a session", conn_id, role)
            return None

        if isinstance(role, BroadcasterRole):
            viewer_ids = self._drop_session(session)
            return BroadcasterLeft(stream_id=session.stream_id, viewer_ids=viewer_ids)

        session.viewer_ids.discard(conn_id)
        viewer_count = len(session.viewer_ids)
        broadcaster_id = session.broadcaster_id
        if broadcaster_id is None and not session.viewer_ids:
            del self._sessions[session.stream_id]
            logger.debug("Session {} dropped: no broadcaster and no viewers", session.stream_id)

        return ViewerLeft(
            stream_id=session.stream_id,
            viewer_id=conn_id,
            viewer_count=viewer_count,
            broadcaster_id=broadcaster_id,
        )

    def end_stream(self, stream_id: str, requester_id: str) -> frozenset[str]:
        """End ``stream_id`` on behalf of its broadcaster.

        Returns:
            The viewer ids that must be told the stream ended

        Raises:
            AppError: E_SESSION_NOT_FOUND if there is no such session, E_NOT_STREAM_OWNER if
                the requester is not its broadcaster (nothing is changed)
        """
        session = self._sessions.get(stream_id)
        if session is None:
            raise AppError(
                errcode=AppErrorCode.E_SESSION_NOT_FOUND,
                errmesg=f"Stream not found: {stream_id}",
                status_code=HttpStatusCode.NOT_FOUND,
            )

        if session.broadcaster_id is None or session.broadcaster_id != requester_id:
            raise AppError(
                errcode=AppErrorCode.E_NOT_STREAM_OWNER,
                errmesg=f"Only the broadcaster can end stream {stream_id}",
                status_code=HttpStatusCode.FORBIDDEN,
            )

        self._roles.pop(requester_id, None)
        return self._drop_session(session)

    # ==================== INTERNALS ====================

    def _drop_session(self, session: StreamSession) -> frozenset[str]:
        viewer_ids = frozenset(session.viewer_ids)
        for viewer_id in viewer_ids:
            self._roles.pop(viewer_id, None)
        session.viewer_ids.clear()
        session.active = False
        session.broadcaster_id = None
        self._sessions.pop(session.stream_id, None)
        logger.debug("Session {} removed, released {} viewers", session.stream_id, len(viewer_ids))
        return viewer_ids

    def _check_role_free(self, conn_id: str, wanted: BroadcasterRole | ViewerRole) -> None:
        current = self._roles.get(conn_id)
        if current is None or current == wanted:
            return
        raise AppError(
            errcode=AppErrorCode.E_INVALID_REQUEST,
            errmesg=f"Connection {conn_id} already holds {current}, cannot take {wanted}",
        )

    def _ensure_open(self) -> None:
        if self._closed:
            raise AppError(
                errcode=AppErrorCode.E_INTERNAL_ERROR,
                errmesg="Session registry is closed",
                status_code=HttpStatusCode.SERVICE_UNAVAILABLE,
            )
