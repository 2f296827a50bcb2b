"""
Session Manager
===============
Owns the map of live sessions. All mutation goes through ``create``,
``activate`` and ``remove`` so live ids stay unique. Closed sessions leave
nothing behind.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from .transport import SessionTransport

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Session:
    id: str
    transport: SessionTransport
    status: SessionStatus = SessionStatus.INITIALIZING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def new_session_id() -> str:
    return str(uuid.uuid4())


class SessionManager:
    def __init__(self, id_factory: Callable[[], str] = new_session_id):
        self._sessions: Dict[str, Session] = {}
        self._new_id = id_factory

    def create(self, transport_factory: Callable[[str], SessionTransport]) -> Session:
        """
        Generate an id, bind a transport to it and register the session.

        The session is registered here, once, in the INITIALIZING state; the
        id is usable for response headers from this point on.
        """
        session_id = self._new_id()
        if session_id in self._sessions:
            raise RuntimeError(f"Session id {session_id} is already in use")
        session = Session(id=session_id, transport=transport_factory(session_id))
        self._sessions[session_id] = session
        logger.info(f"Session created: {session_id}")
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def activate(self, session_id: str) -> bool:
        """INITIALIZING -> ACTIVE. Returns False for unknown or closed ids."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if session.status is SessionStatus.INITIALIZING:
            session.status = SessionStatus.ACTIVE
            logger.info(f"Session activated: {session_id}")
        return True

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        session.status = SessionStatus.CLOSED
        logger.info(f"Session closed: {session_id}")
        return session

    def discard_pending(self, session_id: str) -> bool:
        """Close the session if it is still INITIALIZING. Returns True when it was dropped."""
        session = self._sessions.get(session_id)
        if session is None or session.status is not SessionStatus.INITIALIZING:
            return False
        logger.info(f"Session {session_id} was not initialized; discarding")
        session.transport.close()
        self.remove(session_id)
        return True

    def close_all(self) -> int:
        """Close every live session; returns how many were closed."""
        ids: List[str] = list(self._sessions)
        for session_id in ids:
            session = self._sessions.get(session_id)
            if session is not None:
                session.transport.close()
            self.remove(session_id)
        return len(ids)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
