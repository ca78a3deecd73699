"""Table of workspace sessions opened by connected mobiles."""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from pairlink.errors import UnknownMobileError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Workspace:
    """A desktop workspace a mobile may open a session on."""

    id: str
    name: str
    path: str = ""
    branch: Optional[str] = None
    is_worktree: bool = False


@dataclass(frozen=True)
class Session:
    """A workspace session owned by one mobile connection."""

    id: str
    mobile_id: str
    workspace_id: str
    workspace_name: str
    created_at: float


class SessionTable:
    """Ordered table of sessions keyed by session id.

    Sessions may only be opened for mobiles the registry knows about
    (checked through ``is_registered``). Every removal, single or cascaded,
    is reported to ``on_close`` so resources bound to a session go with it.
    Not thread-safe on its own; the broker serializes every call under its
    lock.
    """

    def __init__(
        self,
        is_registered: Callable[[str], bool],
        clock: Callable[[], float] = time.time,
        on_close: Optional[Callable[[Session], None]] = None,
    ):
        """Initialize empty table.

        Args:
            is_registered: Returns True if a mobile id is currently registered.
            clock: Time source (epoch seconds).
            on_close: Called with each session as it leaves the table.
        """
        self._is_registered = is_registered
        self._clock = clock
        self._on_close = on_close
        self._sessions: dict[str, Session] = {}

    def open(self, mobile_id: str, workspace_id: str, workspace_name: str) -> Session:
        """Open a session for a registered mobile.

        Raises:
            UnknownMobileError: If mobile_id is not registered.
        """
        if not self._is_registered(mobile_id):
            raise UnknownMobileError(f"Unknown mobile: {mobile_id}")

        session = Session(
            id=str(uuid.uuid4()),
            mobile_id=mobile_id,
            workspace_id=workspace_id,
            workspace_name=workspace_name,
            created_at=self._clock(),
        )
        self._sessions[session.id] = session
        logger.debug(f"Session opened: {session.id} ({workspace_name})")
        return session

    def close(self, session_id: str) -> Optional[Session]:
        """Close a session. Returns the removed session, or None if absent."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            self._closed(session)
        return session

    def close_all_for(self, mobile_id: str) -> list[Session]:
        """Remove every session owned by mobile_id in one step."""
        removed = [s for s in self._sessions.values() if s.mobile_id == mobile_id]
        for session in removed:
            del self._sessions[session.id]
        for session in removed:
            self._closed(session)
        if removed:
            logger.debug(f"Closed {len(removed)} sessions for {mobile_id}")
        return removed

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def all(self) -> list[Session]:
        """Sessions in creation order."""
        return list(self._sessions.values())

    def _closed(self, session: Session) -> None:
        if self._on_close is not None:
            self._on_close(session)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
