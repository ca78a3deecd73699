"""Track connected mobile clients and their liveness."""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from pairlink.errors import DuplicateMobileIdError, UnknownMobileError
from pairlink.sessions import SessionTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MobileConnection:
    """A paired mobile client.

    Frozen so snapshots can hold it directly; ``touch`` swaps in a
    new record.
    """

    mobile_id: str
    connected_at: float
    last_activity: float


class ConnectionRegistry:
    """Ordered registry of connected mobiles.

    Removing a mobile cascades to the session table so no session
    outlives its owner. The broker serializes every call under its lock.
    """

    def __init__(
        self,
        sessions: SessionTable,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize registry.

        Args:
            sessions: Session table to cascade removals into.
            clock: Time source (epoch seconds).
        """
        self._sessions = sessions
        self._clock = clock
        self._connections: dict[str, MobileConnection] = {}

    def register(self, mobile_id: str) -> MobileConnection:
        """Register a newly paired mobile.

        Raises:
            DuplicateMobileIdError: If mobile_id is already registered.
        """
        if mobile_id in self._connections:
            raise DuplicateMobileIdError(f"Mobile already registered: {mobile_id}")

        now = self._clock()
        conn = MobileConnection(mobile_id=mobile_id, connected_at=now, last_activity=now)
        self._connections[mobile_id] = conn
        logger.info(f"Mobile registered: {mobile_id}")
        return conn

    def touch(self, mobile_id: str) -> MobileConnection:
        """Record activity for a mobile.

        Raises:
            UnknownMobileError: If mobile_id is not registered.
        """
        conn = self._connections.get(mobile_id)
        if conn is None:
            raise UnknownMobileError(f"Unknown mobile: {mobile_id}")

        # Clock may step backwards; keep last_activity >= connected_at.
        now = max(self._clock(), conn.connected_at)
        conn = replace(conn, last_activity=now)
        self._connections[mobile_id] = conn
        return conn

    def remove(self, mobile_id: str) -> Optional[MobileConnection]:
        """Remove a mobile and close its sessions.

        Idempotent: returns None if the mobile was not registered.
        """
        conn = self._connections.pop(mobile_id, None)
        if conn is None:
            return None

        self._sessions.close_all_for(mobile_id)
        logger.info(f"Mobile removed: {mobile_id}")
        return conn

    def stale(self, timeout: float) -> list[str]:
        """Ids of mobiles with no activity for longer than timeout."""
        now = self._clock()
        return [
            mobile_id
            for mobile_id, conn in self._connections.items()
            if now - conn.last_activity > timeout
        ]

    def clear(self) -> None:
        """Remove every mobile, cascading their sessions."""
        for mobile_id in list(self._connections):
            self.remove(mobile_id)

    def get(self, mobile_id: str) -> Optional[MobileConnection]:
        return self._connections.get(mobile_id)

    def all(self) -> list[MobileConnection]:
        """Connections in registration order."""
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, mobile_id: str) -> bool:
        return mobile_id in self._connections
