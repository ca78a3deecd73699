"""Broker connection state machine and the RemoteState snapshot."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pairlink.errors import InvalidTransitionError
from pairlink.registry import MobileConnection
from pairlink.sessions import Session

logger = logging.getLogger(__name__)


class RemoteStatus(Enum):
    """Broker connection status."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class RemoteState:
    """Immutable point-in-time view of the broker.

    Attributes:
        status: Current connection status.
        device_id: Local device identifier.
        device_name: Local device label.
        connected_mobiles: Mobiles in registration order.
        active_sessions: Sessions in creation order.
        error: Cause code when status is ERROR, else None.
        pin_expires_at: Expiry of the active pairing PIN, or None.
    """

    status: RemoteStatus
    device_id: str
    device_name: str
    connected_mobiles: tuple[MobileConnection, ...] = ()
    active_sessions: tuple[Session, ...] = ()
    error: Optional[str] = None
    pin_expires_at: Optional[float] = None

    @property
    def mobile_count(self) -> int:
        return len(self.connected_mobiles)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization (camelCase, ms)."""
        return {
            "status": self.status.value,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "mobileCount": self.mobile_count,
            "connectedMobiles": [
                {
                    "mobileId": m.mobile_id,
                    "connectedAt": _ms(m.connected_at),
                    "lastActivity": _ms(m.last_activity),
                }
                for m in self.connected_mobiles
            ],
            "activeSessions": [
                {
                    "id": s.id,
                    "mobileId": s.mobile_id,
                    "workspaceId": s.workspace_id,
                    "workspaceName": s.workspace_name,
                    "createdAt": _ms(s.created_at),
                }
                for s in self.active_sessions
            ],
            "error": self.error,
            "pinExpiresAt": _ms(self.pin_expires_at) if self.pin_expires_at else None,
        }


def _ms(timestamp: float) -> int:
    return int(timestamp * 1000)


class ConnectionStateMachine:
    """Single authoritative broker status.

    A pure reactor: it never retries or moves on its own. The broker asks
    for transitions and this class rejects edges that do not exist.
    """

    VALID_TRANSITIONS = {
        RemoteStatus.DISCONNECTED: {RemoteStatus.CONNECTING, RemoteStatus.ERROR},
        RemoteStatus.CONNECTING: {
            RemoteStatus.CONNECTED,
            RemoteStatus.DISCONNECTED,
            RemoteStatus.ERROR,
        },
        RemoteStatus.CONNECTED: {RemoteStatus.DISCONNECTED, RemoteStatus.ERROR},
        RemoteStatus.ERROR: {RemoteStatus.CONNECTING, RemoteStatus.DISCONNECTED},
    }

    def __init__(self):
        self._status = RemoteStatus.DISCONNECTED
        self._error: Optional[str] = None

    @property
    def status(self) -> RemoteStatus:
        return self._status

    @property
    def error(self) -> Optional[str]:
        """Cause code of the current ERROR state."""
        return self._error

    def can_transition(self, new_status: RemoteStatus) -> bool:
        return new_status in self.VALID_TRANSITIONS[self._status]

    def transition_to(self, new_status: RemoteStatus, error: Optional[str] = None) -> None:
        """Transition to a new status with validation.

        Args:
            new_status: Target status.
            error: Cause code, required context for ERROR.

        Raises:
            InvalidTransitionError: If the edge does not exist.
        """
        if not self.can_transition(new_status):
            raise InvalidTransitionError(
                f"Invalid transition: {self._status.value} -> {new_status.value}"
            )

        logger.debug(f"Status {self._status.value} -> {new_status.value}")
        self._status = new_status
        self._error = error if new_status == RemoteStatus.ERROR else None
