"""Base exceptions for the pairlink broker.

Every error carries a stable ``code`` that is sent to mobiles on the wire
and stored in ``RemoteState.error``.
"""


class BrokerError(Exception):
    """Base exception for all broker errors."""

    code = "broker_error"


class PinError(BrokerError):
    """Pairing PIN rejected."""

    code = "pin_error"


class InvalidPinError(PinError):
    """No PIN on record, or the code does not match."""

    code = "invalid_pin"


class ExpiredPinError(PinError):
    """PIN presented after its expiry."""

    code = "expired_pin"


class AlreadyConsumedPinError(PinError):
    """PIN was already used by another handshake."""

    code = "already_consumed_pin"


class DuplicateMobileIdError(BrokerError):
    """Mobile id is already registered."""

    code = "duplicate_mobile_id"


class UnknownMobileError(BrokerError):
    """Mobile id is not registered."""

    code = "unknown_mobile"


class UnknownWorkspaceError(BrokerError):
    """Workspace id is not offered by the workspace provider."""

    code = "unknown_workspace"


class TooManyMobilesError(BrokerError):
    """Connection limit reached."""

    code = "too_many_mobiles"


class NotReadyError(BrokerError):
    """Broker is not accepting mobiles (endpoint not armed)."""

    code = "not_ready"


class EndpointArmFailure(BrokerError):
    """Listening endpoint could not be opened."""

    code = "endpoint_arm_failure"


class TransportFault(BrokerError):
    """Unrecoverable transport fault."""

    code = "transport_fault"


class InvalidTransitionError(BrokerError, ValueError):
    """State machine asked to take an edge it does not have."""

    code = "invalid_transition"


class StorageError(BrokerError):
    """Identity storage operation failed."""

    code = "storage_error"


class UnknownSessionError(BrokerError):
    """Session does not exist, is not owned by the caller, or has no terminal."""

    code = "unknown_session"


class TerminalError(BrokerError):
    """Session terminal could not be started or written to."""

    code = "terminal_error"
