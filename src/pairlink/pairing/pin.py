"""Single-use pairing PINs.

Only one PIN exists at a time. Issuing a new one forgets the previous
code entirely; a consumed or expired PIN stays on record so a late
attempt with its code gets a specific reason.
"""

import logging
import secrets
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from pairlink.errors import AlreadyConsumedPinError, ExpiredPinError, InvalidPinError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairingPin:
    """A pairing code and its lifetime.

    Attributes:
        code: Fixed-width numeric string.
        created_at: Unix timestamp when issued.
        expires_at: Unix timestamp after which validation fails.
        consumed: True once a handshake used it.
    """

    code: str
    created_at: float
    expires_at: float
    consumed: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_active(self, now: float) -> bool:
        return not self.consumed and not self.is_expired(now)


class PinIssuer:
    """Issues and validates pairing PINs for the local device."""

    DEFAULT_LENGTH = 6
    DEFAULT_TTL = 300.0  # 5 minutes

    def __init__(
        self,
        length: int = DEFAULT_LENGTH,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize issuer.

        Args:
            length: Number of digits per code.
            ttl: PIN lifetime in seconds.
            clock: Time source (epoch seconds).
        """
        if length < 4:
            raise ValueError(f"PIN length too short: {length}")
        self.length = length
        self.ttl = ttl
        self._clock = clock
        self._pin: Optional[PairingPin] = None
        self._swept = False

    @property
    def active(self) -> Optional[PairingPin]:
        """The active PIN, or None."""
        pin = self._pin
        if pin is None or self._swept or not pin.is_active(self._clock()):
            return None
        return pin

    def issue(self) -> PairingPin:
        """Issue a new PIN, invalidating any previous one."""
        code = f"{secrets.randbelow(10 ** self.length):0{self.length}d}"
        now = self._clock()
        self._pin = PairingPin(code=code, created_at=now, expires_at=now + self.ttl)
        self._swept = False
        logger.info(f"Pairing PIN issued (expires in {self.ttl:.0f}s)")
        return self._pin

    def validate(self, code: str) -> PairingPin:
        """Validate and consume a PIN.

        Returns:
            The consumed PIN.

        Raises:
            InvalidPinError: No PIN on record or code mismatch.
            ExpiredPinError: Presented after expiry.
            AlreadyConsumedPinError: PIN already used.
        """
        pin = self._pin
        if pin is None or not secrets.compare_digest(
            code.encode("utf-8"), pin.code.encode("utf-8")
        ):
            raise InvalidPinError("Invalid PIN")
        if pin.consumed:
            raise AlreadyConsumedPinError("PIN already used")
        if pin.is_expired(self._clock()):
            raise ExpiredPinError("PIN expired")

        self._pin = replace(pin, consumed=True)
        logger.info("Pairing PIN consumed")
        return self._pin

    def sweep(self) -> bool:
        """Drop an expired PIN from active status.

        Returns:
            True if a PIN stopped being active because of this sweep.
        """
        pin = self._pin
        if pin is None or self._swept or pin.consumed:
            return False
        if not pin.is_expired(self._clock()):
            return False
        self._swept = True
        logger.info("Pairing PIN expired")
        return True

    def clear(self) -> None:
        """Forget any PIN."""
        self._pin = None
        self._swept = False
