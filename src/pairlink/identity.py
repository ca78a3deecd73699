"""Persistent device identity for the broker.

The identity is the stable pairing target mobiles see across restarts.
It is generated once (memorable ``adjective-animal-NN`` form, seeded from
the host machine id) and stored as JSON with owner-only permissions.
"""

import json
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Optional

from pairlink.errors import StorageError

logger = logging.getLogger(__name__)

ADJECTIVES = [
    "swift", "brave", "calm", "dark", "eager", "fair", "glad", "happy",
    "keen", "light", "mild", "noble", "plain", "quick", "rich", "safe",
    "tame", "vast", "warm", "young", "bold", "cool", "deep", "fine",
    "gold", "high", "iron", "jade", "kind", "loud", "mega", "neat",
    "open", "pure", "rare", "soft", "true", "unit", "vivid", "wise",
    "zero", "azure", "black", "coral", "dawn", "east", "frost", "green",
    "haze", "ivory", "jet", "khaki", "lunar", "maple", "north", "olive",
    "pearl", "quartz", "ruby", "sand", "teal", "ultra", "violet", "white",
    "xray", "yellow", "zinc", "amber", "blue", "cream", "dusk", "ember",
    "fawn", "gray", "honey", "indigo", "jasper", "kiwi", "lime", "mint",
]

ANIMALS = [
    "tiger", "eagle", "wolf", "bear", "fox", "hawk", "lion", "deer",
    "owl", "swan", "crow", "duck", "fish", "goat", "hare", "ibis",
    "jay", "kite", "lark", "mole", "newt", "orca", "puma", "quail",
    "raven", "seal", "toad", "viper", "wren", "yak", "zebra", "ant",
    "bat", "cat", "dog", "eel", "frog", "gull", "hen", "iguana",
    "jackal", "koala", "lynx", "mouse", "narwhal", "otter", "panda", "robin",
    "shark", "turtle", "urchin", "vulture", "whale", "xerus", "yeti", "zorro",
    "alpaca", "bison", "cobra", "dragon", "elk", "falcon", "gecko", "hippo",
    "impala", "jaguar", "kiwi", "lemur", "moose", "nautilus", "osprey", "python",
]

DEVICE_ID_PATTERN = re.compile(r"^[a-z]+-[a-z]+-\d{2}$")

MACHINE_ID_PATHS = (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id"))


@dataclass(frozen=True)
class DeviceIdentity:
    """Local device identity.

    Attributes:
        device_id: Stable identifier (e.g. "swift-tiger-42").
        device_name: Human label; defaults to the device id.
        created_at: Unix timestamp when the id was generated.
    """

    device_id: str
    device_name: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "DeviceIdentity":
        """Create from dictionary."""
        device_id = d["device_id"]
        return cls(
            device_id=device_id,
            device_name=d.get("device_name") or device_id,
            created_at=float(d.get("created_at", 0.0)),
        )


def read_machine_id() -> Optional[str]:
    """Read the host machine id, or None if unavailable."""
    for path in MACHINE_ID_PATHS:
        try:
            value = path.read_text().strip()
        except OSError:
            continue
        if value:
            return value
    return None


def device_id_from_seed(seed: int) -> str:
    """Derive a memorable device id from a numeric seed."""
    adjective = ADJECTIVES[seed % len(ADJECTIVES)]
    animal = ANIMALS[(seed // len(ADJECTIVES)) % len(ANIMALS)]
    return f"{adjective}-{animal}-{seed % 100:02d}"


def random_device_id() -> str:
    return (
        f"{secrets.choice(ADJECTIVES)}-{secrets.choice(ANIMALS)}"
        f"-{secrets.randbelow(100):02d}"
    )


def generate_device_id(machine_id_reader: Callable[[], Optional[str]] = read_machine_id) -> str:
    """Generate a device id seeded by the machine id.

    Falls back to a random id when the machine id is missing or malformed.
    """
    machine_id = machine_id_reader()
    if machine_id:
        try:
            return device_id_from_seed(int(machine_id[:8], 16))
        except ValueError:
            logger.warning("Malformed machine id, using random device id")
    return random_device_id()


class IdentityStore:
    """JSON file-backed storage for the device identity."""

    def __init__(
        self,
        path: Path,
        machine_id_reader: Callable[[], Optional[str]] = read_machine_id,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize identity store.

        Args:
            path: Path to the identity JSON file.
            machine_id_reader: Source of the machine id seed.
            clock: Time source for created_at.
        """
        self.path = Path(path).expanduser()
        self._machine_id_reader = machine_id_reader
        self._clock = clock

    def load(self) -> Optional[DeviceIdentity]:
        """Load the identity, or None if none was stored yet.

        Raises:
            StorageError: If the file exists but is unreadable or malformed.
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
            identity = DeviceIdentity.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to load identity from {self.path}: {e}") from e

        if not DEVICE_ID_PATTERN.match(identity.device_id):
            raise StorageError(f"Invalid device id in {self.path}: {identity.device_id}")
        return identity

    def save(self, identity: DeviceIdentity) -> None:
        """Write the identity with owner-only permissions.

        Raises:
            StorageError: If the file cannot be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            os.chmod(self.path.parent, 0o700)

            data = json.dumps(identity.to_dict(), indent=2)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, data.encode())
            finally:
                os.close(fd)
            os.chmod(self.path, 0o600)
        except OSError as e:
            raise StorageError(f"Failed to save identity to {self.path}: {e}") from e

    def load_or_create(self) -> DeviceIdentity:
        """Load the stored identity, generating and persisting one if absent."""
        identity = self.load()
        if identity is not None:
            return identity

        device_id = generate_device_id(self._machine_id_reader)
        identity = DeviceIdentity(
            device_id=device_id,
            device_name=device_id,
            created_at=self._clock(),
        )
        self.save(identity)
        logger.info(f"Generated new device id: {device_id}")
        return identity

    def rename(self, name: str) -> DeviceIdentity:
        """Set a custom device name."""
        name = name.strip()
        if not name:
            raise ValueError("Device name cannot be empty")
        identity = replace(self.load_or_create(), device_name=name)
        self.save(identity)
        return identity

    def reset(self) -> DeviceIdentity:
        """Replace the device id with a new random one.

        A custom name survives the reset; a default name follows the new id.
        """
        old = self.load()
        device_id = random_device_id()
        if old is not None and old.device_name != old.device_id:
            name = old.device_name
        else:
            name = device_id
        identity = DeviceIdentity(device_id=device_id, device_name=name, created_at=self._clock())
        self.save(identity)
        logger.info(f"Reset device id: {device_id}")
        return identity
