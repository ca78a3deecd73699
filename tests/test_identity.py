"""Tests for device identity persistence."""

import json
import os
import stat

import pytest

from pairlink.errors import StorageError
from pairlink.identity import (
    ADJECTIVES,
    ANIMALS,
    DEVICE_ID_PATTERN,
    DeviceIdentity,
    IdentityStore,
    device_id_from_seed,
    generate_device_id,
    random_device_id,
)

MACHINE_ID = "0a1b2c3d4e5f60718293a4b5c6d7e8f9"


@pytest.fixture
def store(tmp_path, clock):
    return IdentityStore(
        tmp_path / "pairlink" / "identity.json",
        machine_id_reader=lambda: MACHINE_ID,
        clock=clock,
    )


class TestDeviceIdGeneration:
    """Test memorable device ids."""

    def test_seeded_id_is_deterministic(self):
        assert generate_device_id(lambda: MACHINE_ID) == generate_device_id(lambda: MACHINE_ID)

    def test_seeded_id_format(self):
        device_id = device_id_from_seed(int(MACHINE_ID[:8], 16))
        assert DEVICE_ID_PATTERN.match(device_id)
        adjective, animal, number = device_id.split("-")
        assert adjective in ADJECTIVES
        assert animal in ANIMALS
        assert len(number) == 2

    def test_seed_components(self):
        seed = len(ADJECTIVES) * 3 + 5
        assert device_id_from_seed(seed) == f"{ADJECTIVES[5]}-{ANIMALS[3]}-{seed % 100:02d}"

    def test_missing_machine_id_falls_back_to_random(self):
        assert DEVICE_ID_PATTERN.match(generate_device_id(lambda: None))

    def test_malformed_machine_id_falls_back_to_random(self):
        assert DEVICE_ID_PATTERN.match(generate_device_id(lambda: "not-hex!"))

    def test_random_id_format(self):
        for _ in range(20):
            assert DEVICE_ID_PATTERN.match(random_device_id())


class TestDeviceIdentity:
    """Test identity serialization."""

    def test_round_trip_dict(self):
        identity = DeviceIdentity("swift-tiger-42", "Workstation", 1000.0)
        assert DeviceIdentity.from_dict(identity.to_dict()) == identity

    def test_name_defaults_to_id(self):
        identity = DeviceIdentity.from_dict({"device_id": "swift-tiger-42"})
        assert identity.device_name == "swift-tiger-42"


class TestIdentityStore:
    """Test identity storage."""

    def test_load_missing(self, store):
        assert store.load() is None

    def test_load_or_create(self, store, clock):
        identity = store.load_or_create()

        assert identity.device_id == generate_device_id(lambda: MACHINE_ID)
        assert identity.device_name == identity.device_id
        assert identity.created_at == clock.now
        assert store.load() == identity

    def test_load_or_create_is_stable(self, store):
        assert store.load_or_create() == store.load_or_create()

    def test_file_permissions(self, store):
        store.load_or_create()

        assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(store.path.parent).st_mode) == 0o700

    def test_malformed_file(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        with pytest.raises(StorageError):
            store.load()

    def test_missing_field(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"device_name": "x"}))
        with pytest.raises(StorageError):
            store.load()

    def test_invalid_device_id(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"device_id": "Not A Valid Id"}))
        with pytest.raises(StorageError):
            store.load()

    def test_rename(self, store):
        original = store.load_or_create()
        renamed = store.rename("  Office Desktop ")

        assert renamed.device_name == "Office Desktop"
        assert renamed.device_id == original.device_id
        assert store.load() == renamed

    def test_rename_empty(self, store):
        with pytest.raises(ValueError):
            store.rename("   ")

    def test_reset_default_name_follows_id(self, store, monkeypatch):
        store.load_or_create()
        monkeypatch.setattr("pairlink.identity.random_device_id", lambda: "calm-otter-07")

        identity = store.reset()

        assert identity.device_id == "calm-otter-07"
        assert identity.device_name == "calm-otter-07"
        assert store.load() == identity

    def test_reset_keeps_custom_name(self, store, monkeypatch):
        store.rename("Office Desktop")
        monkeypatch.setattr("pairlink.identity.random_device_id", lambda: "calm-otter-07")

        identity = store.reset()

        assert identity.device_id == "calm-otter-07"
        assert identity.device_name == "Office Desktop"
