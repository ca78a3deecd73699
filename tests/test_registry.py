"""Tests for the connection registry and session table."""

import pytest

from pairlink.errors import DuplicateMobileIdError, UnknownMobileError
from pairlink.registry import ConnectionRegistry
from pairlink.sessions import SessionTable


@pytest.fixture
def tables(clock):
    """Registry and session table wired together as the broker does."""
    registry = None
    sessions = SessionTable(lambda mobile_id: mobile_id in registry, clock)
    registry = ConnectionRegistry(sessions, clock)
    return registry, sessions


@pytest.fixture
def registry(tables):
    return tables[0]


@pytest.fixture
def sessions(tables):
    return tables[1]


class TestConnectionRegistry:
    """Test mobile registration."""

    def test_register(self, registry, clock):
        conn = registry.register("m1")
        assert conn.mobile_id == "m1"
        assert conn.connected_at == clock.now
        assert conn.last_activity == clock.now
        assert "m1" in registry
        assert len(registry) == 1

    def test_register_duplicate(self, registry):
        registry.register("m1")
        with pytest.raises(DuplicateMobileIdError):
            registry.register("m1")

    def test_registration_order(self, registry):
        for mobile_id in ("m3", "m1", "m2"):
            registry.register(mobile_id)
        assert [c.mobile_id for c in registry.all()] == ["m3", "m1", "m2"]

    def test_touch_updates_activity(self, registry, clock):
        registry.register("m1")
        clock.advance(5)
        conn = registry.touch("m1")
        assert conn.last_activity == clock.now
        assert registry.get("m1").last_activity == clock.now

    def test_touch_clock_backwards(self, registry, clock):
        conn = registry.register("m1")
        clock.advance(-10)
        touched = registry.touch("m1")
        assert touched.last_activity >= touched.connected_at == conn.connected_at

    def test_touch_unknown(self, registry):
        with pytest.raises(UnknownMobileError):
            registry.touch("nope")

    def test_remove_is_idempotent(self, registry):
        registry.register("m1")
        assert registry.remove("m1").mobile_id == "m1"
        assert registry.remove("m1") is None
        assert registry.remove("never") is None

    def test_remove_cascades_sessions(self, registry, sessions):
        registry.register("m1")
        registry.register("m2")
        sessions.open("m1", "w1", "Proj")
        sessions.open("m1", "w2", "Other")
        kept = sessions.open("m2", "w1", "Proj")

        registry.remove("m1")

        assert all(s.mobile_id != "m1" for s in sessions.all())
        assert sessions.all() == [kept]

    def test_stale(self, registry, clock):
        registry.register("m1")
        clock.advance(30)
        registry.register("m2")
        clock.advance(31)
        assert registry.stale(60) == ["m1"]
        registry.touch("m1")
        assert registry.stale(60) == []

    def test_clear(self, registry, sessions):
        registry.register("m1")
        sessions.open("m1", "w1", "Proj")
        registry.clear()
        assert len(registry) == 0
        assert len(sessions) == 0


class TestSessionTable:
    """Test workspace sessions."""

    def test_open(self, registry, sessions, clock):
        registry.register("m1")
        session = sessions.open("m1", "w1", "Proj")
        assert session.mobile_id == "m1"
        assert session.workspace_id == "w1"
        assert session.workspace_name == "Proj"
        assert session.created_at == clock.now
        assert session.id in sessions

    def test_open_requires_registered_mobile(self, sessions):
        with pytest.raises(UnknownMobileError):
            sessions.open("ghost", "w1", "Proj")
        assert len(sessions) == 0

    def test_ids_are_unique(self, registry, sessions):
        registry.register("m1")
        ids = {sessions.open("m1", "w1", "Proj").id for _ in range(10)}
        assert len(ids) == 10

    def test_creation_order(self, registry, sessions):
        registry.register("m1")
        opened = [sessions.open("m1", f"w{i}", f"P{i}") for i in range(3)]
        assert sessions.all() == opened

    def test_close(self, registry, sessions):
        registry.register("m1")
        session = sessions.open("m1", "w1", "Proj")
        assert sessions.close(session.id) == session
        assert sessions.close(session.id) is None
        assert sessions.get(session.id) is None

    def test_close_reports_to_hook(self, clock):
        closed = []
        registry = None
        sessions = SessionTable(
            lambda mobile_id: mobile_id in registry, clock, on_close=closed.append
        )
        registry = ConnectionRegistry(sessions, clock)
        registry.register("m1")
        session = sessions.open("m1", "w1", "Proj")

        sessions.close(session.id)
        sessions.close(session.id)

        assert closed == [session]

    def test_cascade_reports_each_session(self, clock):
        closed = []
        registry = None
        sessions = SessionTable(
            lambda mobile_id: mobile_id in registry, clock, on_close=closed.append
        )
        registry = ConnectionRegistry(sessions, clock)
        registry.register("m1")
        registry.register("m2")
        first = sessions.open("m1", "w1", "Proj")
        second = sessions.open("m1", "w2", "Other")
        sessions.open("m2", "w1", "Proj")

        registry.remove("m1")

        assert closed == [first, second]
        assert len(sessions) == 1
