"""Tests for message dispatcher module."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from pairlink.dispatcher import MessageDispatcher, error_message
from pairlink.errors import UnknownWorkspaceError


class TestMessageDispatcher:
    """Tests for MessageDispatcher."""

    @pytest.fixture
    def dispatcher(self):
        """Create message dispatcher."""
        return MessageDispatcher(handler_timeout=0.1)

    @pytest.mark.asyncio
    async def test_register_replaces_handler(self, dispatcher):
        dispatcher.register("ping", AsyncMock(return_value={"type": "first"}))
        dispatcher.register("ping", AsyncMock(return_value={"type": "second"}))

        assert await dispatcher.dispatch("m1", "ping", {}) == {"type": "second"}

    @pytest.mark.asyncio
    async def test_dispatch_to_registered(self, dispatcher):
        """Dispatch calls handler and returns its reply."""
        handler = AsyncMock(return_value={"type": "pong"})
        dispatcher.register("ping", handler)

        reply = await dispatcher.dispatch("m1", "ping", {"n": 1})

        handler.assert_called_once_with("m1", {"n": 1})
        assert reply == {"type": "pong"}

    @pytest.mark.asyncio
    async def test_sync_handler(self, dispatcher):
        dispatcher.register("ping", lambda mobile_id, payload: {"type": "pong"})
        assert await dispatcher.dispatch("m1", "ping", {}) == {"type": "pong"}

    @pytest.mark.asyncio
    async def test_dispatch_to_unregistered(self, dispatcher, caplog):
        reply = await dispatcher.dispatch("m1", "teleport", {})

        assert reply["type"] == "error"
        assert reply["payload"]["code"] == "unknown_message"
        assert "No handler for message type: teleport" in caplog.text

    @pytest.mark.asyncio
    async def test_broker_error_becomes_reply(self, dispatcher):
        handler = AsyncMock(side_effect=UnknownWorkspaceError("Unknown workspace: w9"))
        dispatcher.register("session_create", handler)

        reply = await dispatcher.dispatch("m1", "session_create", {"workspaceId": "w9"})

        assert reply == error_message("unknown_workspace", "Unknown workspace: w9")

    @pytest.mark.asyncio
    async def test_malformed_payload(self, dispatcher, caplog):
        async def handler(mobile_id, payload):
            return payload["workspaceId"]

        dispatcher.register("session_create", handler)
        reply = await dispatcher.dispatch("m1abcdef99", "session_create", {})

        assert reply["payload"]["code"] == "bad_request"
        assert "Malformed session_create from m1abcdef" in caplog.text

    @pytest.mark.asyncio
    async def test_handler_timeout(self, dispatcher, caplog):
        async def slow_handler(mobile_id, payload):
            await asyncio.sleep(10)

        dispatcher.register("slow", slow_handler)
        reply = await dispatcher.dispatch("m1", "slow", {})

        assert reply["payload"]["code"] == "timeout"
        assert "Handler timeout for slow" in caplog.text

    @pytest.mark.asyncio
    async def test_handler_may_return_nothing(self, dispatcher):
        dispatcher.register("noop", AsyncMock(return_value=None))
        assert await dispatcher.dispatch("m1", "noop", {}) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, dispatcher):
        dispatcher.register("boom", AsyncMock(side_effect=RuntimeError("boom")))
        with pytest.raises(RuntimeError):
            await dispatcher.dispatch("m1", "boom", {})
