"""WebSocket endpoint mobiles pair and talk through.

Routes:
- /health - Health check
- /ws - Mobile WebSocket (PIN handshake, then session requests)

Wire format is JSON: ``{"type": ..., "payload": {...}, "timestamp": ms}``.
The first message must be ``pair`` carrying the PIN. After pairing, every
inbound message counts as activity for the liveness sweep, and session
shells talk through ``terminal_input``, ``terminal_resize`` and pushed
``terminal_output`` messages.

Per-socket failures only drop that mobile. An unexpected handler error or
the listener closing underneath the endpoint is reported to the broker as
a transport fault.
"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Optional

from aiohttp import WSMsgType, web

from pairlink.dispatcher import MessageDispatcher, Reply, error_message
from pairlink.errors import BrokerError, UnknownMobileError
from pairlink.registry import MobileConnection

if TYPE_CHECKING:
    from pairlink.broker import Broker

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_AUTH_FAILED = 4001
CLOSE_AUTH_TIMEOUT = 4002
CLOSE_STALE = 4003
CLOSE_NOT_REGISTERED = 4004
CLOSE_GOING_AWAY = 1001


class MobileEndpoint:
    """aiohttp server accepting mobile connections for one broker."""

    def __init__(
        self,
        broker: "Broker",
        auth_timeout: float = 10.0,
        handler_timeout: float = 10.0,
    ):
        """Initialize endpoint.

        Args:
            broker: Broker that validates PINs and owns all state.
            auth_timeout: Seconds a new socket has to send its PIN.
            handler_timeout: Maximum time per message handler.
        """
        self._broker = broker
        self._auth_timeout = auth_timeout
        self._dispatcher = MessageDispatcher(handler_timeout=handler_timeout)
        self._register_handlers()

        self._sockets: dict[str, web.WebSocketResponse] = {}
        self._pending: set[web.WebSocketResponse] = set()
        self._stopping = False
        self._watch_task: Optional[asyncio.Task] = None
        self._fault_tasks: set[asyncio.Task] = set()

        self.app = web.Application()
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/ws", self._handle_websocket)
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    def _register_handlers(self) -> None:
        self._dispatcher.register("ping", self._handle_ping)
        self._dispatcher.register("workspace_list", self._handle_workspace_list)
        self._dispatcher.register("session_create", self._handle_session_create)
        self._dispatcher.register("session_close", self._handle_session_close)
        self._dispatcher.register("terminal_input", self._handle_terminal_input)
        self._dispatcher.register("terminal_resize", self._handle_terminal_resize)

    # =========================================================================
    # Routes
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Pair a mobile, then serve its requests until the socket closes."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._pending.add(ws)

        conn: Optional[MobileConnection] = None
        try:
            conn = await self._handshake(ws)
            if conn is None:
                return ws

            self._sockets[conn.mobile_id] = ws
            identity = self._broker.identity
            await self._send(ws, {
                "type": "paired",
                "payload": {
                    "mobileId": conn.mobile_id,
                    "deviceId": identity.device_id,
                    "deviceName": identity.device_name,
                },
            })
            logger.info(f"Mobile paired from {request.remote}: {conn.mobile_id}")

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    if not await self._on_text(conn.mobile_id, ws, msg.data):
                        break
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        f"WebSocket error for {conn.mobile_id}: {ws.exception()}"
                    )
                    break

        except ConnectionError as e:
            logger.warning(f"WebSocket connection lost: {e}")

        except Exception as e:
            logger.exception(f"WebSocket handler error: {e}")
            self._report_fault(f"WebSocket handler error: {e!r}")

        finally:
            self._pending.discard(ws)
            if conn is not None:
                if self._sockets.get(conn.mobile_id) is ws:
                    del self._sockets[conn.mobile_id]
                await self._broker.drop_mobile(conn.mobile_id, "socket closed")
            if not ws.closed:
                await ws.close()

        return ws

    async def _handshake(self, ws: web.WebSocketResponse) -> Optional[MobileConnection]:
        """Receive the pair message and register the mobile.

        Returns:
            The new connection, or None if the socket was rejected.
        """
        try:
            msg = await asyncio.wait_for(ws.receive(), timeout=self._auth_timeout)
        except asyncio.TimeoutError:
            logger.warning("Pairing handshake timed out")
            await ws.close(code=CLOSE_AUTH_TIMEOUT, message=b"Auth timeout")
            return None

        if msg.type != WSMsgType.TEXT:
            await ws.close(code=CLOSE_AUTH_FAILED, message=b"Expected pair message")
            return None

        try:
            message = json.loads(msg.data)
            if message["type"] != "pair":
                raise ValueError(f"unexpected {message['type']}")
            pin = message["payload"]["pin"]
            if not isinstance(pin, str):
                raise TypeError("pin must be a string")
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Malformed pair message: {e}")
            await self._reject(ws, "bad_request", "Expected pair message")
            return None

        try:
            return await self._broker.pair(pin)
        except BrokerError as e:
            logger.warning(f"Pairing rejected: {e.code}")
            await self._reject(ws, e.code, str(e))
            return None

    async def _on_text(self, mobile_id: str, ws: web.WebSocketResponse, data: str) -> bool:
        """Handle one message. Returns False when the socket should close."""
        try:
            message = json.loads(data)
            message_type = message["type"]
            payload = message.get("payload") or {}
            if not isinstance(payload, dict):
                raise TypeError("payload must be an object")
        except (ValueError, KeyError, TypeError):
            await self._send(ws, error_message("bad_request", "Malformed message"))
            return True

        try:
            await self._broker.touch(mobile_id)
        except UnknownMobileError:
            await ws.close(code=CLOSE_NOT_REGISTERED, message=b"Not registered")
            return False

        if message_type == "mobile_disconnect":
            logger.info(f"Mobile requested disconnect: {mobile_id}")
            return False

        reply = await self._dispatcher.dispatch(mobile_id, message_type, payload)
        if reply is not None:
            await self._send(ws, reply)
        return True

    # =========================================================================
    # Message handlers
    # =========================================================================

    async def _handle_ping(self, mobile_id: str, payload: dict[str, Any]) -> Reply:
        return {"type": "pong"}

    async def _handle_workspace_list(self, mobile_id: str, payload: dict[str, Any]) -> Reply:
        workspaces = [
            {
                "id": w.id,
                "name": w.name,
                "path": w.path,
                "branch": w.branch,
                "isWorktree": w.is_worktree,
            }
            for w in self._broker.list_workspaces()
        ]
        return {"type": "workspace_data", "payload": {"workspaces": workspaces}}

    async def _handle_session_create(self, mobile_id: str, payload: dict[str, Any]) -> Reply:
        name = payload.get("name")
        if name is not None and not isinstance(name, str):
            raise TypeError("name must be a string")

        session = await self._broker.open_session(
            mobile_id,
            str(payload["workspaceId"]),
            name,
            cols=payload.get("cols"),
            rows=payload.get("rows"),
        )
        return {
            "type": "session_created",
            "payload": {
                "sessionId": session.id,
                "workspaceId": session.workspace_id,
                "workspaceName": session.workspace_name,
            },
        }

    async def _handle_session_close(self, mobile_id: str, payload: dict[str, Any]) -> Reply:
        session_id = str(payload["sessionId"])
        closed = await self._broker.close_session(session_id, mobile_id=mobile_id)
        return {
            "type": "session_closed",
            "payload": {"sessionId": session_id, "closed": closed},
        }

    async def _handle_terminal_input(self, mobile_id: str, payload: dict[str, Any]) -> Reply:
        data = payload["data"]
        if not isinstance(data, str):
            raise TypeError("data must be a string")
        await self._broker.write_terminal(mobile_id, str(payload["sessionId"]), data)
        return None

    async def _handle_terminal_resize(self, mobile_id: str, payload: dict[str, Any]) -> Reply:
        await self._broker.resize_terminal(
            mobile_id,
            str(payload["sessionId"]),
            payload["cols"],
            payload["rows"],
        )
        return None

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _send(self, ws: web.WebSocketResponse, message: dict[str, Any]) -> None:
        message = {**message, "timestamp": int(time.time() * 1000)}
        await ws.send_str(json.dumps(message))

    async def _reject(self, ws: web.WebSocketResponse, code: str, text: str) -> None:
        await self._send(ws, error_message(code, text))
        await ws.close(code=CLOSE_AUTH_FAILED, message=b"Pairing rejected")

    def close_mobile(self, mobile_id: str) -> None:
        """Close a mobile's socket in the background."""
        ws = self._sockets.pop(mobile_id, None)
        if ws is not None and not ws.closed:
            asyncio.create_task(ws.close(code=CLOSE_STALE, message=b"Heartbeat timeout"))

    async def send_to_mobile(self, mobile_id: str, message: dict[str, Any]) -> bool:
        """Push a message to a paired mobile.

        Returns:
            False if the mobile has no open socket or the send failed.
        """
        ws = self._sockets.get(mobile_id)
        if ws is None or ws.closed:
            return False
        try:
            await self._send(ws, message)
        except ConnectionError as e:
            logger.warning(f"Send to {mobile_id} failed: {e}")
            return False
        return True

    def _report_fault(self, reason: str) -> None:
        """Hand a fault to the broker without waiting on our own teardown."""
        if self._stopping:
            return
        task = asyncio.create_task(self._broker.report_transport_fault(reason))
        self._fault_tasks.add(task)
        task.add_done_callback(self._fault_tasks.discard)

    async def _watch_listener(self, server: asyncio.AbstractServer) -> None:
        await server.wait_closed()
        if not self._stopping:
            logger.error("Mobile endpoint listener closed unexpectedly")
            self._report_fault("listener closed")

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> None:
        """Start listening.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).

        Raises:
            OSError: If the address cannot be bound.
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        server = self._site._server
        if server and server.sockets:
            self._port = server.sockets[0].getsockname()[1]
        else:
            self._port = port
        if server is not None:
            self._watch_task = asyncio.create_task(self._watch_listener(server))

        logger.info(f"Mobile endpoint started on {host}:{self._port}")

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def stop(self) -> None:
        """Close every mobile socket and stop listening."""
        self._stopping = True
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None

        sockets = list(self._sockets.values()) + list(self._pending)
        self._sockets.clear()
        for ws in sockets:
            if not ws.closed:
                await ws.close(code=CLOSE_GOING_AWAY, message=b"Broker disconnected")

        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("Mobile endpoint stopped")
