"""Local control API for the display/adapter layer.

Routes:
- /health - Health check
- /api/state - Current RemoteState snapshot
- /api/connect - Arm the mobile endpoint
- /api/disconnect - Tear everything down
- /api/pin - Create a pairing PIN (connects first if needed)
- /api/state/ws - WebSocket feed of snapshots
"""

import asyncio
import logging
import socket
from typing import TYPE_CHECKING, Optional

from aiohttp import WSMsgType, web

from pairlink.pairing.qr import build_qr_payload
from pairlink.publisher import Subscription

if TYPE_CHECKING:
    from pairlink.broker import Broker

logger = logging.getLogger(__name__)


class ControlServer:
    """HTTP server exposing the four broker commands and the state feed."""

    def __init__(self, broker: "Broker", advertise_host: Optional[str] = None):
        """Initialize control server.

        Args:
            broker: Broker to drive.
            advertise_host: Host mobiles should dial; placed in the QR payload.
        """
        self._broker = broker
        self._advertise_host = advertise_host
        self._feeds: set[web.WebSocketResponse] = set()

        self.app = web.Application()
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._port: int = 0

    def _setup_routes(self) -> None:
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/api/state", self._handle_get_state)
        self.app.router.add_post("/api/connect", self._handle_connect)
        self.app.router.add_post("/api/disconnect", self._handle_disconnect)
        self.app.router.add_post("/api/pin", self._handle_create_pin)
        self.app.router.add_get("/api/state/ws", self._handle_state_feed)

    # =========================================================================
    # Commands
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def _handle_get_state(self, request: web.Request) -> web.Response:
        return web.json_response(self._broker.get_state().to_dict())

    async def _handle_connect(self, request: web.Request) -> web.Response:
        success = await self._broker.connect()
        return web.json_response({"success": success})

    async def _handle_disconnect(self, request: web.Request) -> web.Response:
        await self._broker.disconnect()
        return web.json_response({"success": True})

    async def _handle_create_pin(self, request: web.Request) -> web.Response:
        grant = await self._broker.create_pin()
        if grant is None:
            return web.json_response({"error": "Broker could not connect"}, status=503)

        body = grant.to_dict()
        body["qrData"] = build_qr_payload(
            self._broker.identity.device_id,
            grant.pin,
            self._endpoint_url(),
        )
        return web.json_response(body)

    def _endpoint_url(self) -> str:
        config = self._broker.config
        host = self._advertise_host
        if not host:
            if config.endpoint_host in ("0.0.0.0", "::", ""):
                host = socket.gethostname()
            else:
                host = config.endpoint_host
        port = self._broker.endpoint_port or config.endpoint_port
        return f"ws://{host}:{port}/ws"

    # =========================================================================
    # State feed
    # =========================================================================

    async def _handle_state_feed(self, request: web.Request) -> web.WebSocketResponse:
        """Push every snapshot to the client until either side closes."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._feeds.add(ws)

        sub = self._broker.subscribe()
        forward_task = asyncio.create_task(self._forward(sub, ws))
        try:
            async for msg in ws:
                # Client messages are ignored; the loop ends when it closes.
                if msg.type == WSMsgType.ERROR:
                    break
        finally:
            sub.close()
            forward_task.cancel()
            await asyncio.wait([forward_task])
            self._feeds.discard(ws)
            if not ws.closed:
                await ws.close()

        return ws

    async def _forward(self, sub: Subscription, ws: web.WebSocketResponse) -> None:
        try:
            async for snapshot in sub:
                await ws.send_json(snapshot.to_dict())
        except ConnectionResetError:
            logger.debug("State feed client went away")
        # Feed ended (broker closed): let the client know
        if not ws.closed:
            await ws.close()

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the server.

        Args:
            host: Host to bind to.
            port: Port to bind to (0 for random).

        Returns:
            App runner for cleanup.
        """
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()

        if self._site._server and self._site._server.sockets:
            self._port = self._site._server.sockets[0].getsockname()[1]
        else:
            self._port = port

        logger.info(f"Control server started on {host}:{self._port}")
        return self._runner

    def get_port(self) -> int:
        """Get the actual bound port."""
        return self._port

    async def close(self) -> None:
        """Close state feeds and stop the server."""
        for ws in list(self._feeds):
            if not ws.closed:
                await ws.close()
        self._feeds.clear()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("Control server closed")
