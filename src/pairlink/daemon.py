"""Main daemon orchestration - ties the broker to its control API."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from pairlink.broker import Broker
from pairlink.config import Config
from pairlink.control import ControlServer
from pairlink.errors import StorageError
from pairlink.identity import IdentityStore
from pairlink.sessions import Workspace
from pairlink.terminal import PtyTerminal

logger = logging.getLogger(__name__)


class StartupError(Exception):
    """Error during daemon startup."""

    pass


class Daemon:
    """Runs one broker and its local control server.

    Responsibilities:
    - Load (or create) the device identity
    - Build the broker and control server
    - Optionally arm the mobile endpoint at start
    - Handle graceful shutdown on SIGINT/SIGTERM
    """

    def __init__(
        self,
        config: Config,
        broker: Optional[Broker] = None,
        control_server: Optional[ControlServer] = None,
    ):
        """Initialize daemon.

        Args:
            config: Daemon configuration.
            broker: Optional injected broker (for testing).
            control_server: Optional injected control server (for testing).
        """
        self._config = config
        self._running = False
        self._broker = broker
        self._control_server = control_server

    @property
    def broker(self) -> Optional[Broker]:
        return self._broker

    @property
    def control_server(self) -> Optional[ControlServer]:
        return self._control_server

    async def start(self) -> None:
        """Start the daemon.

        Raises:
            StartupError: If the identity cannot be loaded or the control
                port cannot be bound.
        """
        logger.info("Starting daemon...")

        if self._broker is None:
            self._broker = self._create_broker()
        if self._control_server is None:
            self._control_server = ControlServer(
                self._broker, advertise_host=self._config.advertise_host
            )

        try:
            await self._control_server.start(
                self._config.control_host, self._config.control_port
            )
        except OSError as e:
            raise StartupError(
                f"Cannot bind control API on "
                f"{self._config.control_host}:{self._config.control_port}: {e}"
            ) from e

        self._setup_signals()
        self._running = True

        if self._config.auto_connect:
            if not await self._broker.connect():
                logger.warning("Auto-connect failed; broker is in error state")

        logger.info(
            f"Daemon started as {self._broker.identity.device_id} "
            f"(control API on port {self._control_server.get_port()})"
        )

    async def run_forever(self) -> None:
        """Run daemon until shutdown signal."""
        if not self._running:
            await self.start()

        try:
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        self._running = False

    def _create_broker(self) -> Broker:
        store = IdentityStore(Path(self._config.identity_file))
        try:
            identity = store.load_or_create()
        except StorageError as e:
            raise StartupError(str(e)) from e

        provider = self._config_workspaces if self._config.workspaces else None
        spawner = PtyTerminal.spawn if self._config.terminal.enabled else None
        return Broker(
            identity,
            self._config,
            workspace_provider=provider,
            terminal_spawner=spawner,
        )

    def _config_workspaces(self) -> list[Workspace]:
        return list(self._config.workspaces)

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(self.stop()),
            )

    async def _shutdown(self) -> None:
        """Perform graceful shutdown."""
        logger.info("Shutting down daemon...")

        if self._control_server:
            await self._control_server.close()

        if self._broker:
            await self._broker.close()

        self._running = False
        logger.info("Daemon stopped")
