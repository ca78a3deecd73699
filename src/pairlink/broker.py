"""Mobile pairing and session broker.

The broker is the single owner of the PIN issuer, connection registry,
session table and state machine. Every mutation runs under one asyncio
lock and publishes a fresh snapshot before the lock is released, so
subscribers see changes in causal order and never a half-applied cascade.

Lifecycle:
    disconnected --connect--> connecting --armed--> connected
    connecting --arm failed--> error --connect--> connecting
    any --disconnect--> disconnected, any --transport fault--> error
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from pairlink.config import Config
from pairlink.errors import (
    DuplicateMobileIdError,
    EndpointArmFailure,
    NotReadyError,
    TerminalError,
    TooManyMobilesError,
    TransportFault,
    UnknownSessionError,
    UnknownWorkspaceError,
)
from pairlink.identity import DeviceIdentity
from pairlink.pairing.pin import PinIssuer
from pairlink.publisher import StatePublisher, Subscription
from pairlink.registry import ConnectionRegistry, MobileConnection
from pairlink.sessions import Session, SessionTable, Workspace
from pairlink.state import ConnectionStateMachine, RemoteState, RemoteStatus
from pairlink.terminal import Spawner, TerminalManager, validate_size

logger = logging.getLogger(__name__)


class Endpoint(Protocol):
    """Listening endpoint mobiles connect to."""

    async def start(self, host: str, port: int) -> None:
        """Open the endpoint. Raises OSError if it cannot bind."""
        ...

    async def stop(self) -> None:
        """Close every mobile socket and the listener. Idempotent."""
        ...

    def get_port(self) -> int:
        """Actual bound port."""
        ...

    def close_mobile(self, mobile_id: str) -> None:
        """Close one mobile's socket without waiting."""
        ...

    async def send_to_mobile(self, mobile_id: str, message: dict[str, Any]) -> bool:
        """Push a message to one mobile. Returns False if it is not connected."""
        ...


EndpointFactory = Callable[["Broker"], Endpoint]
WorkspaceProvider = Callable[[], list[Workspace]]


@dataclass(frozen=True)
class PinGrant:
    """Result of create_pin."""

    pin: str
    expires_at: float

    def to_dict(self) -> dict[str, Any]:
        return {"pin": self.pin, "expiresAt": int(self.expires_at * 1000)}


def _default_endpoint_factory(broker: "Broker") -> Endpoint:
    from pairlink.endpoint import MobileEndpoint

    return MobileEndpoint(
        broker,
        auth_timeout=broker.config.broker.auth_timeout,
        handler_timeout=broker.config.broker.handler_timeout,
    )


class Broker:
    """Pairs mobiles by PIN and tracks their connections and sessions."""

    def __init__(
        self,
        identity: DeviceIdentity,
        config: Optional[Config] = None,
        endpoint_factory: Optional[EndpointFactory] = None,
        workspace_provider: Optional[WorkspaceProvider] = None,
        terminal_spawner: Optional[Spawner] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize broker.

        Args:
            identity: Local device identity (fixed for the broker's lifetime).
            config: Broker configuration.
            endpoint_factory: Builds the mobile endpoint on each connect.
            workspace_provider: Lists workspaces mobiles may open sessions on.
            terminal_spawner: Starts a shell per session; sessions are plain
                records when None.
            clock: Time source (epoch seconds).
        """
        self._identity = identity
        self._config = config or Config()
        self._endpoint_factory = endpoint_factory or _default_endpoint_factory
        self._workspace_provider = workspace_provider
        self._clock = clock

        self._lock = asyncio.Lock()
        self._machine = ConnectionStateMachine()
        self._sessions = SessionTable(
            lambda mobile_id: mobile_id in self._registry,
            clock,
            on_close=self._release_terminal,
        )
        self._registry = ConnectionRegistry(self._sessions, clock)
        self._pins = PinIssuer(
            length=self._config.pin.length,
            ttl=self._config.pin.ttl_seconds,
            clock=clock,
        )
        self._terminals: Optional[TerminalManager] = None
        if terminal_spawner is not None:
            self._terminals = TerminalManager(
                on_output=self._on_terminal_output,
                on_exit=self._on_terminal_exit,
                spawner=terminal_spawner,
                shell=self._config.terminal.shell,
            )
        self._publisher = StatePublisher(
            self._snapshot(), queue_size=self._config.broker.subscriber_queue_size
        )

        self._endpoint: Optional[Endpoint] = None
        self._arm_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._sweep_tasks: list[asyncio.Task] = []

    @property
    def identity(self) -> DeviceIdentity:
        return self._identity

    @property
    def config(self) -> Config:
        return self._config

    @property
    def status(self) -> RemoteStatus:
        return self._machine.status

    @property
    def endpoint_port(self) -> Optional[int]:
        """Port the armed endpoint listens on, or None."""
        if self._endpoint is None:
            return None
        return self._endpoint.get_port()

    # ==================== Commands ====================

    def get_state(self) -> RemoteState:
        """Current snapshot."""
        return self._snapshot()

    def subscribe(self) -> Subscription:
        """Subscribe to state changes; the current snapshot arrives first."""
        return self._publisher.subscribe(self._snapshot())

    async def connect(self) -> bool:
        """Arm the mobile endpoint.

        Idempotent while connecting or connected: concurrent callers share
        the same arm attempt.

        Returns:
            True once connected, False if arming failed or was aborted.
        """
        async with self._lock:
            status = self._machine.status
            if status == RemoteStatus.CONNECTED:
                return True
            if status != RemoteStatus.CONNECTING:
                self._machine.transition_to(RemoteStatus.CONNECTING)
                self._publish_locked()
                self._arm_task = asyncio.create_task(self._arm())
            arm_task = self._arm_task

        try:
            return await asyncio.shield(arm_task)
        except asyncio.CancelledError:
            if arm_task.cancelled():
                # disconnect() aborted the arm attempt
                return False
            raise

    async def disconnect(self) -> None:
        """Tear down the endpoint and forget the PIN, mobiles and sessions."""
        async with self._lock:
            arm_task = self._arm_task
            if self._machine.status != RemoteStatus.DISCONNECTED:
                self._settle_locked(RemoteStatus.DISCONNECTED)
                logger.info("Broker disconnected")
            teardown = self._teardown_task

        if arm_task is not None:
            await asyncio.wait([arm_task])
        if teardown is not None:
            await self._await_teardown(teardown)

    async def create_pin(self) -> Optional[PinGrant]:
        """Issue a pairing PIN, connecting first if needed.

        Returns:
            The new PIN and its expiry, or None if the broker could not connect.
        """
        if self._machine.status != RemoteStatus.CONNECTED:
            if not await self.connect():
                logger.warning("Cannot create PIN: endpoint not armed")
                return None

        async with self._lock:
            if self._machine.status != RemoteStatus.CONNECTED:
                return None
            pin = self._pins.issue()
            self._publish_locked()

        return PinGrant(pin=pin.code, expires_at=pin.expires_at)

    async def close(self) -> None:
        """Disconnect, stop every shell and end every subscription."""
        await self.disconnect()
        if self._terminals is not None:
            await self._terminals.shutdown()
        self._publisher.close()

    # ==================== Mobile operations ====================

    async def pair(self, code: str, mobile_id: Optional[str] = None) -> MobileConnection:
        """Validate a mobile's PIN and register it.

        Args:
            code: PIN presented by the mobile.
            mobile_id: Id to register under; a random one is assigned if None.

        Raises:
            NotReadyError: Endpoint not armed.
            TooManyMobilesError: Connection limit reached (PIN not consumed).
            DuplicateMobileIdError: mobile_id already registered.
            PinError: PIN invalid, expired or already consumed.
        """
        async with self._lock:
            if self._machine.status != RemoteStatus.CONNECTED:
                raise NotReadyError("Broker is not accepting mobiles")
            if len(self._registry) >= self._config.broker.max_mobiles:
                raise TooManyMobilesError(
                    f"Connection limit reached ({self._config.broker.max_mobiles})"
                )
            if mobile_id is None:
                mobile_id = secrets.token_hex(16)
            elif mobile_id in self._registry:
                raise DuplicateMobileIdError(f"Mobile already registered: {mobile_id}")

            self._pins.validate(code)
            conn = self._registry.register(mobile_id)
            self._publish_locked()

        return conn

    async def touch(self, mobile_id: str) -> MobileConnection:
        """Record inbound activity from a mobile.

        Raises:
            UnknownMobileError: If the mobile is not registered.
        """
        async with self._lock:
            return self._registry.touch(mobile_id)

    async def drop_mobile(self, mobile_id: str, reason: str = "closed") -> bool:
        """Remove a mobile and its sessions. Idempotent.

        Returns:
            True if the mobile was registered.
        """
        async with self._lock:
            removed = self._registry.remove(mobile_id)
            if removed is None:
                return False
            logger.info(f"Mobile dropped ({reason}): {mobile_id}")
            self._publish_locked()
        return True

    async def open_session(
        self,
        mobile_id: str,
        workspace_id: str,
        workspace_name: Optional[str] = None,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> Session:
        """Open a workspace session for a registered mobile.

        The workspace name comes from the workspace provider when one is
        configured; otherwise the caller's name (or the id) is used. With
        terminals enabled, a shell is started in the workspace directory
        before the session is published.

        Raises:
            UnknownMobileError: If the mobile is not registered.
            UnknownWorkspaceError: If the provider does not offer workspace_id.
            TerminalError: If the session shell cannot be started.
            ValueError: If cols or rows are out of range.
        """
        cols = self._config.terminal.cols if cols is None else cols
        rows = self._config.terminal.rows if rows is None else rows
        validate_size(cols, rows)

        async with self._lock:
            workspace = self._resolve_workspace(workspace_id, workspace_name)
            session = self._sessions.open(mobile_id, workspace_id, workspace.name)
            if self._terminals is not None:
                try:
                    await self._terminals.open(session, workspace.path, cols, rows)
                except TerminalError:
                    self._sessions.close(session.id)
                    raise
            self._publish_locked()

        logger.info(f"Session {session.id} opened on {workspace.name} by {mobile_id}")
        return session

    async def close_session(self, session_id: str, mobile_id: Optional[str] = None) -> bool:
        """Close a session. No-op if absent.

        Args:
            session_id: Session to close.
            mobile_id: If given, only a session owned by this mobile is closed.

        Returns:
            True if a session was closed.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or (mobile_id is not None and session.mobile_id != mobile_id):
                return False
            self._sessions.close(session_id)
            self._publish_locked()

        logger.info(f"Session {session_id} closed")
        return True

    async def write_terminal(self, mobile_id: str, session_id: str, data: str) -> None:
        """Send input to the shell of a session the mobile owns.

        Raises:
            UnknownSessionError: Session absent, owned by another mobile,
                or without a terminal.
            TerminalError: If the write fails.
        """
        async with self._lock:
            self._owned_terminals(mobile_id, session_id).write(session_id, data)

    async def resize_terminal(
        self, mobile_id: str, session_id: str, cols: int, rows: int
    ) -> None:
        """Resize the terminal of a session the mobile owns.

        Raises:
            UnknownSessionError: As for write_terminal.
            ValueError: If cols or rows are out of range.
        """
        async with self._lock:
            self._owned_terminals(mobile_id, session_id).resize(session_id, cols, rows)

    def list_workspaces(self) -> list[Workspace]:
        if self._workspace_provider is None:
            return []
        return list(self._workspace_provider())

    async def report_transport_fault(self, reason: str) -> None:
        """Move to ERROR after an unrecoverable transport fault."""
        async with self._lock:
            if self._machine.status == RemoteStatus.ERROR:
                return
            logger.error(f"Transport fault: {reason}")
            self._settle_locked(RemoteStatus.ERROR, TransportFault.code)
            teardown = self._teardown_task

        if teardown is not None:
            await self._await_teardown(teardown)

    # ==================== Sweeps ====================

    async def sweep_expired_pin(self) -> bool:
        """Drop an expired PIN so observers see it disappear."""
        async with self._lock:
            if not self._pins.sweep():
                return False
            self._publish_locked()
        return True

    async def sweep_stale_mobiles(self) -> list[str]:
        """Remove mobiles that stopped sending anything."""
        async with self._lock:
            stale = self._registry.stale(self._config.heartbeat.timeout)
            for mobile_id in stale:
                logger.warning(f"Mobile stale, removing: {mobile_id}")
                self._registry.remove(mobile_id)
                if self._endpoint is not None:
                    self._endpoint.close_mobile(mobile_id)
            if stale:
                self._publish_locked()
        return stale

    async def _pin_sweep_loop(self) -> None:
        interval = self._config.pin.sweep_interval
        while True:
            try:
                await asyncio.sleep(interval)
                await self.sweep_expired_pin()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"PIN sweep error: {e}")

    async def _liveness_loop(self) -> None:
        interval = self._config.heartbeat.interval
        while True:
            try:
                await asyncio.sleep(interval)
                await self.sweep_stale_mobiles()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Liveness sweep error: {e}")

    # ==================== Internals ====================

    async def _arm(self) -> bool:
        """Open the endpoint, then settle in CONNECTED or ERROR."""
        teardown = self._teardown_task
        if teardown is not None:
            # Previous endpoint must release its port first
            await self._await_teardown(teardown)

        endpoint = self._endpoint_factory(self)
        host = self._config.endpoint_host
        port = self._config.endpoint_port
        try:
            try:
                await asyncio.wait_for(
                    endpoint.start(host, port),
                    timeout=self._config.broker.arm_timeout,
                )
            except (OSError, asyncio.TimeoutError, EndpointArmFailure) as e:
                logger.error(f"Failed to arm endpoint on {host}:{port}: {e!r}")
                await endpoint.stop()
                async with self._lock:
                    if self._machine.status == RemoteStatus.CONNECTING:
                        self._settle_locked(RemoteStatus.ERROR, EndpointArmFailure.code)
                return False

            async with self._lock:
                self._endpoint = endpoint
                self._machine.transition_to(RemoteStatus.CONNECTED)
                self._start_sweeps()
                self._publish_locked()

            logger.info(f"Endpoint armed on {host}:{endpoint.get_port()}")
            return True

        except asyncio.CancelledError:
            await endpoint.stop()
            raise

    def _settle_locked(self, status: RemoteStatus, error: Optional[str] = None) -> None:
        """Flush all pairing state and move to status. Caller holds the lock."""
        current = asyncio.current_task()
        if self._arm_task is not None and self._arm_task is not current:
            self._arm_task.cancel()
        self._arm_task = None
        self._stop_sweeps()

        self._pins.clear()
        self._registry.clear()
        self._machine.transition_to(status, error)

        endpoint, self._endpoint = self._endpoint, None
        if endpoint is not None:
            self._teardown_task = asyncio.create_task(endpoint.stop())

        self._publish_locked()

    async def _await_teardown(self, teardown: asyncio.Task) -> None:
        try:
            await asyncio.shield(teardown)
        except Exception as e:
            logger.error(f"Endpoint teardown error: {e}")
        if self._teardown_task is teardown:
            self._teardown_task = None

    def _start_sweeps(self) -> None:
        self._sweep_tasks = [
            asyncio.create_task(self._pin_sweep_loop()),
            asyncio.create_task(self._liveness_loop()),
        ]

    def _stop_sweeps(self) -> None:
        current = asyncio.current_task()
        for task in self._sweep_tasks:
            if task is not current:
                task.cancel()
        self._sweep_tasks = []

    def _resolve_workspace(self, workspace_id: str, requested: Optional[str]) -> Workspace:
        if self._workspace_provider is None:
            return Workspace(id=workspace_id, name=requested or workspace_id)
        for workspace in self._workspace_provider():
            if workspace.id == workspace_id:
                return workspace
        raise UnknownWorkspaceError(f"Unknown workspace: {workspace_id}")

    def _owned_terminals(self, mobile_id: str, session_id: str) -> TerminalManager:
        """Terminal manager for a session owned by mobile_id. Caller holds the lock."""
        session = self._sessions.get(session_id)
        if session is None or session.mobile_id != mobile_id:
            raise UnknownSessionError(f"Unknown session: {session_id}")
        if self._terminals is None:
            raise UnknownSessionError(f"Session has no terminal: {session_id}")
        return self._terminals

    # ==================== Terminal callbacks ====================

    def _release_terminal(self, session: Session) -> None:
        if self._terminals is not None:
            self._terminals.discard(session.id)

    async def _on_terminal_output(self, session: Session, data: str) -> None:
        endpoint = self._endpoint
        if endpoint is None:
            return
        await endpoint.send_to_mobile(session.mobile_id, {
            "type": "terminal_output",
            "payload": {"sessionId": session.id, "data": data},
        })

    async def _on_terminal_exit(self, session: Session) -> None:
        """Close a session whose shell exited and tell its mobile."""
        async with self._lock:
            if self._sessions.close(session.id) is None:
                return
            self._publish_locked()
            endpoint = self._endpoint

        logger.info(f"Session {session.id} ended: shell exited")
        if endpoint is not None:
            await endpoint.send_to_mobile(session.mobile_id, {
                "type": "session_closed",
                "payload": {"sessionId": session.id, "closed": True, "reason": "exited"},
            })

    def _snapshot(self) -> RemoteState:
        pin = self._pins.active
        return RemoteState(
            status=self._machine.status,
            device_id=self._identity.device_id,
            device_name=self._identity.device_name,
            connected_mobiles=tuple(self._registry.all()),
            active_sessions=tuple(self._sessions.all()),
            error=self._machine.error,
            pin_expires_at=pin.expires_at if pin else None,
        )

    def _publish_locked(self) -> None:
        self._publisher.publish(self._snapshot())
