"""Shell terminals bound to workspace sessions.

Every session gets one shell attached to a pseudo-terminal. Output read
from the pty master is chunked and handed to ``on_output``; when the shell
exits, ``on_exit`` is called once so the owner can close the session.
Closing a session first (``discard``) hangs up the shell without calling
``on_exit``.
"""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from pairlink.errors import TerminalError, UnknownSessionError
from pairlink.sessions import Session

logger = logging.getLogger(__name__)

MAX_DIMENSION = 1000


class Terminal(Protocol):
    """A running shell attached to a session."""

    async def pump(self, on_output: Callable[[bytes], Awaitable[None]]) -> None:
        """Deliver output chunks until the shell closes its side."""
        ...

    async def wait(self) -> Optional[int]:
        """Wait for the shell to exit and return its status."""
        ...

    def write(self, data: bytes) -> None:
        ...

    def resize(self, cols: int, rows: int) -> None:
        ...

    def close(self, force: bool = False) -> None:
        """Hang up the shell (SIGKILL if force). Idempotent."""
        ...


Spawner = Callable[[list[str], Optional[str], int, int], Awaitable[Terminal]]
OutputCallback = Callable[[Session, str], Awaitable[None]]
ExitCallback = Callable[[Session], Awaitable[None]]


def validate_size(cols: int, rows: int) -> None:
    """Raise ValueError unless cols and rows are sane terminal dimensions."""
    for name, value in (("cols", cols), ("rows", rows)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError(f"{name} must be an integer")
        if not 1 <= value <= MAX_DIMENSION:
            raise ValueError(f"{name} out of range: {value}")


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyTerminal:
    """Child process whose stdio is the slave side of a pty.

    Reads the master side the way a pipe capture does: non-blocking reads
    on a short poll, emitting a chunk when it fills up or has waited for
    ``chunk_interval`` seconds.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        chunk_interval: float = 0.05,
        max_chunk_size: int = 4096,
    ):
        self._process = process
        self._fd = master_fd
        self._chunk_interval = chunk_interval
        self._max_chunk_size = max_chunk_size
        self._closed = False

    @classmethod
    async def spawn(
        cls,
        argv: list[str],
        cwd: Optional[str],
        cols: int,
        rows: int,
    ) -> "PtyTerminal":
        """Start argv on a new pty.

        Raises:
            OSError: If the pty or the process cannot be created.
        """
        master_fd, slave_fd = pty.openpty()
        try:
            _set_window_size(slave_fd, cols, rows)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env={**os.environ, "TERM": "xterm-256color"},
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        return cls(process, master_fd)

    @property
    def pid(self) -> int:
        return self._process.pid

    async def pump(self, on_output: Callable[[bytes], Awaitable[None]]) -> None:
        loop = asyncio.get_running_loop()
        buffer = bytearray()
        last_emit = loop.time()
        try:
            while not self._closed:
                try:
                    data = os.read(self._fd, self._max_chunk_size)
                except BlockingIOError:
                    data = None
                except OSError:
                    # EIO: every process holding the slave side is gone
                    break
                if data == b"":
                    break
                if data:
                    buffer.extend(data)

                now = loop.time()
                if buffer and (
                    len(buffer) >= self._max_chunk_size
                    or now - last_emit >= self._chunk_interval
                ):
                    await on_output(bytes(buffer))
                    buffer.clear()
                    last_emit = now

                await asyncio.sleep(0.01)

            if buffer and not self._closed:
                await on_output(bytes(buffer))
        finally:
            os.close(self._fd)

    async def wait(self) -> Optional[int]:
        return await self._process.wait()

    def write(self, data: bytes) -> None:
        if self._closed:
            raise OSError("terminal closed")
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            raise OSError("terminal closed")
        _set_window_size(self._fd, cols, rows)

    def close(self, force: bool = False) -> None:
        self._closed = True
        if self._process.returncode is not None:
            return
        # start_new_session made the shell a process group leader
        try:
            os.killpg(self._process.pid, signal.SIGKILL if force else signal.SIGHUP)
        except ProcessLookupError:
            pass


@dataclass(eq=False)
class _Attached:
    session: Session
    terminal: Terminal
    task: Optional[asyncio.Task] = None


class TerminalManager:
    """Runs one terminal per session and routes I/O by session id.

    The manager does not check ownership; callers resolve the session for
    the requesting mobile before writing or resizing.
    """

    def __init__(
        self,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        spawner: Spawner = PtyTerminal.spawn,
        shell: Optional[str] = None,
    ):
        """Initialize the terminal manager.

        Args:
            on_output: Receives decoded output for a session.
            on_exit: Called once when a session's shell exits on its own.
            spawner: Starts a terminal from (argv, cwd, cols, rows).
            shell: Shell to run; defaults to $SHELL, then /bin/sh.
        """
        self._on_output = on_output
        self._on_exit = on_exit
        self._spawner = spawner
        self._shell = shell

        self._terminals: dict[str, _Attached] = {}
        # Terminals whose output loop is still running, discarded or not
        self._live: set[_Attached] = set()

    @property
    def shell(self) -> str:
        return self._shell or os.environ.get("SHELL") or "/bin/sh"

    async def open(
        self,
        session: Session,
        cwd: Optional[str],
        cols: int,
        rows: int,
    ) -> None:
        """Start a shell for session.

        Raises:
            TerminalError: If the shell cannot be started.
        """
        if session.id in self._terminals:
            raise TerminalError(f"Session already has a terminal: {session.id}")
        validate_size(cols, rows)

        try:
            terminal = await self._spawner(
                [self.shell], cwd or str(Path.home()), cols, rows
            )
        except OSError as e:
            logger.error(f"Failed to start shell for session {session.id}: {e}")
            raise TerminalError(f"Could not start shell: {e}") from e

        attached = _Attached(session, terminal)
        self._terminals[session.id] = attached
        self._live.add(attached)
        attached.task = asyncio.create_task(self._run(attached))
        logger.info(f"Terminal started for session {session.id} ({self.shell}, {cols}x{rows})")

    def write(self, session_id: str, data: str) -> None:
        """Send input to a session's shell.

        Raises:
            UnknownSessionError: If the session has no terminal.
            TerminalError: If the write fails.
        """
        terminal = self._get(session_id)
        try:
            terminal.write(data.encode())
        except OSError as e:
            raise TerminalError(f"Write failed: {e}") from e

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        """Resize a session's terminal.

        Raises:
            UnknownSessionError: If the session has no terminal.
            TerminalError: If the resize fails.
        """
        validate_size(cols, rows)
        terminal = self._get(session_id)
        try:
            terminal.resize(cols, rows)
        except OSError as e:
            raise TerminalError(f"Resize failed: {e}") from e

    def discard(self, session_id: str) -> bool:
        """Hang up a session's shell without reporting an exit.

        Returns:
            True if the session had a terminal.
        """
        attached = self._terminals.pop(session_id, None)
        if attached is None:
            return False
        attached.terminal.close()
        logger.debug(f"Terminal closed for session {session_id}")
        return True

    async def shutdown(self, timeout: float = 2.0) -> None:
        """Hang up every shell and wait for the output loops to finish."""
        for session_id in list(self._terminals):
            self.discard(session_id)

        tasks = [a.task for a in self._live if a.task is not None]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return

        for attached in list(self._live):
            if attached.task in pending:
                logger.warning(f"Shell ignored hangup, killing: {attached.session.id}")
                attached.terminal.close(force=True)
        await asyncio.wait(pending, timeout=timeout)

    def _get(self, session_id: str) -> Terminal:
        attached = self._terminals.get(session_id)
        if attached is None:
            raise UnknownSessionError(f"No terminal for session: {session_id}")
        return attached.terminal

    async def _run(self, attached: _Attached) -> None:
        """Forward output until the shell exits, then report the exit."""
        session, terminal = attached.session, attached.terminal
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        async def forward(chunk: bytes) -> None:
            text = decoder.decode(chunk)
            if text and self._terminals.get(session.id) is attached:
                await self._on_output(session, text)

        status: Optional[int] = None
        try:
            await terminal.pump(forward)
            status = await terminal.wait()
        except Exception as e:
            logger.error(f"Terminal error for session {session.id}: {e}")
            terminal.close(force=True)
        finally:
            self._live.discard(attached)

        if self._terminals.get(session.id) is attached:
            del self._terminals[session.id]
            logger.info(f"Shell for session {session.id} exited (status {status})")
            await self._on_exit(session)

    def __len__(self) -> int:
        return len(self._terminals)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._terminals
