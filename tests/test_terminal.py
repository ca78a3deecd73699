"""Tests for session terminals."""

import asyncio
import shutil

import pytest

from pairlink.errors import TerminalError, UnknownSessionError
from pairlink.sessions import Session
from pairlink.terminal import PtyTerminal, TerminalManager, validate_size

from conftest import FakeTerminal, eventually

SESSION = Session(
    id="5e55i0n0-0000",
    mobile_id="m1",
    workspace_id="w1",
    workspace_name="Proj",
    created_at=1000.0,
)


class StubbornTerminal(FakeTerminal):
    """Ignores a hangup; only a kill ends it."""

    def close(self, force: bool = False) -> None:
        if force:
            super().close(force=True)


class Recorder:
    """Collects manager callbacks."""

    def __init__(self):
        self.output = []
        self.exited = []

    async def on_output(self, session, data):
        self.output.append((session.id, data))

    async def on_exit(self, session):
        self.exited.append(session.id)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def manager(recorder, spawner):
    return TerminalManager(
        on_output=recorder.on_output,
        on_exit=recorder.on_exit,
        spawner=spawner,
        shell="/bin/zsh",
    )


class TestValidateSize:
    """Test terminal dimension checks."""

    def test_valid(self):
        validate_size(80, 24)
        validate_size(1, 1000)

    @pytest.mark.parametrize("cols,rows", [(0, 24), (80, 0), (1001, 24), (-5, 24)])
    def test_out_of_range(self, cols, rows):
        with pytest.raises(ValueError):
            validate_size(cols, rows)

    @pytest.mark.parametrize("cols,rows", [("80", 24), (80, 2.5), (True, 24), (None, 24)])
    def test_not_integers(self, cols, rows):
        with pytest.raises(TypeError):
            validate_size(cols, rows)


class TestTerminalManager:
    """Test routing and lifecycle with fake terminals."""

    def test_shell_defaults_to_environment(self, recorder, monkeypatch):
        monkeypatch.setenv("SHELL", "/usr/bin/fish")
        manager = TerminalManager(recorder.on_output, recorder.on_exit)
        assert manager.shell == "/usr/bin/fish"

        monkeypatch.delenv("SHELL")
        assert manager.shell == "/bin/sh"

    @pytest.mark.asyncio
    async def test_open(self, manager, spawner):
        await manager.open(SESSION, "/src/proj", 100, 30)

        assert SESSION.id in manager
        assert spawner.last.argv == ["/bin/zsh"]
        assert spawner.last.cwd == "/src/proj"
        assert spawner.last.size == (100, 30)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_open_twice_rejected(self, manager, spawner):
        await manager.open(SESSION, None, 80, 24)
        with pytest.raises(TerminalError):
            await manager.open(SESSION, None, 80, 24)
        assert len(spawner.spawned) == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, manager, spawner):
        spawner.fail = True
        with pytest.raises(TerminalError):
            await manager.open(SESSION, None, 80, 24)
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_write_and_resize(self, manager, spawner):
        await manager.open(SESSION, None, 80, 24)

        manager.write(SESSION.id, "échο\n")
        manager.resize(SESSION.id, 120, 50)

        assert spawner.last.written == ["échο\n".encode()]
        assert spawner.last.size == (120, 50)
        await manager.shutdown()

    def test_write_unknown_session(self, manager):
        with pytest.raises(UnknownSessionError):
            manager.write("nope", "x")
        with pytest.raises(UnknownSessionError):
            manager.resize("nope", 80, 24)

    @pytest.mark.asyncio
    async def test_write_failure(self, manager, spawner):
        await manager.open(SESSION, None, 80, 24)
        spawner.last.fail_writes = True

        with pytest.raises(TerminalError):
            manager.write(SESSION.id, "x")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_output_decoded_across_chunks(self, manager, spawner, recorder):
        await manager.open(SESSION, None, 80, 24)

        euro = "€".encode()
        spawner.last.emit(b"cost: " + euro[:2])
        spawner.last.emit(euro[2:] + b"5")
        await eventually(lambda: "".join(d for _, d in recorder.output) == "cost: €5")

        assert all(session_id == SESSION.id for session_id, _ in recorder.output)
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_exit_reported_once(self, manager, spawner, recorder):
        await manager.open(SESSION, None, 80, 24)

        spawner.last.exit(0)
        await eventually(lambda: recorder.exited)
        await asyncio.sleep(0.01)

        assert recorder.exited == [SESSION.id]
        assert SESSION.id not in manager

    @pytest.mark.asyncio
    async def test_discard_does_not_report_exit(self, manager, spawner, recorder):
        await manager.open(SESSION, None, 80, 24)

        assert manager.discard(SESSION.id)
        assert not manager.discard(SESSION.id)
        await manager.shutdown()

        assert spawner.last.closed
        assert recorder.exited == []

    @pytest.mark.asyncio
    async def test_no_output_after_discard(self, manager, spawner, recorder):
        await manager.open(SESSION, None, 80, 24)
        terminal = spawner.last

        manager.discard(SESSION.id)
        terminal.emit(b"late")
        await manager.shutdown()

        assert recorder.output == []

    @pytest.mark.asyncio
    async def test_shutdown_kills_stubborn_shell(self, recorder):
        stubborn = []

        async def spawn(argv, cwd, cols, rows):
            stubborn.append(StubbornTerminal(argv, cwd, cols, rows))
            return stubborn[-1]

        manager = TerminalManager(recorder.on_output, recorder.on_exit, spawner=spawn)
        await manager.open(SESSION, None, 80, 24)

        await manager.shutdown(timeout=0.05)

        assert stubborn[0].force_closed
        assert recorder.exited == []


@pytest.mark.skipif(shutil.which("cat") is None, reason="needs cat")
class TestPtyTerminal:
    """Test a real process on a pty."""

    @pytest.mark.asyncio
    async def test_echo_round_trip(self):
        terminal = await PtyTerminal.spawn(["cat"], None, 80, 24)
        received = bytearray()

        async def collect(chunk):
            received.extend(chunk)

        pump = asyncio.create_task(terminal.pump(collect))
        try:
            terminal.write(b"ping\n")
            await eventually(lambda: b"ping" in received)
            terminal.resize(132, 43)
        finally:
            terminal.close()
            await asyncio.wait_for(pump, timeout=5)

        assert await asyncio.wait_for(terminal.wait(), timeout=5) is not None
        with pytest.raises(OSError):
            terminal.write(b"more")

    @pytest.mark.asyncio
    async def test_shell_exit_reported(self, recorder):
        manager = TerminalManager(recorder.on_output, recorder.on_exit, shell="true")

        await manager.open(SESSION, None, 80, 24)
        await eventually(lambda: recorder.exited, timeout=5)

        assert recorder.exited == [SESSION.id]
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_missing_shell(self, recorder):
        manager = TerminalManager(
            recorder.on_output, recorder.on_exit, shell="/nonexistent/shell"
        )
        with pytest.raises(TerminalError):
            await manager.open(SESSION, None, 80, 24)
