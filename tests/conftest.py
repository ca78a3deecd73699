"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from pairlink.identity import DeviceIdentity


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    import logging

    from pairlink.logging import reset_logging

    logger = logging.getLogger("pairlink")
    level = logger.level
    reset_logging()
    yield
    reset_logging()
    logger.setLevel(level)


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEndpoint:
    """In-memory stand-in for the mobile endpoint."""

    def __init__(self, fail: bool = False, hang: bool = False):
        self.fail = fail
        self.hang = hang
        self.started = False
        self.stop_calls = 0
        self.closed_mobiles = []
        self.sent = []

    async def start(self, host: str, port: int) -> None:
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise OSError("Address already in use")
        self.started = True

    async def stop(self) -> None:
        self.stop_calls += 1

    def get_port(self) -> int:
        return 8765

    def close_mobile(self, mobile_id: str) -> None:
        self.closed_mobiles.append(mobile_id)

    async def send_to_mobile(self, mobile_id: str, message: dict) -> bool:
        self.sent.append((mobile_id, message))
        return True


class FakeEndpointFactory:
    """Builds FakeEndpoints and remembers each one."""

    def __init__(self):
        self.fail = False
        self.hang = False
        self.created = []

    def __call__(self, broker) -> FakeEndpoint:
        endpoint = FakeEndpoint(fail=self.fail, hang=self.hang)
        self.created.append(endpoint)
        return endpoint

    @property
    def last(self) -> FakeEndpoint:
        return self.created[-1]


class FakeTerminal:
    """Terminal whose output and exit are driven by the test."""

    def __init__(self, argv, cwd, cols, rows):
        self.argv = argv
        self.cwd = cwd
        self.size = (cols, rows)
        self.written = []
        self.closed = False
        self.force_closed = False
        self.fail_writes = False
        self.exit_status = None
        self._output = asyncio.Queue()

    async def pump(self, on_output):
        while (chunk := await self._output.get()) is not None:
            await on_output(chunk)

    async def wait(self):
        return self.exit_status

    def write(self, data: bytes) -> None:
        if self.closed or self.fail_writes:
            raise OSError("terminal closed")
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def close(self, force: bool = False) -> None:
        self.force_closed = self.force_closed or force
        if not self.closed:
            self.closed = True
            self._output.put_nowait(None)

    def emit(self, data: bytes) -> None:
        self._output.put_nowait(data)

    def exit(self, status: int = 0) -> None:
        self.exit_status = status
        self._output.put_nowait(None)


class FakeSpawner:
    """Spawns FakeTerminals and remembers each one."""

    def __init__(self):
        self.fail = False
        self.spawned = []

    async def __call__(self, argv, cwd, cols, rows) -> FakeTerminal:
        if self.fail:
            raise FileNotFoundError(2, "No such file or directory", argv[0])
        terminal = FakeTerminal(argv, cwd, cols, rows)
        self.spawned.append(terminal)
        return terminal

    @property
    def last(self) -> FakeTerminal:
        return self.spawned[-1]


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it holds or timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return DeviceIdentity(device_id="swift-tiger-42", device_name="Workstation", created_at=0.0)


@pytest.fixture
def endpoints():
    return FakeEndpointFactory()


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def fixed_pin(monkeypatch):
    """Make every issued PIN "123456"."""
    monkeypatch.setattr("pairlink.pairing.pin.secrets.randbelow", lambda n: 123456)
