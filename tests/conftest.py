import json
import signal as signal_module
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
import structlog

from agentrelay.config import Settings, override_settings
from agentrelay.errors import SpawnError
from agentrelay.events import EventEmitter
from agentrelay.main import app
from agentrelay.sessions.pty_session import PtyExit


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly selected."""
    markexpr = config.getoption("-m", default="")
    if "integration" in markexpr:
        return

    skip_integration = pytest.mark.skip(reason="use -m integration to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def _test_settings(tmp_path):
    """Override settings so tests use an isolated state dir."""
    override_settings(
        Settings(
            state_dir=str(tmp_path),
            log_to_file=False,
        )
    )
    yield
    override_settings(None)
    structlog.reset_defaults()


class FakePty:
    """Stands in for PtySession; tests push output by hand."""

    def __init__(self, command, args, **options):
        self.command = command
        self.args = list(args)
        self.options = options
        self.writes: list[str | bytes] = []
        self.kills: list[int] = []
        self.events = EventEmitter()

    def on_data(self, callback):
        self.events.on("data", callback)

    def on_exit(self, callback):
        self.events.on("exit", callback)

    def write(self, data):
        self.writes.append(data)

    def kill(self, sig=signal_module.SIGTERM):
        self.kills.append(sig)

    def emit_data(self, text):
        self.events.emit("data", text)

    def emit_exit(self, exit_code=0, signal=None):
        self.events.emit("exit", PtyExit(exit_code=exit_code, signal=signal))


class FakeSpawner:
    """Spawner recording every PTY it creates."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.spawned: list[FakePty] = []

    def __call__(self, command, args, **options):
        if self.fail:
            raise SpawnError(command, "No such file or directory")
        pty = FakePty(command, args, **options)
        self.spawned.append(pty)
        return pty

    @property
    def last(self) -> FakePty:
        return self.spawned[-1]


class FakeTransport:
    """ClientTransport capturing what the hub sends."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[str] = []
        self.closed: tuple[int, str] | None = None

    async def send_text(self, text):
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(text)

    async def close(self, code, reason):
        self.closed = (code, reason)

    def messages(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages()]


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def make_transport():
    def _make(fail: bool = False) -> FakeTransport:
        return FakeTransport(fail=fail)

    return _make


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[httpx.AsyncClient]:
    """Async test client.

    Test modules should set app.state.hub to their own hub
    before using this client.
    """
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
