import asyncio
import json

import pytest

from agentrelay.client import LinkClosed, LinkState, RemoteLink
from agentrelay.client.remote_link import backoff_delay, parse_server_event
from agentrelay.errors import ParseError, TransportError
from agentrelay.sessions.models import AgentState

URL = "ws://127.0.0.1:3456?token=abc"


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class FakeLinkTransport:
    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True


class FakeConnector:
    """Hands out queued transports; refuses once they run out."""

    def __init__(self, *results):
        self.results = list(results)
        self.urls: list[str] = []

    async def __call__(self, url):
        self.urls.append(url)
        result = self.results.pop(0) if self.results else TransportError("refused")
        if isinstance(result, Exception):
            raise result
        return result


class FakeHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Records retry timers instead of sleeping."""

    def __init__(self):
        self.calls: list[tuple[float, object, FakeHandle]] = []

    def __call__(self, delay, callback):
        handle = FakeHandle()
        self.calls.append((delay, callback, handle))
        return handle

    @property
    def delays(self) -> list[float]:
        return [delay for delay, _, _ in self.calls]

    def fire(self):
        _, callback, handle = self.calls[-1]
        if not handle.cancelled:
            callback()


def _recorder(link, *kinds):
    seen: dict[str, list] = {kind: [] for kind in kinds}
    for kind in kinds:
        link.on(kind, seen[kind].append)
    return seen


def test_backoff_doubles():
    assert [backoff_delay(1.0, n) for n in range(1, 6)] == [1, 2, 4, 8, 16]


def test_parse_server_event_rejects_untyped():
    with pytest.raises(ParseError):
        parse_server_event('{"data": 1}')
    with pytest.raises(ParseError):
        parse_server_event("<html>")


@pytest.mark.asyncio
async def test_gives_up_after_five_retries():
    connector = FakeConnector()
    scheduler = FakeScheduler()
    link = RemoteLink(connector, schedule=scheduler)
    seen = _recorder(link, "gave_up", "error")

    link.connect(URL)
    await link.wait()
    for _ in range(5):
        scheduler.fire()
        await link.wait()

    assert scheduler.delays == [1, 2, 4, 8, 16]
    assert len(connector.urls) == 6
    assert len(seen["error"]) == 6
    assert seen["gave_up"] == [{"message": "Failed to reconnect after 5 attempts"}]
    assert link.state == LinkState.GIVEN_UP


@pytest.mark.asyncio
async def test_successful_open_resets_backoff():
    first, second = FakeLinkTransport(), FakeLinkTransport()
    connector = FakeConnector(first, TransportError("refused"), second)
    scheduler = FakeScheduler()
    link = RemoteLink(connector, schedule=scheduler)
    seen = _recorder(link, "open")

    first.incoming.put_nowait(LinkClosed(1006, "gone"))
    link.connect(URL)
    await link.wait()
    scheduler.fire()
    await link.wait()

    second.incoming.put_nowait(LinkClosed(1006, "gone again"))
    scheduler.fire()
    await link.wait()

    assert scheduler.delays == [1, 2, 1]
    assert len(seen["open"]) == 2


@pytest.mark.asyncio
async def test_disconnect_during_backoff_cancels_retry():
    scheduler = FakeScheduler()
    link = RemoteLink(FakeConnector(), schedule=scheduler)

    link.connect(URL)
    await link.wait()
    assert len(scheduler.calls) == 1

    link.disconnect()

    assert scheduler.calls[0][2].cancelled
    assert link.state == LinkState.CLOSED


@pytest.mark.asyncio
async def test_disconnect_while_open_does_not_reconnect():
    transport = FakeLinkTransport()
    connector = FakeConnector(transport)
    scheduler = FakeScheduler()
    link = RemoteLink(connector, schedule=scheduler)
    seen = _recorder(link, "disconnect")

    link.connect(URL)
    await settle()
    assert link.state == LinkState.OPEN

    link.disconnect()
    await link.wait()

    assert transport.closed
    assert scheduler.calls == []
    assert seen["disconnect"] == [{"code": 1000, "reason": "Client disconnect"}]
    assert len(connector.urls) == 1


@pytest.mark.asyncio
async def test_events_dispatched_by_type():
    transport = FakeLinkTransport()
    scheduler = FakeScheduler()
    link = RemoteLink(FakeConnector(transport), schedule=scheduler)
    seen = _recorder(link, "connected", "state", "disconnect")

    for frame in (
        '{"type": "connected", "message": "Connected to agentrelay server"}',
        "garbage",
        '{"type": "state", "state": "waiting", "question": "Go?",'
        ' "options": null, "rawText": "Go?"}',
    ):
        transport.incoming.put_nowait(frame)
    transport.incoming.put_nowait(LinkClosed(1001, "Server shutting down"))

    link.connect(URL)
    await link.wait()

    assert seen["connected"][0]["message"] == "Connected to agentrelay server"
    assert seen["state"] == [
        {
            "type": "state",
            "state": "waiting",
            "question": "Go?",
            "options": None,
            "rawText": "Go?",
        }
    ]
    assert seen["disconnect"] == [{"code": 1001, "reason": "Server shutting down"}]
    assert scheduler.delays == [1]

    link.disconnect()


@pytest.mark.asyncio
async def test_send_only_when_open():
    transport = FakeLinkTransport()
    link = RemoteLink(FakeConnector(transport), schedule=FakeScheduler())

    assert await link.send_input("x") is False

    link.connect(URL)
    await settle()
    assert await link.send_input("2\r") is True
    assert await link.force_state(AgentState.WORKING) is True

    assert transport.sent == [
        {"type": "input", "data": "2\r"},
        {"type": "forceState", "state": "working"},
    ]

    link.disconnect()
    await link.wait()
    assert await link.send_input("late") is False


@pytest.mark.asyncio
async def test_invalid_token_close_is_not_retried():
    transport = FakeLinkTransport()
    scheduler = FakeScheduler()
    link = RemoteLink(FakeConnector(transport), schedule=scheduler)
    seen = _recorder(link, "error", "disconnect", "gave_up")

    transport.incoming.put_nowait(LinkClosed(1008, "Invalid token"))
    link.connect(URL)
    await link.wait()

    assert scheduler.calls == []
    assert link.state == LinkState.REJECTED
    assert seen["disconnect"] == [{"code": 1008, "reason": "Invalid token"}]
    assert seen["error"] == [{"message": "Invalid token"}]
    assert seen["gave_up"] == []


@pytest.mark.asyncio
async def test_reconnect_replaces_open_connection():
    first, second = FakeLinkTransport(), FakeLinkTransport()
    connector = FakeConnector(first, second)
    scheduler = FakeScheduler()
    link = RemoteLink(connector, schedule=scheduler)

    link.connect(URL)
    await settle()
    link.connect(URL)
    await settle()

    assert first.closed
    assert link.state == LinkState.OPEN
    assert scheduler.calls == []

    # A late close of the replaced socket changes nothing.
    first.incoming.put_nowait(LinkClosed(1006, "gone"))
    await settle()

    assert link.state == LinkState.OPEN
    assert scheduler.calls == []
    assert await link.send_input("y") is True
    assert second.sent == [{"type": "input", "data": "y"}]

    link.disconnect()
    await link.wait()
