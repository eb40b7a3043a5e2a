"""Reconnecting client for the relay server.

Application code subscribes to server event kinds (``connected``,
``state``, ``output``, ``exit``, ``error``) and to local link
events:

- ``open``: transport connected
- ``disconnect``: ``{"code", "reason"}`` after every close
- ``error``: ``{"message"}`` on transport failures, and when the
  server rejects the token (close code 1008, never retried)
- ``gave_up``: ``{"message"}`` once retries are exhausted

Delivery is not guaranteed across reconnects; the server replays
its backlog and current state on every join instead.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import structlog

from agentrelay.client.transport import (
    Connector,
    LinkClosed,
    LinkTransport,
    websocket_connector,
)
from agentrelay.errors import ParseError, TransportError
from agentrelay.events import EventEmitter, Listener
from agentrelay.sessions.models import AgentState

logger = structlog.get_logger()

# Server close code for a bad token; never retried.
CLOSE_INVALID_TOKEN = 1008

# (delay_seconds, callback) -> cancellable handle
Scheduler = Callable[[float, Callable[[], None]], asyncio.TimerHandle]


class LinkState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"
    GIVEN_UP = "given_up"
    REJECTED = "rejected"


def backoff_delay(base: float, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return base * 2 ** (attempt - 1)


def parse_server_event(text: str) -> dict[str, Any]:
    """Decode one server frame into an event dict.

    Raises:
        ParseError: Not a JSON object with a string ``type``.
    """
    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON: {exc.msg}") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        msg = "Event without a type"
        raise ParseError(msg)
    return event


class RemoteLink:
    """A connection to the relay that retries with exponential backoff.

    Retry ``n`` waits ``base_delay * 2**(n-1)`` seconds. After
    ``max_attempts`` failed retries the link emits ``gave_up``
    and stays down. ``disconnect()`` never triggers a retry.
    """

    def __init__(
        self,
        connector: Connector | None = None,
        *,
        base_delay: float = 1.0,
        max_attempts: int = 5,
        schedule: Scheduler | None = None,
    ) -> None:
        self.url: str | None = None
        self.state = LinkState.IDLE
        self.attempts = 0
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self._connector = connector or websocket_connector
        self._schedule = schedule
        self._events = EventEmitter()
        self._intentional = False
        self._transport: LinkTransport | None = None
        self._task: asyncio.Task[None] | None = None
        self._retry: asyncio.TimerHandle | None = None

    # ── subscriptions ───────────────────────────────────

    def on(self, kind: str, listener: Listener) -> None:
        self._events.on(kind, listener)

    def off(self, kind: str, listener: Listener) -> None:
        self._events.off(kind, listener)

    # ── lifecycle ───────────────────────────────────────

    def connect(self, url: str) -> None:
        """Start (or restart) connecting to ``url``.

        A connection already in progress or open is dropped first.
        """
        self._cancel_retry()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        self._transport = None
        self.url = url
        self._intentional = False
        self.attempts = 0
        self._start_attempt()

    def disconnect(self) -> None:
        """Close for good; pending retries are cancelled."""
        self._intentional = True
        self._cancel_retry()
        was_open = self.state == LinkState.OPEN
        task = self._task
        if task is not None and not task.done():
            task.cancel()
        self.state = LinkState.CLOSED
        logger.info("link_disconnected", url=self.url)
        if was_open:
            self._events.emit("disconnect", {"code": 1000, "reason": "Client disconnect"})

    async def wait(self) -> None:
        """Wait for the current connection attempt to finish."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # ── sending ─────────────────────────────────────────

    async def send(self, type: str, **fields: Any) -> bool:
        """Send one message; False when not connected."""
        if self.state != LinkState.OPEN or self._transport is None:
            logger.warning("link_send_dropped", type=type)
            return False
        try:
            await self._transport.send(json.dumps({"type": type, **fields}))
        except TransportError as exc:
            logger.warning("link_send_failed", type=type, error=str(exc))
            return False
        return True

    async def send_input(self, data: str) -> bool:
        return await self.send("input", data=data)

    async def force_state(self, state: AgentState) -> bool:
        return await self.send("forceState", state=state.value)

    # ── internals ───────────────────────────────────────

    def _start_attempt(self) -> None:
        self._retry = None
        if self._intentional or self.url is None:
            return
        self.state = LinkState.CONNECTING
        logger.info("link_connecting", url=self.url, attempt=self.attempts)
        self._task = asyncio.get_running_loop().create_task(self._run(self.url))

    async def _run(self, url: str) -> None:
        try:
            transport = await self._connector(url)
        except TransportError as exc:
            if self._task is not asyncio.current_task():
                return
            self.state = LinkState.ERROR
            self._events.emit("error", {"message": str(exc)})
            self._on_closed(None, str(exc))
            return

        if self._intentional or self._task is not asyncio.current_task():
            await transport.close()
            return

        self._transport = transport
        self.attempts = 0
        self.state = LinkState.OPEN
        logger.info("link_open", url=url)
        self._events.emit("open", {"url": url})

        code: int | None = None
        reason = ""
        try:
            while True:
                self._dispatch(await transport.recv())
        except LinkClosed as exc:
            code, reason = exc.code, exc.reason
        except TransportError as exc:
            reason = str(exc)
            if self._task is asyncio.current_task():
                self.state = LinkState.ERROR
                self._events.emit("error", {"message": "Connection error"})
        except asyncio.CancelledError:
            await transport.close()
            raise
        finally:
            if self._transport is transport:
                self._transport = None
        if self._task is not asyncio.current_task():
            # Superseded by a newer connect().
            return
        self._on_closed(code, reason)

    def _dispatch(self, text: str) -> None:
        try:
            event = parse_server_event(text)
        except ParseError as exc:
            logger.warning("link_event_invalid", error=str(exc))
            return
        self._events.emit(event["type"], event)

    def _on_closed(self, code: int | None, reason: str) -> None:
        if self.state != LinkState.ERROR:
            self.state = LinkState.CLOSED
        logger.info("link_closed", code=code, reason=reason)
        self._events.emit("disconnect", {"code": code, "reason": reason})
        if self._intentional:
            return

        if code == CLOSE_INVALID_TOKEN:
            self.state = LinkState.REJECTED
            logger.warning("link_rejected", url=self.url, reason=reason)
            self._events.emit("error", {"message": reason or "Invalid token"})
            return

        if self.attempts >= self.max_attempts:
            self.state = LinkState.GIVEN_UP
            logger.warning("link_gave_up", attempts=self.attempts)
            self._events.emit(
                "gave_up",
                {"message": f"Failed to reconnect after {self.max_attempts} attempts"},
            )
            return

        self.attempts += 1
        delay = backoff_delay(self.base_delay, self.attempts)
        logger.info(
            "link_retry_scheduled",
            attempt=self.attempts,
            max_attempts=self.max_attempts,
            delay=delay,
        )
        schedule = self._schedule or asyncio.get_running_loop().call_later
        self._retry = schedule(delay, self._start_attempt)

    def _cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
