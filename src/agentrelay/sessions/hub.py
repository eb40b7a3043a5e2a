"""Session hub: one PTY session relayed to many remote clients."""

from __future__ import annotations

import asyncio
import secrets
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from agentrelay.errors import AuthError, SpawnError, TransportError
from agentrelay.sessions.frame_coalescer import FrameCoalescer
from agentrelay.sessions.models import (
    AgentState,
    ClientPhase,
    ConnectedMessage,
    ErrorMessage,
    ExitMessage,
    OutputMessage,
    ServerMessage,
    SessionPhase,
    StateMessage,
    encode,
)
from agentrelay.sessions.pty_session import PtyExit, PtyHandle, Spawner, spawn_pty
from agentrelay.sessions.state_classifier import StateClassifier

logger = structlog.get_logger()

# Close codes sent to clients.
CLOSE_SHUTDOWN = 1001
CLOSE_INVALID_TOKEN = 1008

SHUTDOWN_REASON = "Server shutting down"


def generate_token() -> str:
    """Random credential, 32 URL-safe characters."""
    return secrets.token_urlsafe(24)


@dataclass
class Session:
    """The single child-process session owned by a hub."""

    token: str
    command: str
    args: list[str] = field(default_factory=list)
    cols: int = 80
    rows: int = 30
    phase: SessionPhase = SessionPhase.NOT_STARTED
    pty: PtyHandle | None = None
    last_exit: PtyExit | None = None

    def check_token(self, presented: str | None) -> bool:
        return secrets.compare_digest(
            (presented or "").encode("utf-8"),
            self.token.encode("utf-8"),
        )


class OutputBacklog:
    """Most recent output chunks, oldest evicted first."""

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = capacity
        self._chunks: deque[str] = deque(maxlen=capacity)

    def append(self, chunk: str) -> None:
        self._chunks.append(chunk)

    def snapshot(self) -> str:
        """All retained chunks joined as one frame."""
        return "".join(self._chunks)

    def chunks(self) -> list[str]:
        return list(self._chunks)

    def __len__(self) -> int:
        return len(self._chunks)


class ClientTransport(Protocol):
    """Socket a RelayClient writes to."""

    async def send_text(self, text: str) -> None: ...

    async def close(self, code: int, reason: str) -> None: ...


@dataclass(frozen=True)
class _Close:
    code: int
    reason: str


class RelayClient:
    """A connected remote viewer.

    Messages go through an outbox drained by a dedicated task,
    so a slow client never holds up the hub.
    """

    def __init__(
        self,
        transport: ClientTransport,
        on_failed: Callable[[RelayClient], None],
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.transport = transport
        self.phase = ClientPhase.CONNECTING
        self._on_failed = on_failed
        self._outbox: asyncio.Queue[str | _Close] = asyncio.Queue()
        self._writer: asyncio.Task[None] | None = None

    def open(self) -> None:
        if self.phase != ClientPhase.CONNECTING:
            return
        self.phase = ClientPhase.OPEN
        self._writer = asyncio.get_running_loop().create_task(self._drain())

    def send(self, message: ServerMessage) -> bool:
        """Queue a message; False when the client is closed."""
        if self.phase == ClientPhase.CLOSED:
            return False
        self._outbox.put_nowait(encode(message))
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        """Deliver whatever is queued, then close the socket."""
        if self.phase == ClientPhase.CLOSED:
            return
        self.phase = ClientPhase.CLOSED
        self._outbox.put_nowait(_Close(code, reason))

    def detach(self) -> None:
        """Stop writing; the socket is already gone."""
        self.phase = ClientPhase.CLOSED
        writer = self._writer
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()

    async def wait_drained(self) -> None:
        if self._writer is not None:
            await asyncio.gather(self._writer, return_exceptions=True)

    async def _drain(self) -> None:
        while True:
            item = await self._outbox.get()
            try:
                if isinstance(item, _Close):
                    await self.transport.close(item.code, item.reason)
                    return
                await self.transport.send_text(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("client_send_failed", client=self.id, error=str(exc))
                self.phase = ClientPhase.CLOSED
                self._on_failed(self)
                return


class SessionHub:
    """Owns the session, its clients, and the output pipeline.

    PTY output → backlog + local mirror + frame coalescer →
    state classifier → state broadcasts. Raw output is only
    sent to clients as the backlog replay on join.

    Everything runs on the event loop thread; that is the only
    writer of session, backlog and classifier state.
    """

    def __init__(
        self,
        command: str = "claude",
        args: Sequence[str] = (),
        *,
        cols: int = 80,
        rows: int = 30,
        backlog_size: int = 100,
        window_size: int = 1000,
        frame_delay: float = 0.1,
        sync_hold: float = 2.0,
        spawner: Spawner = spawn_pty,
        mirror: Callable[[str], None] | None = None,
        token: str | None = None,
    ) -> None:
        self.session = Session(
            token=token or generate_token(),
            command=command,
            args=list(args),
            cols=cols,
            rows=rows,
        )
        self.backlog = OutputBacklog(backlog_size)
        self.classifier = StateClassifier(window_size)
        self.mirror = mirror
        self._coalescer = FrameCoalescer(self._on_frame, frame_delay, sync_hold)
        self._spawner = spawner
        self._clients: dict[str, RelayClient] = {}
        self._closed = False

    @property
    def token(self) -> str:
        return self.session.token

    @property
    def state(self) -> AgentState:
        return self.classifier.state

    @property
    def clients(self) -> list[RelayClient]:
        return list(self._clients.values())

    @property
    def is_shut_down(self) -> bool:
        return self._closed

    # ── clients ─────────────────────────────────────────

    def register_client(
        self,
        presented_token: str | None,
        transport: ClientTransport,
    ) -> RelayClient:
        """Admit a client and bring it up to date.

        Sends ``connected``, the current state and the backlog,
        then starts the PTY if nothing is running yet.

        Raises:
            AuthError: Token mismatch; nothing is registered or started.
            TransportError: The hub is shutting down.
        """
        if self._closed:
            msg = "Hub is shut down"
            raise TransportError(msg)
        if not self.session.check_token(presented_token):
            logger.warning("client_rejected", reason="invalid_token")
            msg = "Invalid token"
            raise AuthError(msg)

        client = RelayClient(transport, on_failed=self.remove_client)
        self._clients[client.id] = client
        client.send(ConnectedMessage())
        client.send(StateMessage.from_change(self.classifier.snapshot()))
        if len(self.backlog):
            client.send(OutputMessage(data=self.backlog.snapshot()))
        client.open()
        logger.info(
            "client_registered",
            client=client.id,
            clients=len(self._clients),
        )

        if self.session.pty is None:
            self._start_session()
        return client

    def remove_client(self, client: RelayClient) -> None:
        """Forget a client; the session and other clients are untouched."""
        client.detach()
        if self._clients.pop(client.id, None) is not None:
            logger.info(
                "client_removed",
                client=client.id,
                clients=len(self._clients),
            )

    def broadcast(self, message: ServerMessage) -> None:
        for client in self.clients:
            client.send(message)

    # ── input ───────────────────────────────────────────

    def accept_input(self, client: RelayClient, data: str | bytes) -> None:
        """Forward a client's keystrokes verbatim."""
        logger.debug("client_input", client=client.id, size=len(data))
        self._write(data)

    def accept_local_input(self, data: str | bytes) -> None:
        """Forward keystrokes typed on the server's own terminal."""
        self._write(data)

    def force_state(self, state: AgentState) -> None:
        change = self.classifier.force(state)
        if change is not None:
            self.broadcast(StateMessage.from_change(change))

    def _write(self, data: str | bytes) -> None:
        pty = self.session.pty
        if pty is None:
            return
        pty.write(data)

    # ── session ─────────────────────────────────────────

    def _start_session(self) -> None:
        session = self.session
        logger.info("session_starting", command=session.command, args=session.args)
        try:
            pty = self._spawner(
                session.command,
                session.args,
                cols=session.cols,
                rows=session.rows,
            )
        except SpawnError as exc:
            logger.error("session_spawn_failed", command=session.command, error=str(exc))
            self.broadcast(ErrorMessage(message=str(exc)))
            return

        pty.on_data(self._on_pty_data)
        pty.on_exit(lambda status: self._on_pty_exit(pty, status))
        session.pty = pty
        session.phase = SessionPhase.RUNNING
        session.last_exit = None

    def _on_pty_data(self, data: str) -> None:
        self.backlog.append(data)
        if self.mirror is not None:
            try:
                self.mirror(data)
            except OSError:
                logger.debug("local_mirror_failed")
        self._coalescer.feed(data)

    def _on_frame(self, frame: str) -> None:
        change = self.classifier.feed(frame)
        if change is not None:
            self.broadcast(StateMessage.from_change(change))

    def _on_pty_exit(self, pty: PtyHandle, status: PtyExit) -> None:
        if self.session.pty is not pty:
            return
        self._coalescer.flush()
        logger.info(
            "session_exited",
            exit_code=status.exit_code,
            signal=status.signal,
        )
        self.broadcast(ExitMessage(exit_code=status.exit_code, signal=status.signal))
        # The next child starts from scratch.
        self.classifier.reset()
        self.session.pty = None
        self.session.phase = SessionPhase.EXITED
        self.session.last_exit = status

    # ── shutdown ────────────────────────────────────────

    async def shutdown(self, timeout: float = 2.0) -> None:
        """Close every client, kill the PTY. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        logger.info("hub_shutting_down", clients=len(self._clients))

        clients = self.clients
        self._clients.clear()
        for client in clients:
            client.close(CLOSE_SHUTDOWN, SHUTDOWN_REASON)

        if self.session.pty is not None:
            self.session.pty.kill()
        self._coalescer.close()

        if clients:
            await asyncio.wait(
                [asyncio.ensure_future(c.wait_drained()) for c in clients],
                timeout=timeout,
            )
