"""PTY session: one child process on a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

import structlog

from agentrelay.errors import SpawnError
from agentrelay.events import EventEmitter
from agentrelay.sessions.models import SessionPhase

logger = structlog.get_logger()

_READ_SIZE = 65536


@dataclass(frozen=True)
class PtyExit:
    """How the child ended.

    ``exit_code`` is None when the child was killed by a signal.
    """

    exit_code: int | None
    signal: int | None

    @classmethod
    def from_returncode(cls, returncode: int) -> PtyExit:
        if returncode < 0:
            return cls(exit_code=None, signal=-returncode)
        return cls(exit_code=returncode, signal=None)


class PtyHandle(Protocol):
    """What the hub needs from a spawned terminal session."""

    def on_data(self, callback: Callable[[str], None]) -> None: ...

    def on_exit(self, callback: Callable[[PtyExit], None]) -> None: ...

    def write(self, data: str | bytes) -> None: ...

    def kill(self, sig: int = signal.SIGTERM) -> None: ...


Spawner = Callable[..., PtyHandle]


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): stdin is the pty slave.
    # Without a controlling tty, Ctrl+C from a client would not
    # turn into SIGINT; the child still runs, so carry on.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class PtySession:
    """A child process attached to a pseudo-terminal.

    Output is read on the event loop with ``add_reader`` and
    delivered to ``data`` listeners in order; ``exit`` fires
    exactly once, after the last ``data``. Writes never block:
    whatever the child does not read yet is queued and drained
    by a loop writer.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cols: int = 80,
        rows: int = 30,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.cols = cols
        self.rows = rows
        self.cwd = cwd or os.getcwd()
        self.env = dict(env) if env is not None else None
        self.phase = SessionPhase.NOT_STARTED
        self.events = EventEmitter()

        self._proc: subprocess.Popen[bytes] | None = None
        self._master_fd = -1
        self._loop: asyncio.AbstractEventLoop | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_input = bytearray()
        self._writer_attached = False
        self._kill_requested = False
        self._exit: PtyExit | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def exit_status(self) -> PtyExit | None:
        return self._exit

    def on_data(self, callback: Callable[[str], None]) -> None:
        self.events.on("data", callback)

    def on_exit(self, callback: Callable[[PtyExit], None]) -> None:
        self.events.on("exit", callback)

    def start(self) -> None:
        """Spawn the child. Must be called from the event loop.

        Raises:
            SpawnError: No pty could be opened or the command
                could not be executed.
        """
        if self.phase != SessionPhase.NOT_STARTED:
            msg = f"PTY session already {self.phase.value}"
            raise RuntimeError(msg)
        self._loop = asyncio.get_running_loop()

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as exc:
            raise SpawnError(self.command, str(exc)) from exc

        env = {**os.environ, **(self.env or {})}
        env["TERM"] = "xterm-256color"
        env["COLUMNS"] = str(self.cols)
        env["LINES"] = str(self.rows)

        try:
            _set_window_size(slave_fd, self.cols, self.rows)
            self._proc = subprocess.Popen(
                [self.command, *self.args],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=self.cwd,
                close_fds=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            os.close(master_fd)
            raise SpawnError(self.command, str(exc)) from exc
        finally:
            os.close(slave_fd)

        self._master_fd = master_fd
        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        self.phase = SessionPhase.RUNNING
        logger.info(
            "pty_started",
            pid=self._proc.pid,
            command=self.command,
            args=self.args,
            cols=self.cols,
            rows=self.rows,
        )

    def write(self, data: str | bytes) -> None:
        """Queue keystrokes for the child; dropped once it has exited."""
        if self.phase != SessionPhase.RUNNING or self._master_fd < 0:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._pending_input.extend(data)
        self._drain_input()

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """Signal the child's process group. Safe to call repeatedly."""
        if self._kill_requested or self._proc is None:
            return
        if self.phase != SessionPhase.RUNNING:
            return
        self._kill_requested = True
        try:
            os.killpg(self._proc.pid, sig)
            logger.info("pty_kill_sent", pid=self._proc.pid, signal=int(sig))
        except ProcessLookupError:
            logger.debug("pty_already_gone", pid=self._proc.pid)
        except PermissionError:
            logger.warning("pty_kill_denied", pid=self._proc.pid)

    # ── loop callbacks ──────────────────────────────────

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once the slave side is closed.
            data = b""
        if not data:
            self._handle_eof()
            return
        text = self._decoder.decode(data)
        if text:
            self.events.emit("data", text)

    def _drain_input(self) -> None:
        if not self._pending_input or self._master_fd < 0:
            return
        try:
            written = os.write(self._master_fd, self._pending_input)
        except BlockingIOError:
            written = 0
        except OSError:
            logger.debug("pty_write_failed", pid=self.pid)
            self._pending_input.clear()
            written = 0
        del self._pending_input[:written]

        assert self._loop is not None
        if self._pending_input and not self._writer_attached:
            self._loop.add_writer(self._master_fd, self._drain_input)
            self._writer_attached = True
        elif not self._pending_input and self._writer_attached:
            self._loop.remove_writer(self._master_fd)
            self._writer_attached = False

    def _handle_eof(self) -> None:
        assert self._loop is not None
        self._loop.remove_reader(self._master_fd)
        if self._writer_attached:
            self._loop.remove_writer(self._master_fd)
            self._writer_attached = False
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.events.emit("data", tail)
        os.close(self._master_fd)
        self._master_fd = -1
        self._pending_input.clear()
        self._loop.create_task(self._reap())

    async def _reap(self) -> None:
        assert self._proc is not None
        returncode = await asyncio.to_thread(self._proc.wait)
        self._exit = PtyExit.from_returncode(returncode)
        self.phase = SessionPhase.EXITED
        logger.info(
            "pty_exited",
            pid=self._proc.pid,
            exit_code=self._exit.exit_code,
            signal=self._exit.signal,
        )
        self.events.emit("exit", self._exit)


def spawn_pty(
    command: str,
    args: Sequence[str] = (),
    *,
    cols: int = 80,
    rows: int = 30,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
) -> PtySession:
    """Create and start a PtySession.

    Raises:
        SpawnError: The command could not be launched.
    """
    session = PtySession(command, args, cols=cols, rows=rows, cwd=cwd, env=env)
    session.start()
    return session
