"""The operator's own terminal: mirror output, pass keystrokes through."""

import asyncio
import os
import sys
import termios
import tty
from collections.abc import Callable
from typing import BinaryIO

import structlog

logger = structlog.get_logger()

CTRL_C = b"\x03"


class LocalConsole:
    """Raw-mode passthrough between this terminal and the PTY.

    Ctrl+C is not forwarded: it calls ``on_interrupt`` so the
    operator can stop the server from the keyboard.
    """

    def __init__(
        self,
        on_interrupt: Callable[[], None],
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        self._on_interrupt = on_interrupt
        self._stdin = stdin or sys.stdin.buffer
        self._stdout = stdout or sys.stdout.buffer
        self._saved_mode: list | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def interactive(self) -> bool:
        return self._stdin.isatty()

    def write(self, data: str) -> None:
        self._stdout.write(data.encode("utf-8", errors="replace"))
        self._stdout.flush()

    def attach(self, on_input: Callable[[bytes], None]) -> None:
        """Start forwarding keystrokes. No-op without a tty."""
        if not self.interactive or self._loop is not None:
            return
        fd = self._stdin.fileno()
        self._saved_mode = termios.tcgetattr(fd)
        tty.setraw(fd)
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(fd, self._on_readable, on_input)
        logger.debug("console_attached")

    def detach(self) -> None:
        """Restore the terminal mode."""
        if self._loop is None:
            return
        fd = self._stdin.fileno()
        self._loop.remove_reader(fd)
        self._loop = None
        if self._saved_mode is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, self._saved_mode)
            self._saved_mode = None
        logger.debug("console_detached")

    def _on_readable(self, on_input: Callable[[bytes], None]) -> None:
        data = os.read(self._stdin.fileno(), 1024)
        if not data:
            self.detach()
            return
        if CTRL_C in data:
            self._on_interrupt()
            return
        on_input(data)
