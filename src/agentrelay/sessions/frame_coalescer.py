"""Debounce PTY output into frames without splitting atomic redraws."""

import asyncio
import re
from collections.abc import Callable

import structlog

logger = structlog.get_logger()

SYNC_BEGIN = "\x1b[?2026h"
SYNC_END = "\x1b[?2026l"

_SYNC_RE = re.compile(r"\x1b\[\?2026([hl])")
_MARKER_LEN = len(SYNC_BEGIN)


class FrameCoalescer:
    """Accumulate chunks and release them as debounced frames.

    Every chunk restarts a ``delay`` timer; the buffer is emitted
    when it fires. Inside a synchronized update block the timer is
    suspended and the frame goes out as soon as the end marker
    arrives. A block that never ends is released after
    ``sync_hold`` seconds; that is the one case where a block is
    split across frames.

    Must be used from the event loop thread. Only one timer is
    ever pending.
    """

    def __init__(
        self,
        on_frame: Callable[[str], None],
        delay: float = 0.1,
        sync_hold: float = 2.0,
    ) -> None:
        self._on_frame = on_frame
        self._delay = delay
        self._sync_hold = sync_hold
        self._buffer = ""
        self._scan_pos = 0
        self._in_sync = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> str:
        return self._buffer

    @property
    def in_sync(self) -> bool:
        return self._in_sync

    def feed(self, chunk: str) -> None:
        if not chunk:
            return
        self._buffer += chunk
        self._cancel_timer()

        # Rescan the tail of the previous chunk so a marker split
        # across chunks is still seen.
        cut: int | None = None
        for m in _SYNC_RE.finditer(self._buffer, self._scan_pos):
            if m.group(1) == "h":
                self._in_sync = True
            else:
                self._in_sync = False
                cut = m.end()
            self._scan_pos = m.end()
        self._scan_pos = max(self._scan_pos, len(self._buffer) - _MARKER_LEN + 1)

        if cut is not None:
            # A block just completed: ship it now, keep any block
            # that opened after it.
            self._emit(cut)
            if self._in_sync:
                self._schedule(self._sync_hold)
            elif self._buffer:
                self._schedule(self._delay)
        elif self._in_sync:
            self._schedule(self._sync_hold)
        else:
            self._schedule(self._delay)

    def flush(self) -> None:
        """Emit everything buffered now."""
        self._cancel_timer()
        self._emit(len(self._buffer))

    def close(self) -> None:
        self.flush()
        self._in_sync = False

    def _on_timer(self) -> None:
        self._timer = None
        if self._in_sync:
            logger.warning("sync_block_released", pending=len(self._buffer))
            self._in_sync = False
        self._emit(len(self._buffer))

    def _emit(self, upto: int) -> None:
        frame, self._buffer = self._buffer[:upto], self._buffer[upto:]
        self._scan_pos = max(0, self._scan_pos - upto)
        if frame:
            self._on_frame(frame)

    def _schedule(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
