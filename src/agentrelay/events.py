"""Small publish/subscribe registry keyed by event kind."""

from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger()

Listener = Callable[[Any], None]


class EventEmitter:
    """Ordered listener registry.

    ``emit`` works on a snapshot of the listeners, so a handler
    may call ``on``/``off`` for the kind being dispatched; the
    change is visible from the next ``emit``.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, kind: str, listener: Listener) -> None:
        """Subscribe ``listener`` to ``kind`` (ignored if already subscribed)."""
        listeners = self._listeners.setdefault(kind, [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, kind: str, listener: Listener) -> None:
        """Unsubscribe ``listener``; unknown listeners are ignored."""
        listeners = self._listeners.get(kind)
        if not listeners:
            return
        self._listeners[kind] = [cb for cb in listeners if cb != listener]

    def emit(self, kind: str, payload: Any = None) -> None:
        for listener in list(self._listeners.get(kind, ())):
            try:
                listener(payload)
            except Exception:
                logger.exception("listener_failed", kind=kind)

    def listener_count(self, kind: str) -> int:
        return len(self._listeners.get(kind, ()))

    def clear(self) -> None:
        self._listeners.clear()
