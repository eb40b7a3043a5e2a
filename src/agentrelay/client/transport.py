"""Client transports for the remote link.

The default transport wraps the synchronous websocket-client
library; blocking calls run in worker threads via
``asyncio.to_thread`` so the link stays on the event loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

import websocket  # type: ignore[import-untyped]

from agentrelay.errors import TransportError


class LinkClosed(TransportError):
    """The peer closed the connection."""

    def __init__(self, code: int | None = None, reason: str = "") -> None:
        super().__init__(f"Connection closed ({code}): {reason}")
        self.code = code
        self.reason = reason


class LinkTransport(Protocol):
    """An open connection to the relay server."""

    async def recv(self) -> str:
        """Next text frame; raises LinkClosed or TransportError."""
        ...

    async def send(self, text: str) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[LinkTransport]]


def _parse_close(data: bytes) -> tuple[int | None, str]:
    if len(data) < 2:
        return None, ""
    code = int.from_bytes(data[:2], "big")
    return code, data[2:].decode("utf-8", errors="replace")


class WebSocketClientTransport:
    """LinkTransport over a websocket-client connection."""

    def __init__(self, ws: websocket.WebSocket) -> None:
        self._ws = ws

    async def recv(self) -> str:
        try:
            opcode, data = await asyncio.to_thread(self._ws.recv_data)
        except websocket.WebSocketConnectionClosedException as exc:
            raise LinkClosed(None, "connection lost") from exc
        except (OSError, websocket.WebSocketException) as exc:
            raise TransportError(str(exc)) from exc

        if opcode == websocket.ABNF.OPCODE_CLOSE:
            code, reason = _parse_close(data)
            raise LinkClosed(code, reason)
        if isinstance(data, bytes):
            return data.decode("utf-8", errors="replace")
        return data

    async def send(self, text: str) -> None:
        try:
            await asyncio.to_thread(self._ws.send, text)
        except (OSError, websocket.WebSocketException) as exc:
            raise TransportError(str(exc)) from exc

    async def close(self) -> None:
        await asyncio.to_thread(self._ws.close)


async def websocket_connector(url: str, timeout: float = 10.0) -> LinkTransport:
    """Open a websocket-client connection to ``url``.

    Raises:
        TransportError: The handshake failed.
    """
    try:
        ws = await asyncio.to_thread(
            websocket.create_connection,
            url,
            timeout=timeout,
        )
    except (OSError, websocket.WebSocketException) as exc:
        raise TransportError(f"Cannot connect to {url}: {exc}") from exc
    # Block on recv indefinitely; the connect timeout only covers the handshake.
    ws.settimeout(None)
    return WebSocketClientTransport(ws)
