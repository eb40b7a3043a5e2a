"""WebSocket endpoint remote clients connect to."""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from agentrelay.errors import AuthError, ParseError, TransportError
from agentrelay.sessions.hub import CLOSE_INVALID_TOKEN, SessionHub
from agentrelay.sessions.models import (
    ForceStateMessage,
    InputMessage,
    parse_client_message,
)

logger = structlog.get_logger()

router = APIRouter()


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the hub's ClientTransport."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_text(self, text: str) -> None:
        await self._ws.send_text(text)

    async def close(self, code: int, reason: str) -> None:
        await self._ws.close(code=code, reason=reason)


def _hub(websocket: WebSocket) -> SessionHub:
    return websocket.app.state.hub


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


@router.websocket("/")
@router.websocket("/ws")
async def relay_socket(websocket: WebSocket, token: str = "") -> None:
    """Authenticate by ``?token=``, then relay until the socket closes."""
    hub = _hub(websocket)
    await websocket.accept()
    try:
        client = hub.register_client(token, WebSocketTransport(websocket))
    except AuthError:
        logger.warning("connection_rejected", client=str(websocket.client))
        await websocket.close(code=CLOSE_INVALID_TOKEN, reason="Invalid token")
        return
    except TransportError:
        await websocket.close(code=1013, reason="Server shutting down")
        return

    try:
        while True:
            frame = await _receive_frame(websocket)
            try:
                message = parse_client_message(frame)
            except ParseError as exc:
                logger.warning("client_message_invalid", client=client.id, error=str(exc))
                continue
            if isinstance(message, InputMessage):
                hub.accept_input(client, message.data)
            elif isinstance(message, ForceStateMessage):
                hub.force_state(message.state)
    except WebSocketDisconnect as exc:
        logger.info("client_disconnected", client=client.id, code=exc.code)
    except RuntimeError as exc:
        # Raised by Starlette when receiving after the hub closed us.
        logger.debug("client_socket_closed", client=client.id, error=str(exc))
    finally:
        hub.remove_client(client)
