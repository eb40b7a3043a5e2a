from agentrelay.client.remote_link import LinkState, RemoteLink
from agentrelay.client.transport import LinkClosed, websocket_connector

__all__ = [
    "LinkClosed",
    "LinkState",
    "RemoteLink",
    "websocket_connector",
]
