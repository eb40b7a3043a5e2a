import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agentrelay.main import app as module_app
from agentrelay.main import create_app
from agentrelay.sessions.hub import SessionHub
from agentrelay.sessions.models import SessionPhase

TOKEN = "relay-test-token"


@pytest.fixture()
def hub(spawner) -> SessionHub:
    return SessionHub(spawner=spawner, token=TOKEN, frame_delay=0.01)


@pytest.fixture()
def test_client(hub):
    with TestClient(create_app(hub=hub)) as tc:
        yield tc


def test_bad_token_closed_with_policy_violation(test_client, spawner):
    with test_client.websocket_connect("/?token=nope") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_text()

    assert exc_info.value.code == 1008
    assert spawner.spawned == []


def test_missing_token_rejected(test_client, spawner):
    with test_client.websocket_connect("/ws") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_text()

    assert exc_info.value.code == 1008
    assert spawner.spawned == []


@pytest.mark.parametrize("path", ["/", "/ws"])
def test_connect_greeting(test_client, spawner, path):
    with test_client.websocket_connect(f"{path}?token={TOKEN}") as ws:
        assert ws.receive_json() == {
            "type": "connected",
            "message": "Connected to agentrelay server",
        }
        assert ws.receive_json() == {"type": "state", "state": "working"}

    assert len(spawner.spawned) == 1


def test_input_and_force_state(test_client, spawner):
    with test_client.websocket_connect(f"/?token={TOKEN}") as ws:
        ws.receive_json()
        ws.receive_json()

        ws.send_json({"type": "input", "data": "1\r"})
        ws.send_text("this is not json")
        ws.send_json({"type": "resize", "cols": 120})
        ws.send_json({"type": "forceState", "state": "waiting"})

        # Messages are handled in order, so the input is written by now.
        state = ws.receive_json()

    assert state["type"] == "state"
    assert state["state"] == "waiting"
    assert spawner.last.writes == ["1\r"]


def test_client_removed_on_disconnect(test_client, hub):
    with test_client.websocket_connect(f"/?token={TOKEN}") as ws:
        ws.receive_json()
        ws.receive_json()
        assert len(hub.clients) == 1

    assert hub.clients == []
    assert hub.session.phase == SessionPhase.RUNNING


@pytest.mark.asyncio
async def test_health(client, monkeypatch, spawner):
    monkeypatch.setattr(
        module_app.state, "hub", SessionHub(spawner=spawner), raising=False
    )

    resp = await client.get("/api/v1/health")

    assert resp.status_code == 200
    assert resp.json() == {
        "status": "ok",
        "version": "0.4.0",
        "session": "not_started",
        "clients": 0,
        "state": "working",
    }
