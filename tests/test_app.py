"""HTTP and WebSocket tests for the relay service."""
import pytest
from fastapi.testclient import TestClient

import main


@pytest.fixture(autouse=True)
def reset_relay():
    main.relay.sessions.clear()
    main.relay.memberships.clear()
    main.relay.presence_events = True
    yield
    main.relay.sessions.clear()
    main.relay.memberships.clear()


@pytest.fixture
def client():
    return TestClient(main.app)


def _join(ws, session_id, role):
    ws.send_json({"type": "join", "sessionId": session_id, "role": role})


def test_health_routes(client):
    assert client.get("/").json() == "Welcome to the support chat relay"
    assert client.get("/ping").json() == "pong"

    health = client.get("/api/health").json()
    assert health["message"] == "Backend is connected!"
    assert health["sessions"] == 0


def test_ws_conversation_survives_volunteer_reconnect(client):
    with client.websocket_connect("/ws") as client_ws:
        _join(client_ws, "abc123", "client")
        assert client_ws.receive_json() == {"type": "history", "messages": []}

        with client.websocket_connect("/ws") as volunteer_ws:
            _join(volunteer_ws, "abc123", "volunteer")
            assert volunteer_ws.receive_json() == {"type": "history", "messages": []}
            assert client_ws.receive_json() == {"type": "volunteer_joined"}

            client_ws.send_json({"type": "message", "content": "hello"})
            for ws in (client_ws, volunteer_ws):
                event = ws.receive_json()
                assert event["type"] == "message"
                assert event["message"]["content"] == "hello"
                assert event["message"]["sender"] == "client"
                assert event["message"]["sessionId"] == "abc123"

        assert client_ws.receive_json() == {"type": "volunteer_left"}

        client_ws.send_json({"type": "message", "content": "are you there?"})
        assert client_ws.receive_json()["message"]["content"] == "are you there?"

        with client.websocket_connect("/ws") as volunteer_ws:
            _join(volunteer_ws, "abc123", "volunteer")
            history = volunteer_ws.receive_json()
            assert history["type"] == "history"
            assert [m["content"] for m in history["messages"]] == ["hello", "are you there?"]
            assert client_ws.receive_json() == {"type": "volunteer_joined"}


def test_ws_malformed_frames_do_not_close_the_socket(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("this is not json")
        ws.send_json({"type": "message", "content": "before join"})
        _join(ws, "s-malformed", "client")
        assert ws.receive_json() == {"type": "history", "messages": []}


def test_ws_end_starts_fresh_session(client):
    with client.websocket_connect("/ws") as ws:
        _join(ws, "s-end", "client")
        ws.receive_json()
        ws.send_json({"type": "message", "content": "private"})
        ws.receive_json()
        ws.send_json({"type": "end"})
        _join(ws, "s-end", "client")
        assert ws.receive_json() == {"type": "history", "messages": []}

    ended = main.store.get_session("s-end")
    assert ended is not None
    assert ended.is_active is False


def test_start_and_end_chat_session(client):
    response = client.post("/api/chat/start", json={"volunteerId": "vol-1"})
    assert response.status_code == 200
    session_id = response.json()["sessionId"]

    recorded = main.store.get_session(session_id)
    assert recorded.is_active is True
    assert recorded.volunteer_id == "vol-1"
    assert session_id in main.relay.sessions

    assert client.post("/end-session", json={"session_id": session_id}).json() == {"success": True}
    assert main.store.get_session(session_id).is_active is False
    assert session_id not in main.relay.sessions


def test_start_chat_session_reports_storage_failure(client, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(main.store, "create_session", broken)
    response = client.post("/api/chat/start", json={})
    assert response.status_code == 400
    assert response.json() == {"error": "Failed to start chat session"}
    assert main.relay.sessions == {}


def test_end_stale_sessions_reaps_empty_sessions(client, monkeypatch):
    session_id = client.post("/api/chat/start", json={}).json()["sessionId"]

    assert client.get("/end-stale-sessions").json() == {"success": True, "ended": []}

    monkeypatch.setattr(main, "RELAY_IDLE_TIMEOUT_MINUTES", 0)
    assert client.get("/end-stale-sessions").json() == {"success": True, "ended": [session_id]}
    assert main.store.get_session(session_id).is_active is False


def test_ws_accepts_binary_frames(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(b"\xff\xfe not json")
        ws.send_bytes(b'{"type": "join", "sessionId": "s-binary", "role": "client"}')
        assert ws.receive_json() == {"type": "history", "messages": []}

        ws.send_bytes(b'{"type": "message", "content": "sent as bytes"}')
        event = ws.receive_json()
        assert event["message"]["content"] == "sent as bytes"


def test_end_session_ignores_non_object_bodies(client):
    session_id = client.post("/api/chat/start", json={}).json()["sessionId"]

    assert client.post("/end-session", json=["not", "an", "object"]).json() == {"success": True}
    assert client.post("/end-session", content=b"not json").json() == {"success": True}
    assert session_id in main.relay.sessions
