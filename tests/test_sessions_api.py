import pytest
from fastapi.testclient import TestClient

from conftest import FakeBackend

from app import create_app
from relay.bridge import RedisSessionBridge
from relay.service import Relay

HOST = {"X-User-Id": "host-1"}


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    relay = Relay(RedisSessionBridge(backend), delivery_timeout=1.0)
    app = create_app(relay=relay, backend=backend)
    with TestClient(app) as test_client:
        yield test_client


def create_session(client, **overrides):
    body = {"title": "Weekly sync", "language": "en", **overrides}
    response = client.post("/sessions/", json=body, headers=HOST)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_session_requires_identity(client) -> None:
    response = client.post("/sessions/", json={"title": "Anonymous"})
    assert response.status_code == 401


def test_create_and_fetch_session(client, backend) -> None:
    created = create_session(client, max_participants=3)

    assert created["status"] == "active"
    assert created["ws_url"].endswith("/ws")
    stored = backend.sessions[created["session_id"]]
    assert stored["host_id"] == "host-1"

    details = client.get(f"/sessions/{created['session_id']}").json()
    assert details["title"] == "Weekly sync"
    assert details["max_participants"] == 3
    assert details["online_participants_count"] == 0
    assert details["is_active"] is True
    assert details["is_full"] is False


def test_unknown_session_is_404(client) -> None:
    assert client.get("/sessions/nope").status_code == 404
    assert client.patch("/sessions/nope/status", json={"status": "ended"}, headers=HOST).status_code == 404


def test_joined_socket_is_listed_as_participant(client) -> None:
    session_id = create_session(client)["session_id"]
    with client.websocket_connect("/ws?user_id=viewer-9&role=viewer") as ws:
        connection_id = ws.receive_json()["connection_id"]
        ws.send_json({"event": "join-session", "payload": session_id})
        assert ws.receive_json()["event"] == "session-joined"

        participants = client.get(f"/sessions/{session_id}/participants").json()
        assert participants == [
            {
                "connection_id": connection_id,
                "user_id": "viewer-9",
                "role": "viewer",
                "connected_at": participants[0]["connected_at"],
            }
        ]


def test_only_host_can_change_status(client) -> None:
    session_id = create_session(client)["session_id"]
    response = client.patch(f"/sessions/{session_id}/status", json={"status": "paused"}, headers={"X-User-Id": "guest"})
    assert response.status_code == 403
    response = client.patch(f"/sessions/{session_id}/status", json={"status": "closed"}, headers=HOST)
    assert response.status_code == 422


def test_ending_session_closes_room_and_blocks_joins(client, backend) -> None:
    session_id = create_session(client)["session_id"]
    with client.websocket_connect("/ws?user_id=viewer-1") as ws:
        ws.receive_json()
        ws.send_json({"event": "join-session", "payload": session_id})
        ws.receive_json()

        response = client.patch(f"/sessions/{session_id}/status", json={"status": "ended"}, headers=HOST)
        assert response.status_code == 200
        assert response.json()["disconnected_participants"] == 1
        assert backend.sessions[session_id]["status"] == "ended"

        ended = ws.receive_json()
        assert ended == {"event": "session-ended", "session_id": session_id, "status": "ended"}

        ws.send_json({"event": "join-session", "payload": session_id})
        assert ws.receive_json()["code"] == "invalid_room"


def test_summary_push_reaches_members(client) -> None:
    session_id = create_session(client)["session_id"]
    with client.websocket_connect("/ws?user_id=viewer-1") as ws:
        ws.receive_json()
        ws.send_json({"event": "join-session", "payload": session_id})
        ws.receive_json()

        response = client.post(
            f"/sessions/{session_id}/summary",
            json={"content": "Discussed roadmap", "summaryType": "rolling", "keyPoints": ["roadmap"]},
        )
        assert response.status_code == 200
        assert response.json() == {"session_id": session_id, "delivered": 1, "failed": 0}

        frame = ws.receive_json()
        assert frame["event"] == "summary-update"
        assert frame["payload"]["keyPoints"] == ["roadmap"]


def test_summary_push_validation(client) -> None:
    session_id = create_session(client)["session_id"]
    assert client.post(f"/sessions/{session_id}/summary", json={"summaryType": "final"}).status_code == 422
    assert client.post("/sessions/missing/summary", json={"content": "x"}).status_code == 404

    client.patch(f"/sessions/{session_id}/status", json={"status": "paused"}, headers=HOST)
    assert client.post(f"/sessions/{session_id}/summary", json={"content": "x"}).status_code == 409


def test_health_reports_redis_state(backend) -> None:
    relay = Relay(RedisSessionBridge(backend), delivery_timeout=1.0)
    with TestClient(create_app(relay=relay, backend=backend)) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

        backend.healthy = False
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
