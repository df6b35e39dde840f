from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from server.api import SessionApi, status_for_error
from server.session_manager import SessionManager
from server.signaling import SignalingHub
from server.store import InMemoryBalanceStore, InMemorySessionStore, InMemoryUserDirectory
from shared.errors import ChannelUnavailable, InsufficientFunds, LiveSessionError
from shared.models import Role, UserProfile
from shared.protocol import ClientIdentity, SignalAction, build_envelope

CLIENT_HEADERS = {"X-User-Id": "client-1", "X-User-Role": "client"}
READER_HEADERS = {"X-User-Id": "reader-a", "X-User-Role": "reader"}
STRANGER_HEADERS = {"X-User-Id": "client-9", "X-User-Role": "client"}


@pytest.fixture
def client():
    hub = SignalingHub()
    users = InMemoryUserDirectory(
        [
            UserProfile(user_id="reader-a", display_name="Reader A", role=Role.READER, rate_per_minute=Decimal("2.00")),
            UserProfile(user_id="client-1", display_name="Client One", role=Role.CLIENT),
            UserProfile(user_id="client-9", display_name="Client Nine", role=Role.CLIENT),
        ]
    )
    manager = SessionManager(
        InMemorySessionStore(),
        InMemoryBalanceStore({"client-1": "10.00", "client-9": "0.50"}),
        users,
        hub,
        tick_seconds=3600,
    )
    with TestClient(SessionApi(manager, hub).app) as test_client:
        yield test_client


def create_session(client: TestClient, mode: str = "video") -> dict:
    response = client.post("/api/sessions", json={"reader_id": "reader-a", "mode": mode}, headers=CLIENT_HEADERS)
    assert response.status_code == 201
    return response.json()


def test_error_status_mapping() -> None:
    assert status_for_error(InsufficientFunds("low")) == 402
    assert status_for_error(ChannelUnavailable("down")) == 503
    assert status_for_error(LiveSessionError("other")) == 500


def test_request_accept_start_end(client: TestClient) -> None:
    session = create_session(client)
    assert session["status"] == "requested"
    assert session["rate_per_minute"] == "2.00"
    sid = session["session_id"]

    accepted = client.post(f"/api/sessions/{sid}/accept", headers=READER_HEADERS)
    assert accepted.json()["status"] == "accepted"

    started = client.post(f"/api/sessions/{sid}/start", headers=CLIENT_HEADERS)
    assert started.json()["status"] == "active"
    billing = client.get(f"/api/sessions/{sid}/billing", headers=READER_HEADERS).json()
    assert billing["running"] is True
    assert client.get("/api/health").json()["billing_loops"] == 1

    ended = client.post(f"/api/sessions/{sid}/end", json={"reason": "user_ended"}, headers=READER_HEADERS)
    assert ended.status_code == 200
    assert ended.json()["status"] == "ended"
    assert ended.json()["end_reason"] == "user_ended"

    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["active_count"] == 0
    assert health["billing_loops"] == 0
    event_types = [event["type"] for event in client.get("/api/events").json()]
    assert event_types[:3] == ["session_requested", "session_accepted", "session_started"]


def test_errors_map_to_http_status(client: TestClient) -> None:
    sid = create_session(client)["session_id"]

    forbidden = client.post(f"/api/sessions/{sid}/accept", headers=CLIENT_HEADERS)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "forbidden"
    assert forbidden.json()["retryable"] is False

    premature = client.post(f"/api/sessions/{sid}/start", headers=CLIENT_HEADERS)
    assert premature.status_code == 409
    assert premature.json()["error"] == "invalid_state"

    missing = client.get("/api/sessions/nope", headers=CLIENT_HEADERS)
    assert missing.status_code == 404

    outsider = client.get(f"/api/sessions/{sid}", headers=STRANGER_HEADERS)
    assert outsider.status_code == 403

    broke = client.post("/api/sessions", json={"reader_id": "reader-a", "mode": "chat"}, headers=STRANGER_HEADERS)
    assert broke.status_code == 402
    assert broke.json()["error"] == "insufficient_funds"


def test_request_validation(client: TestClient) -> None:
    assert client.post("/api/sessions", json={"reader_id": "reader-a", "mode": "video"}).status_code == 401
    bad_role = client.post(
        "/api/sessions",
        json={"reader_id": "reader-a", "mode": "video"},
        headers={"X-User-Id": "client-1", "X-User-Role": "wizard"},
    )
    assert bad_role.status_code == 400
    admin = client.post(
        "/api/sessions",
        json={"reader_id": "reader-a", "mode": "video"},
        headers={"X-User-Id": "client-1", "X-User-Role": "admin"},
    )
    assert admin.status_code == 403
    bad_mode = client.post("/api/sessions", json={"reader_id": "reader-a", "mode": "hologram"}, headers=CLIENT_HEADERS)
    assert bad_mode.status_code == 400

    sid = create_session(client)["session_id"]
    client.post(f"/api/sessions/{sid}/accept", headers=READER_HEADERS)
    client.post(f"/api/sessions/{sid}/start", headers=CLIENT_HEADERS)
    reserved = client.post(f"/api/sessions/{sid}/end", json={"reason": "insufficient_funds"}, headers=CLIENT_HEADERS)
    assert reserved.status_code == 400
    assert client.post(f"/api/sessions/{sid}/end", headers=CLIENT_HEADERS).status_code == 200


def test_idempotency_key_header_makes_retries_safe(client: TestClient) -> None:
    sid = create_session(client)["session_id"]
    headers = {**READER_HEADERS, "Idempotency-Key": "tap-1"}

    first = client.post(f"/api/sessions/{sid}/accept", headers=headers)
    retry = client.post(f"/api/sessions/{sid}/accept", headers=headers)
    fresh = client.post(f"/api/sessions/{sid}/accept", headers={**READER_HEADERS, "Idempotency-Key": "tap-2"})

    assert first.status_code == retry.status_code == 200
    assert retry.json()["status"] == "accepted"
    assert fresh.status_code == 409


def test_cancel_from_requested_only(client: TestClient) -> None:
    sid = create_session(client, mode="chat")["session_id"]

    cancelled = client.post(f"/api/sessions/{sid}/cancel", headers=READER_HEADERS)

    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["end_reason"] == "reader_unavailable"
    assert client.post(f"/api/sessions/{sid}/cancel", headers=CLIENT_HEADERS).status_code == 409


def test_websocket_handshake_and_session_action(client: TestClient) -> None:
    sid = create_session(client)["session_id"]
    hello = build_envelope(SignalAction.HELLO, ClientIdentity("reader-a", "reader", sid).to_dict())

    with client.websocket_connect(f"/ws/sessions/{sid}") as websocket:
        websocket.send_json(hello)
        welcome = websocket.receive_json()
        assert welcome["action"] == SignalAction.WELCOME.value
        assert welcome["data"]["session"]["session_id"] == sid
        assert welcome["data"]["peers"] == []

        websocket.send_json(build_envelope(SignalAction.SESSION_ACCEPT, {"idempotency_key": "ws-accept"}))
        status = websocket.receive_json()
        assert status["action"] == SignalAction.SESSION_STATUS.value
        assert status["data"]["session"]["status"] == "accepted"

        websocket.send_json(build_envelope(SignalAction.SESSION_CANCEL, {}))
        error = websocket.receive_json()
        assert error["action"] == SignalAction.ERROR.value
        assert error["data"]["code"] == "invalid_state"


def test_websocket_rejects_non_participant(client: TestClient) -> None:
    sid = create_session(client)["session_id"]
    hello = build_envelope(SignalAction.HELLO, {"user_id": "client-9", "role": "client"})

    with client.websocket_connect(f"/ws/sessions/{sid}") as websocket:
        websocket.send_json(hello)
        error = websocket.receive_json()

    assert error["action"] == SignalAction.ERROR.value
    assert error["data"]["code"] == "forbidden"
