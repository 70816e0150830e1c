from callsync.models import db, IntegrationAccount, User
from callsync.sync_status import suspend_polling


def create_integration(client, provider="telnyx", credentials=None):
    return client.post("/api/integrations", json={
        "provider": provider,
        "display_name": "Front desk",
        "credentials": credentials or {"api_key": "KEY123"},
    })


def deliver(client, integration_json, body):
    url = integration_json["webhook_url"]
    return client.post(url[url.index("/webhooks/"):], json=body)


def telnyx_call(call_control_id, status="ringing", parent=None, session=None):
    payload = {"call_control_id": call_control_id, "status": status}
    if parent:
        payload["parent_call_control_id"] = parent
    if session:
        payload["call_session_id"] = session
    return {"data": {"event_type": "call.initiated", "payload": payload}}


# --- Auth ---


def test_signup_and_login(client):
    resp = client.post("/auth/signup", json={
        "email": "New@Example.com", "password": "longenough", "timezone": "Australia/Adelaide",
    })
    assert resp.status_code == 201
    assert User.query.filter_by(email="new@example.com").one().timezone == "Australia/Adelaide"

    assert client.post("/auth/logout").status_code == 200
    resp = client.post("/auth/login", json={"email": "new@example.com", "password": "wrong-password"})
    assert resp.status_code == 401
    resp = client.post("/auth/login", json={"email": "new@example.com", "password": "longenough"})
    assert resp.status_code == 200


def test_signup_validation(client, user):
    assert client.post("/auth/signup", json={"email": "a@b.co"}).status_code == 400
    assert client.post(
        "/auth/signup", json={"email": "a@b.co", "password": "short"}
    ).status_code == 400
    assert client.post(
        "/auth/signup", json={"email": "a@b.co", "password": "longenough", "timezone": "Mars/Base"}
    ).status_code == 400
    assert client.post(
        "/auth/signup", json={"email": user.email, "password": "longenough"}
    ).status_code == 409


def test_api_requires_login(client):
    resp = client.get("/api/integrations")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Authentication required"


# --- Integrations ---


def test_create_and_list_integrations(auth_client):
    resp = create_integration(auth_client)
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["provider"] == "telnyx"
    assert data["overall_health"] == "unknown"
    assert "/webhooks/telnyx?token=" in data["webhook_url"]

    integrations = auth_client.get("/api/integrations").get_json()["integrations"]
    assert [i["id"] for i in integrations] == [data["id"]]


def test_create_integration_validation(auth_client):
    assert create_integration(auth_client, provider="bandwidth").status_code == 400
    resp = create_integration(auth_client, provider="twilio", credentials={"account_sid": "AC1"})
    assert resp.status_code == 400
    assert "auth_token" in resp.get_json()["error"]


def test_other_users_integrations_are_hidden(auth_client, make_integration):
    stranger = User(email="other@example.com")
    stranger.set_password("password123")
    db.session.add(stranger)
    db.session.commit()
    theirs = make_integration("telnyx", owner=stranger)

    assert auth_client.get(f"/api/integrations/{theirs.id}/sync-status").status_code == 404
    assert auth_client.get("/api/integrations").get_json()["integrations"] == []


def test_deactivate_stops_ingestion(auth_client):
    data = create_integration(auth_client).get_json()

    resp = auth_client.post(f"/api/integrations/{data['id']}/deactivate")
    assert resp.status_code == 200
    assert resp.get_json()["is_active"] is False

    status = auth_client.get(f"/api/integrations/{data['id']}/sync-status").get_json()
    assert status["webhook"]["enabled"] is False
    assert status["polling"]["enabled"] is False
    assert deliver(auth_client, data, telnyx_call("c1")).status_code == 404
    assert auth_client.post(f"/api/integrations/{data['id']}/sync").status_code == 409


def test_rotate_token_invalidates_old_url(auth_client):
    data = create_integration(auth_client).get_json()
    rotated = auth_client.post(f"/api/integrations/{data['id']}/rotate-token").get_json()

    assert rotated["webhook_url"] != data["webhook_url"]
    assert deliver(auth_client, data, telnyx_call("c1")).status_code == 404
    assert deliver(auth_client, rotated, telnyx_call("c1")).status_code == 200


def test_new_credentials_resume_polling(auth_client):
    data = create_integration(auth_client).get_json()
    suspend_polling(data["id"], "HTTP 401")

    resp = auth_client.post(f"/api/integrations/{data['id']}/credentials", json={})
    assert resp.status_code == 400

    resp = auth_client.post(
        f"/api/integrations/{data['id']}/credentials", json={"credentials": {"api_key": "NEW"}}
    )
    assert resp.status_code == 200
    assert resp.get_json()["polling"]["suspended"] is False
    assert "NEW" in db.session.get(IntegrationAccount, data["id"]).encrypted_credentials


def test_sync_status_shape(auth_client):
    data = create_integration(auth_client).get_json()
    deliver(auth_client, data, telnyx_call("c1"))

    status = auth_client.get(f"/api/integrations/{data['id']}/sync-status").get_json()
    assert status["webhook"]["health"] == "healthy"
    assert status["polling"]["health"] == "unknown"
    assert status["overall_health"] == "unknown"
    assert 0 < status["sync_confidence_percentage"] < 100
    assert status["total_events_synced"] == 1
    assert status["sync_method"] == "hybrid"


# --- Events ---


def test_events_listing(auth_client):
    data = create_integration(auth_client).get_json()
    deliver(auth_client, data, telnyx_call("c1"))
    deliver(auth_client, data, telnyx_call("c2"))
    deliver(auth_client, data, {"data": {"event_type": "call.dtmf.received", "payload": {}}})

    url = f"/api/integrations/{data['id']}/events"
    listing = auth_client.get(url).get_json()
    assert listing["total"] == 3
    assert "raw_payload" not in listing["events"][0]

    listing = auth_client.get(f"{url}?include_raw=1&per_page=1").get_json()
    assert len(listing["events"]) == 1
    assert "raw_payload" in listing["events"][0]

    unprocessed = auth_client.get(f"{url}?processing_status=unprocessed").get_json()
    assert unprocessed["total"] == 1


def test_event_thread(auth_client):
    data = create_integration(auth_client).get_json()
    child = deliver(auth_client, data, telnyx_call("leg-b", parent="leg-a")).get_json()
    root = deliver(auth_client, data, telnyx_call("leg-a")).get_json()

    thread = auth_client.get(f"/api/events/{child['event_id']}/thread").get_json()
    assert thread["root_id"] == root["event_id"]
    assert [e["id"] for e in thread["events"]] == [root["event_id"], child["event_id"]]
    assert auth_client.get("/api/events/9999/thread").status_code == 404


def test_webhook_logs(auth_client):
    data = create_integration(auth_client).get_json()
    for n in range(3):
        deliver(auth_client, data, telnyx_call(f"c{n}"))

    logs = auth_client.get(f"/api/integrations/{data['id']}/webhook-logs?limit=2").get_json()["logs"]
    assert len(logs) == 2
    assert all(log["response_status"] == 200 for log in logs)


def test_metrics_endpoint(auth_client):
    data = create_integration(auth_client).get_json()
    deliver(auth_client, data, telnyx_call("leg-a", status="answered"))
    deliver(auth_client, data, telnyx_call("leg-b", status="answered", parent="leg-a"))

    metrics = auth_client.get("/api/metrics").get_json()
    assert metrics["total_calls"] == 1
    assert metrics["in_progress_calls"] == 1
    assert metrics["by_provider"]["telnyx"]["calls"] == 1

    filtered = auth_client.get("/api/metrics?provider=twilio").get_json()
    assert filtered["total_calls"] == 0
    assert auth_client.get("/api/metrics?date_from=yesterday").status_code == 400


def test_bridged_legs_of_one_session_count_as_one_call(auth_client):
    data = create_integration(auth_client).get_json()
    first = deliver(auth_client, data, telnyx_call("leg-a", status="answered", session="sess-1"))
    deliver(auth_client, data, telnyx_call("leg-b", status="answered", session="sess-1"))
    deliver(auth_client, data, telnyx_call("solo", status="answered", session="sess-2"))

    metrics = auth_client.get("/api/metrics").get_json()
    assert metrics["total_calls"] == 2
    assert metrics["in_progress_calls"] == 2

    deliver(auth_client, data, telnyx_call("leg-a", status="completed", session="sess-1"))
    thread = auth_client.get(f"/api/events/{first.get_json()['event_id']}/thread").get_json()
    assert [e["provider_event_id"] for e in thread["events"]] == ["leg-a", "leg-b"]
    assert auth_client.get("/api/metrics").get_json()["in_progress_calls"] == 1
