import logging
from datetime import timedelta

from callsync import poll_service
from callsync.errors import InfrastructureError
from callsync.models import db, SyncStatus, TelephonyEvent, WebhookDeliveryLog
from callsync.poll_service import run_poll_cycle
from callsync.timeutils import as_utc, utcnow


def telnyx_webhook(call_control_id="evt_123", status="ringing", **payload):
    return {"data": {
        "event_type": "call.initiated",
        "id": "wh-1",
        "occurred_at": "2026-10-06T10:00:00Z",
        "payload": dict(call_control_id=call_control_id, status=status, **payload),
    }}


def post(client, integration, body, **kwargs):
    return client.post(
        f"/webhooks/{integration.provider}?token={integration.webhook_token}",
        json=body,
        **kwargs,
    )


def status_of(integration):
    db.session.expire_all()
    return SyncStatus.query.filter_by(integration_id=integration.id).one()


class OnePage:
    RESOURCES = {"calls": True}
    CURSOR_FIELDS = {"calls": "created_at"}

    def __init__(self, records):
        self.records = records

    def iter_pages(self, credentials, resource, since, page_size=100):
        yield self.records


def test_webhook_then_poll_merge_into_one_event(client, integration, monkeypatch):
    resp = post(client, integration, telnyx_webhook())
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "created"
    assert resp.get_json()["event_type"] == "call.ringing"

    started = utcnow().replace(microsecond=0) - timedelta(minutes=1)
    monkeypatch.setitem(poll_service.PROVIDER_SERVICES, "telnyx", OnePage([{
        "record_type": "call",
        "call_control_id": "evt_123",
        "status": "answered",
        "start_time": started.isoformat(),
        "created_at": started.isoformat(),
    }]))
    result = run_poll_cycle(integration)
    assert (result.created, result.merged) == (0, 1)

    event = TelephonyEvent.query.filter_by(provider_event_id="evt_123").one()
    assert TelephonyEvent.query.count() == 1
    assert event.status == "answered"
    assert event.event_type == "call.answered"
    assert as_utc(event.started_at) == started
    assert event.received_via == "poll"
    assert event.delivery_count == 2

    status = status_of(integration)
    assert status.webhook_failure_count == 0
    assert status.polling_failure_count == 0
    assert status.last_webhook_received_at is not None
    assert status.last_successful_poll_at is not None
    assert status.total_events_synced == 1
    assert status.overall_health == "healthy"
    assert status.sync_confidence_percentage == 100.0


def test_redelivery_is_merged(client, integration):
    first = post(client, integration, telnyx_webhook()).get_json()
    second = post(client, integration, telnyx_webhook()).get_json()

    assert first["status"] == "created"
    assert second["status"] == "merged"
    assert first["event_id"] == second["event_id"]
    assert status_of(integration).total_events_synced == 1


def test_token_in_header(client, integration):
    resp = client.post(
        "/webhooks/telnyx",
        json=telnyx_webhook(),
        headers={"X-Webhook-Token": integration.webhook_token},
    )
    assert resp.status_code == 200


def test_twilio_form_callback(client, make_integration):
    twilio = make_integration("twilio")
    resp = client.post(
        f"/webhooks/twilio?token={twilio.webhook_token}",
        data={
            "CallSid": "CA100",
            "CallStatus": "completed",
            "CallDuration": "42",
            "From": "+15550001111",
            "To": "+15550002222",
            "Direction": "inbound",
        },
    )
    assert resp.status_code == 200
    assert resp.get_json()["event_type"] == "call.ended"

    event = TelephonyEvent.query.filter_by(provider_event_id="CA100").one()
    assert event.duration_seconds == 42
    assert event.raw_payload["CallStatus"] == "completed"


def test_unknown_token_is_rejected_and_logged(client, integration):
    resp = client.post("/webhooks/telnyx?token=nope", json=telnyx_webhook())

    assert resp.status_code == 404
    assert TelephonyEvent.query.count() == 0
    log = WebhookDeliveryLog.query.one()
    assert log.integration_id is None
    assert log.response_status == 404


def test_token_must_match_provider(client, integration):
    resp = client.post(f"/webhooks/vapi?token={integration.webhook_token}", json={})
    assert resp.status_code == 404


def test_unknown_provider(client):
    resp = client.post("/webhooks/bandwidth?token=abc", json={})
    assert resp.status_code == 404
    assert WebhookDeliveryLog.query.one().provider == "bandwidth"


def test_inactive_integration_is_rejected(client, integration):
    integration.is_active = False
    db.session.commit()

    resp = post(client, integration, telnyx_webhook())

    assert resp.status_code == 404
    assert WebhookDeliveryLog.query.one().integration_id == integration.id


def test_unparseable_body_counts_as_failure(client, integration):
    resp = client.post(
        f"/webhooks/telnyx?token={integration.webhook_token}",
        data="{not json",
        content_type="application/json",
    )

    assert resp.status_code == 400
    status = status_of(integration)
    assert status.webhook_failure_count == 1
    assert status.consecutive_error_count == 1
    assert "invalid JSON" in status.last_error_message
    assert WebhookDeliveryLog.query.one().response_status == 400


def test_unrecognized_payload_is_stored_unprocessed(client, integration):
    body = {"data": {"event_type": "call.dtmf.received", "payload": {"call_control_id": "v3:x"}}}
    resp = post(client, integration, body)

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "unprocessed"
    row = TelephonyEvent.query.one()
    assert row.processing_status == "unprocessed"
    assert row.raw_payload == body

    status = status_of(integration)
    assert status.webhook_failure_count == 0
    assert status.webhook_health_status == "healthy"
    assert status.total_events_synced == 0


def test_store_outage_returns_500_and_alerts(client, integration, monkeypatch, caplog):
    def broken_upsert(*args, **kwargs):
        raise InfrastructureError("event store unavailable")

    monkeypatch.setattr("callsync.webhooks.routes.upsert", broken_upsert)
    with caplog.at_level(logging.CRITICAL, logger="callsync.alerts"):
        resp = post(client, integration, telnyx_webhook())

    assert resp.status_code == 500
    assert "webhook_aborted" in caplog.text
    assert status_of(integration).webhook_failure_count == 0
    assert WebhookDeliveryLog.query.one().response_status == 500


def test_every_delivery_is_logged(client, integration):
    post(client, integration, telnyx_webhook())
    post(client, integration, telnyx_webhook(status="answered"))
    client.post("/webhooks/telnyx?token=nope", json={})

    logs = WebhookDeliveryLog.query.order_by(WebhookDeliveryLog.id).all()
    assert [log.response_status for log in logs] == [200, 200, 404]
    assert all(log.processing_time_ms is not None for log in logs)
