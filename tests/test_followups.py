from callsync import followups
from callsync.event_store import upsert
from callsync.followups import run_followups, spawn_followups
from callsync.models import db, TelephonyEvent
from callsync.normalizer import NormalizedEvent


def stored(integration, provider_event_id, kind="sms", status="received", **kwargs):
    event = NormalizedEvent(
        provider="telnyx",
        provider_event_id=provider_event_id,
        kind=kind,
        status=status,
        raw_payload={},
        **kwargs,
    )
    return upsert(integration, event, "webhook").event_id


def test_classifies_sms_and_transcripts(app, integration, monkeypatch):
    app.config["AI_CLASSIFICATION_ENABLED"] = True
    monkeypatch.setattr(followups, "classify_sms", lambda body: {"category": "booking_request"})
    monkeypatch.setattr(followups, "classify_transcript", lambda text: {"category": "question"})

    sms_id = stored(integration, "m1", body="Can I book for Friday?")
    call_id = stored(integration, "c1", kind="call", status="ended",
                     extra={"transcript": "How much is a callout?"})
    silent_id = stored(integration, "c2", kind="call", status="ended")

    assert run_followups([sms_id, call_id, silent_id, 9999]) == 2
    assert db.session.get(TelephonyEvent, sms_id).classification == {"category": "booking_request"}
    assert db.session.get(TelephonyEvent, call_id).classification == {"category": "question"}
    assert db.session.get(TelephonyEvent, silent_id).classification is None

    # Already classified events are left alone.
    assert run_followups([sms_id]) == 0


def test_one_failure_does_not_stop_the_rest(app, integration, monkeypatch):
    app.config["AI_CLASSIFICATION_ENABLED"] = True

    def flaky(body):
        if "boom" in body:
            raise RuntimeError("model unavailable")
        return {"category": "general"}

    monkeypatch.setattr(followups, "classify_sms", flaky)
    bad = stored(integration, "m1", body="boom")
    good = stored(integration, "m2", body="thanks!")

    assert run_followups([bad, good]) == 1
    assert db.session.get(TelephonyEvent, good).classification == {"category": "general"}


def test_disabled_classification_is_a_no_op(app, integration):
    sms_id = stored(integration, "m1", body="hello")
    assert run_followups([sms_id]) == 0


def test_spawn_respects_followups_flag(app):
    assert spawn_followups(app, [1, 2]) is None
