from datetime import datetime, timedelta, timezone

import pytest

from callsync import event_store
from callsync.errors import IdempotencyConflict, NormalizationError
from callsync.event_store import (
    build_threads,
    get_thread,
    oldest_open_call,
    relink_orphans,
    store_unprocessed,
    upsert,
)
from callsync.models import db, TelephonyEvent
from callsync.normalizer import NormalizedEvent
from callsync.timeutils import as_utc

T1 = datetime(2026, 10, 6, 10, 0, tzinfo=timezone.utc)


def make_event(provider_event_id, status="ringing", kind="call", **kwargs):
    return NormalizedEvent(
        provider="telnyx",
        provider_event_id=provider_event_id,
        kind=kind,
        status=status,
        raw_payload={"id": provider_event_id, "status": status},
        **kwargs,
    )


def stored(provider_event_id):
    return TelephonyEvent.query.filter_by(provider_event_id=provider_event_id).one()


def test_first_delivery_creates_then_merges(integration):
    first = upsert(integration, make_event("c1"), "webhook")
    second = upsert(integration, make_event("c1"), "webhook")
    third = upsert(integration, make_event("c1"), "poll")

    assert first.created
    assert second.outcome == "merged" and third.outcome == "merged"
    assert first.event_id == second.event_id == third.event_id
    assert TelephonyEvent.query.count() == 1
    assert stored("c1").delivery_count == 3


def test_merge_keeps_union_of_fields(integration):
    upsert(integration, make_event("c1", from_number="+15550001111"), "webhook")
    upsert(integration, make_event("c1", status="answered", started_at=T1), "poll")
    upsert(integration, make_event("c1", status="ringing", to_number="+15550002222"), "webhook")

    event = stored("c1")
    assert event.status == "answered"
    assert event.event_type == "call.answered"
    assert event.from_number == "+15550001111"
    assert event.to_number == "+15550002222"
    assert as_utc(event.started_at) == T1
    assert event.received_via == "webhook"


def test_status_never_regresses(integration):
    upsert(integration, make_event("c1", status="ended", ended_reason="hangup"), "poll")
    upsert(integration, make_event("c1", status="answered"), "webhook")

    event = stored("c1")
    assert event.status == "ended"
    assert event.status_rank == 3
    assert event.ended_reason == "hangup"


def test_extra_survives_a_merge_without_extra(integration):
    upsert(integration, make_event("c1", extra={"transcript": "hello"}), "webhook")
    upsert(integration, make_event("c1", status="answered"), "poll")

    assert stored("c1").extra == {"transcript": "hello"}


def test_conflicting_integration_is_rejected(integration, make_integration):
    other = make_integration("telnyx")
    upsert(integration, make_event("c1", from_number="+15550001111"), "webhook")

    with pytest.raises(IdempotencyConflict):
        upsert(other, make_event("c1", from_number="+15559999999"), "webhook")

    event = stored("c1")
    assert event.integration_id == integration.id
    assert event.from_number == "+15550001111"
    assert event.delivery_count == 1


def test_child_before_parent_is_linked_when_parent_arrives(integration):
    child = upsert(integration, make_event("leg-2", parent_ref="leg-1"), "webhook")
    assert db.session.get(TelephonyEvent, child.event_id).parent_event_id is None

    parent = upsert(integration, make_event("leg-1"), "poll")

    assert db.session.get(TelephonyEvent, child.event_id).parent_event_id == parent.event_id
    assert [e.id for e in get_thread(child.event_id)] == [parent.event_id, child.event_id]


def test_parent_before_child_links_immediately(integration):
    parent = upsert(integration, make_event("leg-1"), "webhook")
    child = upsert(integration, make_event("leg-2", parent_ref="leg-1"), "webhook")

    assert db.session.get(TelephonyEvent, child.event_id).parent_event_id == parent.event_id


def test_links_do_not_cross_integrations(integration, make_integration):
    other = make_integration("telnyx")
    upsert(integration, make_event("leg-1"), "webhook")
    child = upsert(other, make_event("leg-2", parent_ref="leg-1"), "webhook")

    assert db.session.get(TelephonyEvent, child.event_id).parent_event_id is None


def test_relink_orphans_resolves_missed_links(integration):
    parent = upsert(integration, make_event("leg-1"), "webhook")
    child = upsert(integration, make_event("leg-2", parent_ref="leg-1"), "webhook")
    db.session.get(TelephonyEvent, child.event_id).parent_event_id = None
    db.session.commit()

    assert relink_orphans(integration.id) == 1
    assert db.session.get(TelephonyEvent, child.event_id).parent_event_id == parent.event_id
    assert relink_orphans(integration.id) == 0


def test_links_missed_inside_the_write_are_made_after_commit(integration, monkeypatch):
    parent = upsert(integration, make_event("leg-1"), "webhook")

    # The first pass runs before a concurrent parent would be visible.
    real_link = event_store._link
    passes = []

    def racing_link(*args):
        passes.append(args)
        if len(passes) > 1:
            real_link(*args)

    monkeypatch.setattr(event_store, "_link", racing_link)
    upsert(integration, make_event("leg-2", parent_ref="leg-1"), "webhook")

    assert len(passes) == 2
    assert stored("leg-2").parent_event_id == parent.event_id


def test_legs_sharing_a_session_hang_off_the_first(integration):
    first = upsert(integration, make_event("leg-a", correlation_id="sess-1"), "webhook")
    second = upsert(integration, make_event("leg-b", correlation_id="sess-1"), "webhook")
    third = upsert(integration, make_event("leg-c", correlation_id="sess-1"), "poll")
    other = upsert(integration, make_event("leg-x", correlation_id="sess-2"), "webhook")

    assert stored("leg-a").parent_event_id is None
    assert stored("leg-b").parent_event_id == first.event_id
    assert stored("leg-c").parent_event_id == first.event_id
    assert stored("leg-x").parent_event_id is None
    assert [e.id for e in get_thread(third.event_id)] == [
        first.event_id, second.event_id, third.event_id,
    ]
    assert get_thread(other.event_id)[0].id == other.event_id


def test_first_leg_adopts_later_unlinked_legs(integration):
    first = upsert(integration, make_event("leg-a", correlation_id="sess-1"), "webhook")
    upsert(integration, make_event("leg-b", correlation_id="sess-1"), "webhook")
    stored("leg-b").parent_event_id = None
    db.session.commit()

    upsert(integration, make_event("leg-a", status="answered", correlation_id="sess-1"), "poll")

    assert stored("leg-b").parent_event_id == first.event_id
    assert stored("leg-a").parent_event_id is None


def test_explicit_parent_wins_over_session(integration):
    upsert(integration, make_event("leg-a", correlation_id="sess-1"), "webhook")
    parent = upsert(integration, make_event("bridge"), "webhook")
    upsert(integration, make_event("leg-b", correlation_id="sess-1", parent_ref="bridge"), "webhook")

    assert stored("leg-b").parent_event_id == parent.event_id


def test_sessions_do_not_cross_integrations_or_unprocessed_rows(integration, make_integration):
    error = NormalizationError("telnyx", {"bad": True}, "unrecognized", "sess-1")
    store_unprocessed(integration, error, "webhook")
    other = make_integration("telnyx")
    upsert(other, make_event("leg-a", correlation_id="sess-1"), "webhook")

    upsert(integration, make_event("leg-b", correlation_id="sess-1"), "webhook")

    assert stored("leg-b").parent_event_id is None


def test_relink_orphans_resolves_session_legs(integration):
    first = upsert(integration, make_event("leg-a", correlation_id="sess-1"), "webhook")
    upsert(integration, make_event("leg-b", correlation_id="sess-1"), "webhook")
    upsert(integration, make_event("leg-c", correlation_id="sess-1"), "webhook")
    for pid in ("leg-b", "leg-c"):
        stored(pid).parent_event_id = None
    db.session.commit()

    assert relink_orphans(integration.id) == 2
    assert stored("leg-b").parent_event_id == first.event_id
    assert stored("leg-c").parent_event_id == first.event_id
    assert stored("leg-a").parent_event_id is None
    assert relink_orphans(integration.id) == 0


def test_oldest_open_call(integration):
    window_start = datetime(2026, 10, 1, tzinfo=timezone.utc)
    assert oldest_open_call(integration.id, "created_at", window_start) is None

    upsert(integration, NormalizedEvent(
        provider="telnyx", provider_event_id="c1", kind="call", status="answered",
        raw_payload={"created_at": "2026-10-06T09:58:00Z"}, started_at=T1,
    ), "poll")
    upsert(integration, make_event("c2", status="answered", started_at=T1 - timedelta(minutes=1)), "webhook")
    upsert(integration, make_event("c3", status="ended", started_at=T1 - timedelta(hours=1)), "poll")
    upsert(integration, make_event("m1", status="sent", kind="sms", started_at=T1 - timedelta(hours=2)), "poll")

    assert oldest_open_call(integration.id, "created_at", window_start) == T1 - timedelta(minutes=2)
    one_minute_before = T1 - timedelta(minutes=1)
    assert oldest_open_call(integration.id, "created_at", one_minute_before) == one_minute_before
    assert oldest_open_call(integration.id, "created_at", T1) is None


def test_get_thread_from_any_member(integration):
    root = upsert(integration, make_event("leg-1"), "webhook")
    leg = upsert(integration, make_event("leg-2", parent_ref="leg-1"), "webhook")
    grandchild = upsert(integration, make_event("leg-3", parent_ref="leg-2"), "webhook")

    expected = [root.event_id, leg.event_id, grandchild.event_id]
    assert [e.id for e in get_thread(grandchild.event_id)] == expected
    assert [e.id for e in get_thread(root.event_id)] == expected
    assert get_thread(9999) == []


def test_unprocessed_payload_is_stored_and_counted(integration):
    error = NormalizationError("telnyx", {"data": {"event_type": "call.dtmf"}}, "unrecognized", "v3:x")

    first = store_unprocessed(integration, error, "webhook")
    again = store_unprocessed(integration, error, "webhook")

    assert first.created and again.outcome == "merged"
    row = db.session.get(TelephonyEvent, first.event_id)
    assert row.processing_status == "unprocessed"
    assert row.event_type == "unknown"
    assert row.normalization_error == "unrecognized"
    assert row.correlation_id == "v3:x"
    assert row.delivery_count == 2


def test_unprocessed_never_touches_processed_row(integration):
    upsert(integration, make_event("v3:x", status="answered"), "webhook")
    error = NormalizationError("telnyx", {"bad": True}, "unrecognized", "v3:x")
    store_unprocessed(integration, error, "webhook")

    event = stored("v3:x")
    assert event.processing_status == "processed"
    assert event.status == "answered"
    assert event.delivery_count == 1
    assert TelephonyEvent.query.count() == 2


def test_build_threads_skips_members_of_roots_outside_the_set(integration):
    root = upsert(integration, make_event("leg-1"), "webhook")
    leg = upsert(integration, make_event("leg-2", parent_ref="leg-1"), "webhook")
    solo = upsert(integration, make_event("solo"), "webhook")

    everything = TelephonyEvent.query.all()
    threads = build_threads(everything)
    assert set(threads) == {root.event_id, solo.event_id}
    assert [e.id for e in threads[root.event_id]] == [root.event_id, leg.event_id]

    window = [e for e in everything if e.id != root.event_id]
    assert set(build_threads(window)) == {solo.event_id}
