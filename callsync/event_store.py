"""Idempotent, thread-aware persistence of normalized events.

Every write is a single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING``
keyed on (provider, provider_event_id), so a webhook and a poll cycle racing
on the same event cannot lose each other's fields. Thread links are resolved
with conditional updates that only ever fill an empty ``parent_event_id``,
once inside the write and again after it commits.
"""

import hashlib
import json
import logging
from collections import namedtuple

from sqlalchemy import case, func, select, update, exists
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError

from .errors import IdempotencyConflict, InfrastructureError
from .models import db, STATUS_RANK, TelephonyEvent
from .timeutils import as_utc, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

events = TelephonyEvent.__table__

# Fields merged last-non-null-wins.
MERGE_FIELDS = (
    "kind",
    "direction",
    "from_number",
    "to_number",
    "started_at",
    "ended_at",
    "ended_reason",
    "duration_seconds",
    "cost_amount",
    "cost_currency",
    "body",
    "parent_ref",
    "correlation_id",
    "event_timestamp",
    "extra",
)


class UpsertResult(namedtuple("UpsertResult", ["outcome", "event_id"])):
    __slots__ = ()

    @property
    def created(self):
        return self.outcome == "created"


def _insert():
    dialect = db.session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise InfrastructureError(f"Atomic upsert is not supported on {dialect}")


def _json_safe(payload):
    return json.loads(json.dumps(payload, default=str))


def _execute(stmt):
    try:
        return db.session.execute(stmt).first()
    except IntegrityError as e:
        db.session.rollback()
        raise IdempotencyConflict(f"Upsert violated a constraint: {e.orig}") from e
    except OperationalError as e:
        db.session.rollback()
        raise InfrastructureError(f"Event store unavailable: {e.orig}") from e


def upsert(integration, event, received_via, commit=True):
    """Store or merge ``event`` for ``integration``.

    Returns ``UpsertResult(outcome, event_id)`` where outcome is "created"
    for the first delivery of a provider event and "merged" afterwards.
    """
    now = utcnow()
    values = {
        "integration_id": integration.id,
        "provider": event.provider,
        "provider_event_id": event.provider_event_id,
        "event_type": event.event_type,
        "status": event.status,
        "status_rank": event.status_rank,
        "raw_payload": _json_safe(event.raw_payload),
        "processing_status": "processed",
        "normalization_error": None,
        "received_via": received_via,
        "received_at": now,
        "delivery_count": 1,
        "created_at": now,
    }
    for name in MERGE_FIELDS:
        values[name] = getattr(event, name)
    if not values["extra"]:
        values["extra"] = None

    insert = _insert()
    stmt = insert(events).values(**values)
    excluded = stmt.excluded
    advances = excluded.status_rank > events.c.status_rank

    set_ = {name: func.coalesce(excluded[name], events.c[name]) for name in MERGE_FIELDS}
    set_.update(
        status=case((advances, excluded.status), else_=events.c.status),
        event_type=case((advances, excluded.event_type), else_=events.c.event_type),
        status_rank=case((advances, excluded.status_rank), else_=events.c.status_rank),
        received_via=excluded.received_via,
        received_at=excluded.received_at,
        raw_payload=excluded.raw_payload,
        processing_status=excluded.processing_status,
        normalization_error=None,
        delivery_count=events.c.delivery_count + 1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[events.c.provider, events.c.provider_event_id],
        set_=set_,
        where=events.c.integration_id == excluded.integration_id,
    ).returning(events.c.id, events.c.delivery_count)

    row = _execute(stmt)
    if row is None:
        db.session.rollback()
        raise IdempotencyConflict(
            f"{event.provider} event {event.provider_event_id} is owned by another integration"
        )

    event_id, delivery_count = row
    link_args = (
        integration.id, event_id, event.provider_event_id, event.parent_ref, event.correlation_id,
    )
    _link(*link_args)

    if commit:
        db.session.commit()
        # The other end of a link may have committed while this write was open.
        _link(*link_args)
        db.session.commit()

    outcome = "created" if delivery_count == 1 else "merged"
    logger.debug(
        "Integration %s: %s %s event %s (id=%s)",
        integration.id, outcome, event.provider, event.provider_event_id, event_id,
    )
    return UpsertResult(outcome, event_id)


def store_unprocessed(integration, error, received_via, commit=True):
    """Persist a payload that failed normalization, flagged unprocessed.

    Rows are keyed by a hash of the payload so a redelivery of the same body
    is counted instead of duplicated, and a processed row is never touched.
    """
    payload = _json_safe(error.raw_payload)
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True).encode("utf-8")
    ).hexdigest()
    now = utcnow()

    insert = _insert()
    stmt = insert(events).values(
        integration_id=integration.id,
        provider=integration.provider,
        provider_event_id=f"unprocessed:{digest[:48]}",
        event_type="unknown",
        status=None,
        status_rank=-1,
        correlation_id=error.provider_event_id,
        raw_payload=payload,
        processing_status="unprocessed",
        normalization_error=error.reason,
        received_via=received_via,
        received_at=now,
        delivery_count=1,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[events.c.provider, events.c.provider_event_id],
        set_={
            "delivery_count": events.c.delivery_count + 1,
            "received_at": stmt.excluded.received_at,
            "received_via": stmt.excluded.received_via,
        },
        where=(events.c.integration_id == stmt.excluded.integration_id)
        & (events.c.processing_status == "unprocessed"),
    ).returning(events.c.id, events.c.delivery_count)

    row = _execute(stmt)
    if row is None:
        db.session.rollback()
        raise IdempotencyConflict(f"Unprocessed payload {digest[:12]} collided with a processed row")
    if commit:
        db.session.commit()

    logger.warning(
        "Integration %s: stored unprocessed %s payload (%s): %s",
        integration.id, integration.provider, received_via, error.reason,
    )
    outcome = "created" if row[1] == 1 else "merged"
    return UpsertResult(outcome, row[0])


def _session_legs(integration_id, correlation_id):
    """Processed, parentless events of one integration sharing ``correlation_id``."""
    return (
        events.c.integration_id == integration_id,
        events.c.correlation_id == correlation_id,
        events.c.processing_status == "processed",
        events.c.parent_ref.is_(None),
    )


def _link(integration_id, event_id, provider_event_id, parent_ref, correlation_id=None):
    """Attach the event to its parent and adopt any waiting children.

    An explicit ``parent_ref`` wins. Without one, legs sharing a
    ``correlation_id`` hang off the earliest stored leg of that session;
    links always point at a lower id, so they cannot form a cycle.
    """
    if parent_ref and parent_ref != provider_event_id:
        parent_id = db.session.execute(
            select(events.c.id).where(
                events.c.integration_id == integration_id,
                events.c.provider_event_id == parent_ref,
            )
        ).scalar()
        if parent_id is not None:
            db.session.execute(
                update(events)
                .where(events.c.id == event_id, events.c.parent_event_id.is_(None))
                .values(parent_event_id=parent_id)
            )
    elif correlation_id:
        root_id = db.session.execute(
            select(func.min(events.c.id)).where(
                *_session_legs(integration_id, correlation_id),
                events.c.id < event_id,
            )
        ).scalar()
        if root_id is not None:
            db.session.execute(
                update(events)
                .where(events.c.id == event_id, events.c.parent_event_id.is_(None))
                .values(parent_event_id=root_id)
            )
        else:
            db.session.execute(
                update(events)
                .where(
                    *_session_legs(integration_id, correlation_id),
                    events.c.parent_event_id.is_(None),
                    events.c.id > event_id,
                )
                .values(parent_event_id=event_id)
            )

    db.session.execute(
        update(events)
        .where(
            events.c.integration_id == integration_id,
            events.c.parent_ref == provider_event_id,
            events.c.parent_event_id.is_(None),
            events.c.id != event_id,
        )
        .values(parent_event_id=event_id)
    )


def relink_orphans(integration_id, commit=True):
    """Resolve children whose parent or earlier session leg arrived after them."""
    parent = events.alias("parent")
    match = (parent.c.integration_id == events.c.integration_id) & (
        parent.c.provider_event_id == events.c.parent_ref
    )
    stmt = (
        update(events)
        .where(
            events.c.integration_id == integration_id,
            events.c.parent_event_id.is_(None),
            events.c.parent_ref.isnot(None),
            exists(select(parent.c.id).where(match)),
        )
        .values(parent_event_id=select(parent.c.id).where(match).limit(1).scalar_subquery())
    )
    linked = db.session.execute(stmt).rowcount

    earlier = events.alias("earlier")
    same_session = (
        (earlier.c.integration_id == events.c.integration_id)
        & (earlier.c.correlation_id == events.c.correlation_id)
        & (earlier.c.processing_status == "processed")
        & earlier.c.parent_ref.is_(None)
        & (earlier.c.id < events.c.id)
    )
    stmt = (
        update(events)
        .where(
            events.c.integration_id == integration_id,
            events.c.parent_event_id.is_(None),
            events.c.parent_ref.is_(None),
            events.c.correlation_id.isnot(None),
            events.c.processing_status == "processed",
            exists(select(earlier.c.id).where(same_session)),
        )
        .values(parent_event_id=select(func.min(earlier.c.id)).where(same_session).scalar_subquery())
    )
    linked += db.session.execute(stmt).rowcount
    if commit:
        db.session.commit()
    if linked:
        logger.info("Integration %s: re-linked %d orphaned events", integration_id, linked)
    return linked


def find_root(event):
    """Follow parent pointers up to the thread root."""
    seen = {event.id}
    while event.parent_event_id is not None and event.parent_event_id not in seen:
        parent = db.session.get(TelephonyEvent, event.parent_event_id)
        if parent is None:
            break
        seen.add(parent.id)
        event = parent
    return event


def get_thread(event_id):
    """Return the thread containing ``event_id``, root first, or [] if unknown."""
    event = db.session.get(TelephonyEvent, event_id)
    if event is None:
        return []

    root = find_root(event)
    thread = [root]
    seen = {root.id}
    frontier = [root.id]
    while frontier:
        children = (
            TelephonyEvent.query.filter(
                TelephonyEvent.parent_event_id.in_(frontier),
                TelephonyEvent.integration_id == root.integration_id,
            )
            .order_by(TelephonyEvent.event_timestamp, TelephonyEvent.id)
            .all()
        )
        frontier = []
        for child in children:
            if child.id in seen:
                continue
            seen.add(child.id)
            thread.append(child)
            frontier.append(child.id)
    return thread


def build_threads(event_rows):
    """Group already-loaded events into {root_id: [root, *descendants]}.

    Resolution is by flat lookup over parent pointers. Events whose root is
    not among ``event_rows`` are left out, so a partial window never turns a
    child leg into a thread of its own.
    """
    by_id = {e.id: e for e in event_rows}
    threads = {}
    for e in event_rows:
        root = e
        seen = {e.id}
        while root.parent_event_id in by_id and root.parent_event_id not in seen:
            root = by_id[root.parent_event_id]
            seen.add(root.id)
        if root.parent_event_id is not None and root.parent_event_id not in seen:
            continue
        threads.setdefault(root.id, []).append(e)
    for root_id, members in threads.items():
        members.sort(key=lambda m: (m.id != root_id, m.id))
    return threads


def oldest_open_call(integration_id, cursor_field, not_before):
    """Earliest known time of a stored call that has not ended, or None.

    Prefers the provider's own ``cursor_field`` from the stored payload so the
    answer lines up with the list filter. Calls that started before
    ``not_before`` are treated as abandoned.
    """
    rows = (
        db.session.query(
            TelephonyEvent.raw_payload,
            TelephonyEvent.started_at,
            TelephonyEvent.event_timestamp,
        )
        .filter(
            TelephonyEvent.integration_id == integration_id,
            TelephonyEvent.kind == "call",
            TelephonyEvent.processing_status == "processed",
            TelephonyEvent.status_rank < STATUS_RANK["ended"],
        )
        .all()
    )
    oldest = None
    for raw_payload, started_at, event_timestamp in rows:
        cursor = None
        if isinstance(raw_payload, dict):
            cursor = parse_timestamp(raw_payload.get(cursor_field))
        known = [as_utc(t) for t in (cursor, started_at, event_timestamp) if t is not None]
        if not known:
            continue
        earliest = min(known)
        if earliest < not_before:
            continue
        if oldest is None or earliest < oldest:
            oldest = earliest
    return oldest
