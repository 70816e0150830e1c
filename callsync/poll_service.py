"""Scheduled reconciliation of provider history into the event store.

Used by both the cron script (scripts/poll_integrations.py) and the web app
(manual sync, first sync after connecting a provider).
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from . import retell_service, telnyx_service, twilio_service, vapi_service
from .alerts import raise_system_alert
from .credentials import decrypt_credentials
from .errors import (
    AuthError,
    ChannelTimeout,
    IdempotencyConflict,
    InfrastructureError,
    NormalizationError,
    TransientProviderError,
)
from .event_store import oldest_open_call, relink_orphans, store_unprocessed, upsert
from .followups import spawn_followups
from .models import db, IntegrationAccount, SyncStatus
from .normalizer import normalize
from .sync_status import (
    ensure_sync_status,
    record_poll_failure,
    record_poll_success,
    save_checkpoint,
    suspend_polling,
)
from .timeutils import as_utc, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

PROVIDER_SERVICES = {
    "twilio": twilio_service,
    "telnyx": telnyx_service,
    "vapi": vapi_service,
    "retell": retell_service,
}


@dataclass
class PollResult:
    fetched: int = 0
    created: int = 0
    merged: int = 0
    unprocessed: int = 0
    new_checkpoint: dict = field(default_factory=dict)
    duration_ms: int = 0
    error: str = None
    skipped: str = None
    created_ids: list = field(default_factory=list)

    def to_dict(self):
        return {
            "fetched": self.fetched,
            "created": self.created,
            "merged": self.merged,
            "unprocessed": self.unprocessed,
            "new_checkpoint": self.new_checkpoint,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "skipped": self.skipped,
        }


# --- Per-integration poll lease ---


def acquire_lease(integration_id, now):
    """Claim the integration's poll slot. False if another cycle holds it."""
    lease_until = now + timedelta(seconds=current_app.config["POLL_LEASE_SECONDS"])
    table = SyncStatus.__table__
    claimed = db.session.execute(
        update(table)
        .where(
            table.c.integration_id == integration_id,
            or_(table.c.poll_lease_until.is_(None), table.c.poll_lease_until < now),
        )
        .values(poll_lease_until=lease_until)
    ).rowcount
    db.session.commit()
    return claimed == 1


def release_lease(integration_id):
    table = SyncStatus.__table__
    db.session.execute(
        update(table)
        .where(table.c.integration_id == integration_id)
        .values(poll_lease_until=None)
    )
    db.session.commit()


# --- Poll cycle ---


def _ingest_page(integration, records, cursor_field, result):
    """Normalize and upsert one page, then commit it.

    Returns the newest cursor value seen on the page, with its record id.
    """
    newest = None
    newest_id = None
    for raw in records:
        result.fetched += 1
        try:
            event = normalize(integration.provider, raw)
        except NormalizationError as e:
            store_unprocessed(integration, e, "poll", commit=False)
            result.unprocessed += 1
            event = None

        if event is not None:
            outcome = upsert(integration, event, "poll", commit=False)
            if outcome.created:
                result.created += 1
                result.created_ids.append(outcome.event_id)
            else:
                result.merged += 1

        cursor = parse_timestamp(raw.get(cursor_field)) if isinstance(raw, dict) else None
        if cursor is not None and (newest is None or cursor > newest):
            newest = cursor
            newest_id = event.provider_event_id if event is not None else None

    db.session.commit()
    return newest, newest_id


def _poll_resource(integration, service, credentials, resource, now, deadline, clock, result):
    config = current_app.config
    status = SyncStatus.query.filter_by(integration_id=integration.id).one()
    lookback_start = now - timedelta(days=config["POLL_INITIAL_LOOKBACK_DAYS"])
    since = parse_timestamp((status.poll_checkpoint or {}).get(resource)) or lookback_start

    ascending = service.RESOURCES[resource]
    cursor_field = service.CURSOR_FIELDS[resource]
    if resource == "calls":
        # Re-read calls still open in the store so a lost hangup is recovered.
        open_since = oldest_open_call(integration.id, cursor_field, lookback_start)
        if open_since is not None:
            margin = timedelta(seconds=config["POLL_OPEN_CALL_MARGIN_SECONDS"])
            since = min(since, max(open_since - margin, lookback_start))
    logger.info(
        "Integration %s: polling %s %s since %s",
        integration.id, integration.provider, resource, since.isoformat(),
    )

    pages = service.iter_pages(
        credentials, resource, since, page_size=config["PROVIDER_PAGE_SIZE"]
    )
    newest = None
    newest_id = None
    while True:
        if clock() > deadline:
            raise ChannelTimeout(
                f"Poll cycle exceeded {config['POLL_CYCLE_TIMEOUT_SECONDS']}s during {resource}"
            )
        records = next(pages, None)
        if records is None:
            break

        page_newest, page_newest_id = _ingest_page(integration, records, cursor_field, result)
        if page_newest is not None and (newest is None or page_newest > newest):
            newest, newest_id = page_newest, page_newest_id
        # Oldest-first lists can resume mid-way; newest-first ones cannot.
        if ascending and newest is not None:
            save_checkpoint(integration.id, resource, newest, newest_id)

    if not ascending and newest is not None:
        save_checkpoint(integration.id, resource, newest, newest_id)


def run_poll_cycle(integration, now=None, clock=time.monotonic):
    """Fetch everything after the checkpoint for one integration.

    Provider and timeout errors are recorded against the polling channel and
    returned in ``PollResult.error``. Infrastructure errors raise a system
    alert and propagate.
    """
    now = now or utcnow()
    config = current_app.config
    result = PollResult()

    status = ensure_sync_status(integration)
    if not integration.is_active:
        result.skipped = "inactive"
        return result
    if not status.polling_enabled:
        result.skipped = "disabled"
        return result
    if status.polling_suspended:
        result.skipped = "suspended"
        return result
    if integration.provider not in PROVIDER_SERVICES:
        result.skipped = "unsupported"
        return result
    if not acquire_lease(integration.id, now):
        logger.info("Integration %s: poll already running, skipping", integration.id)
        result.skipped = "locked"
        return result

    started = clock()
    deadline = started + config["POLL_CYCLE_TIMEOUT_SECONDS"]
    service = PROVIDER_SERVICES[integration.provider]
    try:
        credentials = decrypt_credentials(integration)
        for resource in service.RESOURCES:
            _poll_resource(
                integration, service, credentials, resource, now, deadline, clock, result
            )
        relink_orphans(integration.id)
    except AuthError as e:
        db.session.rollback()
        result.error = str(e)
        result.duration_ms = int((clock() - started) * 1000)
        suspend_polling(integration.id, f"Provider rejected credentials: {e}", now=now)
    except (TransientProviderError, ChannelTimeout) as e:
        db.session.rollback()
        result.error = str(e)
        result.duration_ms = int((clock() - started) * 1000)
        record_poll_failure(integration.id, str(e), duration_ms=result.duration_ms, now=now)
    except (InfrastructureError, IdempotencyConflict, SQLAlchemyError) as e:
        db.session.rollback()
        raise_system_alert(
            "poll_aborted", str(e), integration_id=integration.id, provider=integration.provider
        )
        raise
    else:
        result.duration_ms = int((clock() - started) * 1000)
        record_poll_success(
            integration.id, created=result.created, duration_ms=result.duration_ms, now=now
        )
    finally:
        release_lease(integration.id)

    status = SyncStatus.query.filter_by(integration_id=integration.id).one()
    result.new_checkpoint = dict(status.poll_checkpoint or {})

    if result.created_ids:
        spawn_followups(current_app._get_current_object(), result.created_ids)

    logger.info(
        "Integration %s: poll %s - %d fetched, %d new, %d merged, %d unprocessed (%dms)",
        integration.id,
        "failed" if result.error else "complete",
        result.fetched, result.created, result.merged, result.unprocessed,
        result.duration_ms,
    )
    return result


# --- Scheduling ---


def is_due(integration, status, now):
    if status.next_retry_at is not None:
        return as_utc(status.next_retry_at) <= now
    if status.last_poll_at is None:
        return True
    interval = integration.polling_interval_minutes or current_app.config[
        "DEFAULT_POLLING_INTERVAL_MINUTES"
    ]
    return as_utc(status.last_poll_at) + timedelta(minutes=interval) <= now


def due_integrations(now=None, include_all=False):
    """Active integrations whose polling is enabled, not suspended and due."""
    now = now or utcnow()
    integrations = IntegrationAccount.query.filter_by(is_active=True).all()
    due = []
    for integration in integrations:
        status = ensure_sync_status(integration)
        if not status.polling_enabled or status.polling_suspended:
            continue
        if include_all or is_due(integration, status, now):
            due.append(integration)
    return due


def run_due_polls(app, now=None, include_all=False):
    """Poll every due integration, in parallel across integrations.

    Returns {integration_id: PollResult or None}; None marks a cycle that
    aborted on an infrastructure error (already alerted and logged).
    """
    with app.app_context():
        integration_ids = [i.id for i in due_integrations(now, include_all=include_all)]
        workers = app.config["POLL_MAX_WORKERS"]

    if not integration_ids:
        logger.info("No integrations due for polling")
        return {}

    def _run(integration_id):
        with app.app_context():
            integration = db.session.get(IntegrationAccount, integration_id)
            try:
                return integration_id, run_poll_cycle(integration, now=now)
            except Exception:
                logger.exception("Integration %s: poll cycle aborted", integration_id)
                return integration_id, None
            finally:
                db.session.remove()

    logger.info("Polling %d integrations with %d workers", len(integration_ids), workers)
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = dict(executor.map(_run, integration_ids))
    return results


def spawn_poll(integration_id):
    """Run one poll cycle in a background thread."""
    app = current_app._get_current_object()

    def _run():
        with app.app_context():
            integration = db.session.get(IntegrationAccount, integration_id)
            if integration:
                try:
                    run_poll_cycle(integration)
                except Exception:
                    logger.exception("Integration %s: background poll aborted", integration_id)

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread
