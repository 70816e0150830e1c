"""Per-integration channel health, sync confidence and retry schedule.

Both ingestion paths report outcomes here. Each mutation runs under a
per-integration serialization point (an in-process lock plus a row lock on
``sync_statuses``), updates only its own channel's fields, then recomputes
the derived health from the fresh row before committing.
"""

import logging
import math
import random
import threading
from collections import namedtuple
from contextlib import contextmanager
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from .models import db, IntegrationAccount, SyncStatus
from .timeutils import as_utc, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

# Worst last.
STATE_ORDER = {"healthy": 0, "unknown": 1, "degraded": 2, "failing": 3}
OVERALL_HEALTH = {
    "healthy": "healthy",
    "unknown": "unknown",
    "degraded": "warning",
    "failing": "error",
}

Channel = namedtuple(
    "Channel", ["name", "enabled", "last_success", "attempts", "short_bound", "long_bound"]
)

# Integrations share a fixed pool of locks by id.
LOCK_STRIPES = 64
_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
_rng = random.Random()


def _integration_lock(integration_id):
    return _locks[integration_id % LOCK_STRIPES]


# --- Pure derivations ---


def _attempt_time(attempt):
    return parse_timestamp(attempt.get("at"))


def recent_failures(attempts, last_success, now, window):
    """Failures after the last success and inside the sliding window."""
    cutoff = now - window
    last_success = as_utc(last_success)
    count = 0
    for attempt in attempts or []:
        if attempt.get("ok"):
            continue
        at = _attempt_time(attempt)
        if at is None or at < cutoff:
            continue
        if last_success is not None and at <= last_success:
            continue
        count += 1
    return count


def success_ratio(attempts):
    if not attempts:
        return 0.0
    return sum(1 for a in attempts if a.get("ok")) / len(attempts)


def derive_channel_state(channel, now, config):
    """unknown/healthy/degraded/failing from last success, failures and staleness."""
    window = timedelta(minutes=config["FAILURE_WINDOW_MINUTES"])
    failures = recent_failures(channel.attempts, channel.last_success, now, window)
    last_success = as_utc(channel.last_success)

    if failures >= config["FAILING_FAILURE_THRESHOLD"]:
        return "failing"
    if last_success is None:
        if failures >= config["DEGRADED_FAILURE_THRESHOLD"]:
            return "degraded"
        return "unknown"

    staleness = now - last_success
    if staleness > channel.long_bound:
        return "failing"
    if failures >= config["DEGRADED_FAILURE_THRESHOLD"] or staleness > channel.short_bound:
        return "degraded"
    return "healthy"


def channels_of(status, config):
    return (
        Channel(
            "webhook",
            bool(status.webhook_enabled),
            status.last_webhook_received_at,
            status.webhook_attempts or [],
            timedelta(minutes=config["WEBHOOK_DEGRADED_MINUTES"]),
            timedelta(minutes=config["WEBHOOK_FAILING_MINUTES"]),
        ),
        Channel(
            "polling",
            bool(status.polling_enabled),
            status.last_successful_poll_at,
            status.polling_attempts or [],
            timedelta(minutes=config["POLL_DEGRADED_MINUTES"]),
            timedelta(minutes=config["POLL_FAILING_MINUTES"]),
        ),
    )


def overall_health(webhook_state, polling_state, webhook_enabled=True, polling_enabled=True):
    """Worst enabled channel, mapped to healthy/warning/error/unknown."""
    states = []
    if webhook_enabled:
        states.append(webhook_state)
    if polling_enabled:
        states.append(polling_state)
    if not states:
        return "unknown"
    return OVERALL_HEALTH[max(states, key=STATE_ORDER.get)]


def _recency(channel, now):
    last_success = as_utc(channel.last_success)
    if last_success is None:
        return 0.0
    overdue = (now - last_success - channel.short_bound).total_seconds()
    if overdue <= 0:
        return 1.0
    return math.exp(-overdue / channel.short_bound.total_seconds())


def compute_confidence(status, now=None, config=None):
    """Confidence in [0, 100] that the stored history is complete.

    100 only when both channels are enabled and healthy. Otherwise capped
    at 90 and scaled by recency of the freshest success, the trailing
    success ratio, a 0.8 factor per consecutive error, and 0.75 when a
    single channel is carrying the integration.
    """
    now = now or utcnow()
    config = config or current_app.config

    active = []
    for channel in channels_of(status, config):
        if not channel.enabled:
            continue
        if channel.name == "polling" and status.polling_suspended:
            # A suspended poller contributes nothing until re-authorized.
            channel = channel._replace(last_success=None)
        active.append(channel)
    if not active:
        return 0.0

    states = [derive_channel_state(c, now, config) for c in active]
    if len(active) == 2 and all(s == "healthy" for s in states):
        return 100.0

    recency = max(_recency(c, now) for c in active)
    ratio = sum(success_ratio(c.attempts) for c in active) / len(active)
    score = 90.0 * recency * (0.5 + 0.5 * ratio)
    score *= 0.8 ** (status.consecutive_error_count or 0)
    if len(active) == 1:
        score *= 0.75
    return max(0.0, min(100.0, score))


def compute_backoff(consecutive_error_count, config=None):
    config = config or current_app.config
    base = config["BASE_BACKOFF_SECONDS"]
    cap = config["MAX_BACKOFF_SECONDS"]
    # Bound the exponent so huge counts never build huge ints.
    exponent = min(consecutive_error_count, 32)
    return min(cap, base * 2 ** exponent)


# --- Row access ---


def ensure_sync_status(integration):
    """Return the integration's SyncStatus row, creating it on first use."""
    status = SyncStatus.query.filter_by(integration_id=integration.id).first()
    if status is not None:
        return status

    status = SyncStatus(
        integration_id=integration.id,
        webhook_enabled=bool(integration.is_active),
        polling_enabled=bool(integration.is_active),
        backoff_seconds=current_app.config["BASE_BACKOFF_SECONDS"],
        webhook_attempts=[],
        polling_attempts=[],
        poll_checkpoint={},
    )
    db.session.add(status)
    try:
        db.session.commit()
    except IntegrityError:
        # Created concurrently by the other ingestion path.
        db.session.rollback()
        status = SyncStatus.query.filter_by(integration_id=integration.id).one()
    return status


@contextmanager
def locked_status(integration_id, now=None):
    """Yield the freshest SyncStatus row under the integration's lock.

    Health and confidence are recomputed from the mutated row and the
    transaction is committed on exit.
    """
    now = now or utcnow()
    with _integration_lock(integration_id):
        status = (
            SyncStatus.query.filter_by(integration_id=integration_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if status is None:
            integration = db.session.get(IntegrationAccount, integration_id)
            if integration is None:
                raise LookupError(f"Integration {integration_id} not found")
            ensure_sync_status(integration)
            status = (
                SyncStatus.query.filter_by(integration_id=integration_id)
                .with_for_update()
                .populate_existing()
                .one()
            )
        try:
            yield status
            recompute(status, now)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def recompute(status, now=None, config=None):
    """Refresh channel states, overall health, confidence and fallback mode."""
    now = now or utcnow()
    config = config or current_app.config
    webhook, polling = channels_of(status, config)

    status.webhook_health_status = (
        derive_channel_state(webhook, now, config) if webhook.enabled else "unknown"
    )
    if not polling.enabled:
        status.polling_health_status = "unknown"
    elif status.polling_suspended:
        status.polling_health_status = "failing"
    else:
        status.polling_health_status = derive_channel_state(polling, now, config)

    apply_webhook_fallback(status, config)
    status.overall_health = overall_health(
        status.webhook_health_status,
        status.polling_health_status,
        status.webhook_enabled,
        status.polling_enabled,
    )
    status.sync_confidence_percentage = compute_confidence(status, now, config)
    return status


def apply_webhook_fallback(status, config=None):
    """Poll faster while webhooks are failing; restore the normal cadence after.

    Returns True when the sync mode changed.
    """
    config = config or current_app.config
    integration = db.session.get(IntegrationAccount, status.integration_id)
    if integration is None or not integration.is_active:
        return False

    if status.webhook_enabled and status.webhook_health_status == "failing":
        if status.sync_method == "polling":
            return False
        status.sync_method = "polling"
        status.polling_enabled = True
        integration.polling_interval_minutes = config["FALLBACK_POLLING_INTERVAL_MINUTES"]
        logger.warning(
            "Integration %s: webhooks failing, polling every %d minutes",
            integration.id, integration.polling_interval_minutes,
        )
        return True

    if status.sync_method == "polling" and status.webhook_health_status == "healthy":
        status.sync_method = "hybrid"
        integration.polling_interval_minutes = config["DEFAULT_POLLING_INTERVAL_MINUTES"]
        logger.info("Integration %s: webhooks recovered, back to hybrid sync", integration.id)
        return True
    return False


def _append_attempt(attempts, ok, now, error=None):
    history = list(attempts or [])
    entry = {"at": now.isoformat(), "ok": ok}
    if error:
        entry["error"] = str(error)[:500]
    history.append(entry)
    return history[-current_app.config["ATTEMPT_HISTORY_SIZE"]:]


def _record_error(status, message, now):
    status.consecutive_error_count = (status.consecutive_error_count or 0) + 1
    status.last_error_message = str(message)[:2000]
    status.last_error_at = now


# --- Channel outcomes ---


def record_webhook_success(integration_id, created=False, now=None):
    now = now or utcnow()
    with locked_status(integration_id, now) as status:
        status.last_webhook_received_at = now
        status.webhook_failure_count = 0
        status.webhook_attempts = _append_attempt(status.webhook_attempts, True, now)
        status.consecutive_error_count = 0
        if created:
            status.total_events_synced = (status.total_events_synced or 0) + 1
    return status


def record_webhook_failure(integration_id, message, now=None):
    now = now or utcnow()
    with locked_status(integration_id, now) as status:
        status.webhook_failure_count = (status.webhook_failure_count or 0) + 1
        status.webhook_attempts = _append_attempt(status.webhook_attempts, False, now, message)
        _record_error(status, message, now)
    logger.warning("Integration %s: webhook failure: %s", integration_id, message)
    return status


def _record_duration(status, duration_ms):
    if duration_ms is None:
        return
    status.poll_cycle_count = (status.poll_cycle_count or 0) + 1
    status.last_sync_duration_ms = int(duration_ms)
    previous = status.average_sync_duration_ms
    if previous is None:
        status.average_sync_duration_ms = float(duration_ms)
    else:
        status.average_sync_duration_ms = previous + (duration_ms - previous) / status.poll_cycle_count


def record_poll_success(integration_id, created=0, duration_ms=None, now=None):
    now = now or utcnow()
    with locked_status(integration_id, now) as status:
        status.last_poll_at = now
        status.last_successful_poll_at = now
        status.polling_failure_count = 0
        status.polling_attempts = _append_attempt(status.polling_attempts, True, now)
        status.consecutive_error_count = 0
        status.retry_count = 0
        status.backoff_seconds = current_app.config["BASE_BACKOFF_SECONDS"]
        status.next_retry_at = None
        status.total_events_synced = (status.total_events_synced or 0) + created
        _record_duration(status, duration_ms)
    return status


def record_poll_failure(integration_id, message, duration_ms=None, now=None, rng=None):
    """Count a failed cycle and schedule the next attempt with backoff."""
    now = now or utcnow()
    rng = rng or _rng
    config = current_app.config
    with locked_status(integration_id, now) as status:
        status.last_poll_at = now
        status.polling_failure_count = (status.polling_failure_count or 0) + 1
        status.polling_attempts = _append_attempt(status.polling_attempts, False, now, message)
        status.retry_count = (status.retry_count or 0) + 1
        _record_error(status, message, now)

        backoff = compute_backoff(status.consecutive_error_count, config)
        jitter = rng.uniform(0, config["BACKOFF_JITTER_RATIO"] * backoff)
        status.backoff_seconds = backoff
        status.next_retry_at = now + timedelta(seconds=backoff + jitter)
        _record_duration(status, duration_ms)
    logger.warning(
        "Integration %s: poll failed (%d in a row), retry in %ds: %s",
        integration_id, status.consecutive_error_count, status.backoff_seconds, message,
    )
    return status


def suspend_polling(integration_id, reason, now=None):
    """Stop polling until re-authorization. Failure numerics are left as they are."""
    now = now or utcnow()
    with locked_status(integration_id, now) as status:
        status.polling_suspended = True
        status.suspended_reason = str(reason)[:255]
        status.last_error_message = str(reason)[:2000]
        status.last_error_at = now
        status.last_poll_at = now
    logger.error("Integration %s: polling suspended: %s", integration_id, reason)
    return status


def resume_polling(integration_id, now=None):
    now = now or utcnow()
    with locked_status(integration_id, now) as status:
        status.polling_suspended = False
        status.suspended_reason = None
        status.next_retry_at = None
    logger.info("Integration %s: polling resumed", integration_id)
    return status


def set_channels_enabled(integration_id, webhook=None, polling=None, now=None):
    with locked_status(integration_id, now) as status:
        if webhook is not None:
            status.webhook_enabled = webhook
        if polling is not None:
            status.polling_enabled = polling
    return status


def refresh_health(integration_id, now=None):
    """Recompute staleness-driven health without recording an attempt."""
    with locked_status(integration_id, now) as status:
        pass
    return status


def save_checkpoint(integration_id, resource, timestamp, event_id=None):
    """Advance one resource's poll cursor. Never moves a cursor backwards."""
    with _integration_lock(integration_id):
        status = (
            SyncStatus.query.filter_by(integration_id=integration_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        checkpoint = dict(status.poll_checkpoint or {})
        current = parse_timestamp(checkpoint.get(resource))
        if current is None or timestamp > current:
            checkpoint[resource] = timestamp.isoformat()
            status.poll_checkpoint = checkpoint
            latest = as_utc(status.last_synced_timestamp)
            if latest is None or timestamp > latest:
                status.last_synced_timestamp = timestamp
                if event_id:
                    status.last_synced_event_id = event_id
        db.session.commit()
        return checkpoint
