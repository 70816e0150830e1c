"""Read-side aggregation over the deduplicated event store.

Everything is counted per thread: a root event plus the legs linked to it.
Child legs never count as calls of their own.
"""

import logging
import math
from datetime import date, datetime, time as dt_time
from decimal import Decimal

import pytz

from .event_store import build_threads
from .timeutils import as_utc

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _rate(rate_table, provider, key):
    rates = (rate_table or {}).get(provider) or {}
    value = rates.get(key)
    return Decimal(str(value)) if value is not None else None


def estimate_cost(event, rate_table):
    """Rate-table cost for an event the provider did not price, or None."""
    if event.kind == "sms":
        return _rate(rate_table, event.provider, "sms_per_message")
    if event.kind == "call" and event.duration_seconds:
        per_minute = _rate(rate_table, event.provider, "call_per_minute")
        if per_minute is None:
            return None
        # Billed per started minute.
        return per_minute * math.ceil(event.duration_seconds / 60)
    return None


def thread_cost(members, rate_table):
    """Return (cost, estimated) summed over every event of a thread."""
    total = ZERO
    estimated = False
    for event in members:
        if event.cost_amount is not None:
            total += Decimal(str(event.cost_amount))
            continue
        guess = estimate_cost(event, rate_table)
        if guess is not None:
            total += guess
            estimated = True
    return total, estimated


def thread_duration(root, members):
    """Duration of an ended call thread in seconds, or None if unknown."""
    if root.duration_seconds is not None:
        return root.duration_seconds
    started, ended = as_utc(root.started_at), as_utc(root.ended_at)
    if started and ended and ended >= started:
        return int((ended - started).total_seconds())
    durations = [m.duration_seconds for m in members if m.duration_seconds is not None]
    return max(durations) if durations else None


def is_in_progress(root):
    return root.kind == "call" and root.ended_at is None and not root.ended_reason


def _when(event):
    return as_utc(event.started_at or event.event_timestamp or event.received_at)


def _bound(value, end=False):
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return pytz.utc.localize(datetime.combine(value, dt_time.max if end else dt_time.min))
    return None


def _empty_bucket():
    return {
        "calls": 0,
        "sms": 0,
        "in_progress_calls": 0,
        "total_duration": 0,
        "ended_calls": 0,
        "cost": ZERO,
        "estimated": False,
    }


def compute_metrics(events, filters=None, rate_table=None, tz_name=None):
    """Aggregate calls, SMS, duration and cost for ``events``.

    ``filters`` may hold ``provider``, ``integration_id``, ``date_from`` and
    ``date_to`` (inclusive, applied to thread roots). Daily trends bucket
    roots by ``tz_name`` (UTC by default).
    """
    filters = filters or {}
    provider = filters.get("provider")
    integration_id = filters.get("integration_id")
    date_from = _bound(filters.get("date_from"))
    date_to = _bound(filters.get("date_to"), end=True)
    tz = pytz.timezone(tz_name or "UTC")

    rows = [
        e for e in events
        if e.processing_status == "processed"
        and (provider is None or e.provider == provider)
        and (integration_id is None or e.integration_id == integration_id)
    ]
    threads = build_threads(rows)

    totals = _empty_bucket()
    by_provider = {}
    daily = {}

    for members in threads.values():
        root = members[0]
        when = _when(root)
        if date_from and (when is None or when < date_from):
            continue
        if date_to and (when is None or when > date_to):
            continue

        cost, estimated = thread_cost(members, rate_table)
        day = when.astimezone(tz).date().isoformat() if when else None
        buckets = [totals, by_provider.setdefault(root.provider, _empty_bucket())]
        if day:
            buckets.append(daily.setdefault(day, _empty_bucket()))

        for bucket in buckets:
            bucket["cost"] += cost
            bucket["estimated"] = bucket["estimated"] or estimated
            if root.kind == "sms":
                bucket["sms"] += 1
                continue
            bucket["calls"] += 1
            if is_in_progress(root):
                bucket["in_progress_calls"] += 1
                continue
            duration = thread_duration(root, members)
            if duration is not None:
                bucket["total_duration"] += duration
                bucket["ended_calls"] += 1

    def _finish(bucket):
        ended = bucket.pop("ended_calls")
        bucket["average_duration"] = (
            round(bucket["total_duration"] / ended, 1) if ended else 0
        )
        bucket["cost"] = float(round(bucket["cost"], 4))
        return bucket

    totals = _finish(totals)
    return {
        "total_calls": totals["calls"],
        "total_sms": totals["sms"],
        "total_duration": totals["total_duration"],
        "average_duration": totals["average_duration"],
        "total_cost": totals["cost"],
        "estimated": totals["estimated"],
        "in_progress_calls": totals["in_progress_calls"],
        "by_provider": {name: _finish(bucket) for name, bucket in sorted(by_provider.items())},
        "daily_trends": [
            dict(date=day, **_finish(bucket)) for day, bucket in sorted(daily.items())
        ],
    }
