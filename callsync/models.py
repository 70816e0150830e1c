import secrets
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

PROVIDERS = ("twilio", "telnyx", "vapi", "retell")

# Forward-only status order; a merge never lowers the stored rank.
STATUS_RANK = {
    "started": 0,
    "ringing": 1,
    "answered": 2,
    "ended": 3,
    "sent": 0,
    "delivered": 1,
    "received": 1,
    "failed": 1,
}


def generate_webhook_token():
    return secrets.token_urlsafe(32)


def _now():
    return datetime.now(timezone.utc)


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    timezone = db.Column(db.String(50), default="UTC")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    integrations = db.relationship("IntegrationAccount", backref="user", lazy=True)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password, method="pbkdf2:sha256")

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)


class IntegrationAccount(db.Model):
    __tablename__ = "integration_accounts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    provider = db.Column(db.String(20), nullable=False)
    display_name = db.Column(db.String(255))
    encrypted_credentials = db.Column(db.Text)
    capabilities = db.Column(db.JSON, default=lambda: ["voice", "sms"])
    webhook_token = db.Column(
        db.String(64), unique=True, nullable=False, default=generate_webhook_token
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    polling_interval_minutes = db.Column(db.Integer, default=15)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    sync_status = db.relationship(
        "SyncStatus", backref="integration", uselist=False, lazy=True
    )

    def rotate_webhook_token(self):
        self.webhook_token = generate_webhook_token()
        return self.webhook_token


class TelephonyEvent(db.Model):
    __tablename__ = "telephony_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "provider_event_id", name="uq_event_provider_event_id"),
        db.Index("ix_event_integration_timestamp", "integration_id", "event_timestamp"),
        db.Index("ix_event_integration_parent_ref", "integration_id", "parent_ref"),
        db.Index("ix_event_parent", "parent_event_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    integration_id = db.Column(
        db.Integer, db.ForeignKey("integration_accounts.id"), nullable=False
    )
    provider = db.Column(db.String(20), nullable=False)
    provider_event_id = db.Column(db.String(255), nullable=False)
    kind = db.Column(db.String(10))  # "call" or "sms"
    event_type = db.Column(db.String(30), nullable=False, default="unknown")
    status = db.Column(db.String(20))
    status_rank = db.Column(db.Integer, nullable=False, default=-1)

    # Thread linkage: parent_ref is the provider id of the parent leg and
    # stays set; parent_event_id is filled once that parent is stored.
    parent_ref = db.Column(db.String(255))
    parent_event_id = db.Column(
        db.Integer, db.ForeignKey("telephony_events.id"), nullable=True
    )
    correlation_id = db.Column(db.String(255))

    direction = db.Column(db.String(10))
    from_number = db.Column(db.String(40))
    to_number = db.Column(db.String(40))
    started_at = db.Column(db.DateTime(timezone=True))
    ended_at = db.Column(db.DateTime(timezone=True))
    ended_reason = db.Column(db.String(100))
    duration_seconds = db.Column(db.Integer)
    cost_amount = db.Column(db.Numeric(12, 6))
    cost_currency = db.Column(db.String(3))
    body = db.Column(db.Text)
    extra = db.Column(db.JSON(none_as_null=True))

    raw_payload = db.Column(db.JSON)
    processing_status = db.Column(db.String(20), nullable=False, default="processed")
    normalization_error = db.Column(db.Text)
    received_via = db.Column(db.String(10), nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    event_timestamp = db.Column(db.DateTime(timezone=True))
    delivery_count = db.Column(db.Integer, nullable=False, default=1)

    classification = db.Column(db.JSON(none_as_null=True))
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    integration = db.relationship("IntegrationAccount", backref="events", lazy=True)

    def to_dict(self, include_raw=False):
        data = {
            "id": self.id,
            "integration_id": self.integration_id,
            "provider": self.provider,
            "provider_event_id": self.provider_event_id,
            "kind": self.kind,
            "event_type": self.event_type,
            "status": self.status,
            "parent_event_id": self.parent_event_id,
            "direction": self.direction,
            "from": self.from_number,
            "to": self.to_number,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "ended_reason": self.ended_reason,
            "duration_seconds": self.duration_seconds,
            "cost_amount": float(self.cost_amount) if self.cost_amount is not None else None,
            "cost_currency": self.cost_currency,
            "processing_status": self.processing_status,
            "received_via": self.received_via,
            "received_at": _iso(self.received_at),
            "event_timestamp": _iso(self.event_timestamp),
            "classification": self.classification,
        }
        if include_raw:
            data["raw_payload"] = self.raw_payload
        return data


class SyncStatus(db.Model):
    __tablename__ = "sync_statuses"

    id = db.Column(db.Integer, primary_key=True)
    integration_id = db.Column(
        db.Integer, db.ForeignKey("integration_accounts.id"), unique=True, nullable=False
    )
    sync_method = db.Column(db.String(20), default="hybrid")

    # Webhook channel
    webhook_enabled = db.Column(db.Boolean, default=True, nullable=False)
    last_webhook_received_at = db.Column(db.DateTime(timezone=True))
    webhook_failure_count = db.Column(db.Integer, default=0, nullable=False)
    webhook_health_status = db.Column(db.String(20), default="unknown", nullable=False)
    webhook_attempts = db.Column(db.JSON, default=list)

    # Polling channel
    polling_enabled = db.Column(db.Boolean, default=True, nullable=False)
    last_poll_at = db.Column(db.DateTime(timezone=True))
    last_successful_poll_at = db.Column(db.DateTime(timezone=True))
    polling_failure_count = db.Column(db.Integer, default=0, nullable=False)
    polling_health_status = db.Column(db.String(20), default="unknown", nullable=False)
    polling_attempts = db.Column(db.JSON, default=list)
    polling_suspended = db.Column(db.Boolean, default=False, nullable=False)
    suspended_reason = db.Column(db.String(255))
    poll_checkpoint = db.Column(db.JSON, default=dict)
    last_synced_timestamp = db.Column(db.DateTime(timezone=True))
    last_synced_event_id = db.Column(db.String(255))
    poll_lease_until = db.Column(db.DateTime(timezone=True))
    poll_cycle_count = db.Column(db.Integer, default=0, nullable=False)

    # Derived health
    overall_health = db.Column(db.String(20), default="unknown", nullable=False)
    sync_confidence_percentage = db.Column(db.Float, default=0.0, nullable=False)

    # Errors and retry schedule
    consecutive_error_count = db.Column(db.Integer, default=0, nullable=False)
    last_error_message = db.Column(db.Text)
    last_error_at = db.Column(db.DateTime(timezone=True))
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    next_retry_at = db.Column(db.DateTime(timezone=True))
    backoff_seconds = db.Column(db.Integer, default=0, nullable=False)

    # Throughput
    total_events_synced = db.Column(db.Integer, default=0, nullable=False)
    last_sync_duration_ms = db.Column(db.Integer)
    average_sync_duration_ms = db.Column(db.Float)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self):
        return {
            "integration_id": self.integration_id,
            "overall_health": self.overall_health,
            "sync_confidence_percentage": round(self.sync_confidence_percentage or 0.0, 1),
            "sync_method": self.sync_method,
            "webhook": {
                "enabled": self.webhook_enabled,
                "health": self.webhook_health_status,
                "failure_count": self.webhook_failure_count,
                "last_received_at": _iso(self.last_webhook_received_at),
            },
            "polling": {
                "enabled": self.polling_enabled,
                "health": self.polling_health_status,
                "failure_count": self.polling_failure_count,
                "suspended": self.polling_suspended,
                "suspended_reason": self.suspended_reason,
                "last_poll_at": _iso(self.last_poll_at),
                "last_successful_poll_at": _iso(self.last_successful_poll_at),
                "checkpoint": self.poll_checkpoint or {},
            },
            "consecutive_error_count": self.consecutive_error_count,
            "last_error_message": self.last_error_message,
            "last_error_at": _iso(self.last_error_at),
            "retry_count": self.retry_count,
            "next_retry_at": _iso(self.next_retry_at),
            "backoff_seconds": self.backoff_seconds,
            "total_events_synced": self.total_events_synced,
            "last_sync_duration_ms": self.last_sync_duration_ms,
            "average_sync_duration_ms": self.average_sync_duration_ms,
        }


class WebhookDeliveryLog(db.Model):
    __tablename__ = "webhook_delivery_logs"
    __table_args__ = (
        db.Index("ix_webhook_log_integration_created", "integration_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    integration_id = db.Column(
        db.Integer, db.ForeignKey("integration_accounts.id"), nullable=True
    )
    provider = db.Column(db.String(20), nullable=False)
    request_method = db.Column(db.String(10), nullable=False)
    response_status = db.Column(db.Integer, nullable=False)
    error_message = db.Column(db.Text)
    processing_time_ms = db.Column(db.Integer)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "request_method": self.request_method,
            "response_status": self.response_status,
            "error_message": self.error_message,
            "processing_time_ms": self.processing_time_ms,
            "created_at": _iso(self.created_at),
        }


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
