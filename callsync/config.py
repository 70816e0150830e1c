import json
import os


def _env_int(name, default):
    return int(os.environ.get(name, default))


def _env_float(name, default):
    return float(os.environ.get(name, default))


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Per-provider cost estimates used when a provider omits cost (USD).
DEFAULT_COST_RATE_TABLE = {
    "twilio": {"call_per_minute": "0.0140", "sms_per_message": "0.0079"},
    "telnyx": {"call_per_minute": "0.0070", "sms_per_message": "0.0040"},
    "vapi": {"call_per_minute": "0.0500", "sms_per_message": "0"},
    "retell": {"call_per_minute": "0.0700", "sms_per_message": "0"},
}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///callsync.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Fix Supabase/Railway postgres:// vs postgresql:// issue
    if SQLALCHEMY_DATABASE_URI.startswith("postgres://"):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace(
            "postgres://", "postgresql://", 1
        )

    # Channel health bounds (minutes since the last success)
    WEBHOOK_DEGRADED_MINUTES = _env_int("WEBHOOK_DEGRADED_MINUTES", 10)
    WEBHOOK_FAILING_MINUTES = _env_int("WEBHOOK_FAILING_MINUTES", 30)
    POLL_DEGRADED_MINUTES = _env_int("POLL_DEGRADED_MINUTES", 20)
    POLL_FAILING_MINUTES = _env_int("POLL_FAILING_MINUTES", 60)

    # Failure thresholds inside the sliding window
    FAILURE_WINDOW_MINUTES = _env_int("FAILURE_WINDOW_MINUTES", 30)
    DEGRADED_FAILURE_THRESHOLD = _env_int("DEGRADED_FAILURE_THRESHOLD", 2)
    FAILING_FAILURE_THRESHOLD = _env_int("FAILING_FAILURE_THRESHOLD", 5)
    ATTEMPT_HISTORY_SIZE = _env_int("ATTEMPT_HISTORY_SIZE", 20)

    # Retry backoff for failed poll cycles
    BASE_BACKOFF_SECONDS = _env_int("BASE_BACKOFF_SECONDS", 60)
    MAX_BACKOFF_SECONDS = _env_int("MAX_BACKOFF_SECONDS", 3600)
    BACKOFF_JITTER_RATIO = _env_float("BACKOFF_JITTER_RATIO", 0.1)

    # Polling
    DEFAULT_POLLING_INTERVAL_MINUTES = _env_int("DEFAULT_POLLING_INTERVAL_MINUTES", 15)
    FALLBACK_POLLING_INTERVAL_MINUTES = _env_int("FALLBACK_POLLING_INTERVAL_MINUTES", 5)
    POLL_CYCLE_TIMEOUT_SECONDS = _env_int("POLL_CYCLE_TIMEOUT_SECONDS", 120)
    POLL_LEASE_SECONDS = _env_int("POLL_LEASE_SECONDS", 300)
    POLL_MAX_WORKERS = _env_int("POLL_MAX_WORKERS", 4)
    POLL_INITIAL_LOOKBACK_DAYS = _env_int("POLL_INITIAL_LOOKBACK_DAYS", 7)
    # Calls list is re-read from this far before the oldest call still open.
    POLL_OPEN_CALL_MARGIN_SECONDS = _env_int("POLL_OPEN_CALL_MARGIN_SECONDS", 300)
    PROVIDER_PAGE_SIZE = _env_int("PROVIDER_PAGE_SIZE", 100)

    COST_RATE_TABLE = json.loads(
        os.environ.get("COST_RATE_TABLE", json.dumps(DEFAULT_COST_RATE_TABLE))
    )

    # Credential capability hooks (callables); None means stored as JSON
    CREDENTIAL_DECRYPTOR = None
    CREDENTIAL_ENCRYPTOR = None

    # Deferred follow-up work
    FOLLOWUPS_ENABLED = _env_bool("FOLLOWUPS_ENABLED", True)
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    AI_CLASSIFICATION_ENABLED = _env_bool(
        "AI_CLASSIFICATION_ENABLED", bool(os.environ.get("OPENAI_API_KEY"))
    )

    ALERT_WEBHOOK_URL = os.environ.get("ALERT_WEBHOOK_URL")
