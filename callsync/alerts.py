"""System-level alerts for failures that are not a single integration's health."""

import logging

import requests
from flask import current_app

from .timeutils import utcnow

logger = logging.getLogger(__name__)


def raise_system_alert(kind, message, **context):
    """Log a critical alert and forward it to ALERT_WEBHOOK_URL if configured.

    Alerting never raises; a failed forward is logged and dropped.
    """
    logger.critical("System alert [%s]: %s %s", kind, message, context or "")

    try:
        url = current_app.config.get("ALERT_WEBHOOK_URL")
    except RuntimeError:
        url = None
    if not url:
        return

    body = {
        "kind": kind,
        "message": message,
        "context": {k: str(v) for k, v in context.items()},
        "raised_at": utcnow().isoformat(),
    }
    try:
        resp = requests.post(url, json=body, timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.error("Failed to forward system alert %s: %s", kind, e)
