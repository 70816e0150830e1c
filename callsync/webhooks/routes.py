import json
import logging
import time

from flask import request, jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..alerts import raise_system_alert
from ..errors import IdempotencyConflict, InfrastructureError, NormalizationError
from ..event_store import store_unprocessed, upsert
from ..followups import spawn_followups
from ..models import db, IntegrationAccount, WebhookDeliveryLog
from ..normalizer import ADAPTERS, normalize
from ..sync_status import ensure_sync_status, record_webhook_failure, record_webhook_success
from . import bp

logger = logging.getLogger(__name__)


def _log_delivery(integration_id, provider, status_code, error, started):
    """Append the audit row for this delivery."""
    try:
        db.session.add(
            WebhookDeliveryLog(
                integration_id=integration_id,
                provider=provider[:20],
                request_method=request.method,
                response_status=status_code,
                error_message=error,
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to write webhook delivery log for %s", provider)


def _parse_body(provider):
    """Return (payload, error). Twilio posts form-encoded, everyone else JSON."""
    if provider == "twilio" and request.mimetype in (
        "application/x-www-form-urlencoded",
        "multipart/form-data",
    ):
        form = request.form.to_dict()
        if not form:
            return None, "empty form body"
        return form, None

    raw = request.get_data(cache=True, as_text=True)
    if not raw or not raw.strip():
        return None, "empty body"
    try:
        return json.loads(raw), None
    except ValueError as e:
        return None, f"invalid JSON body: {e}"


@bp.route("/<provider>", methods=["POST"])
def receive(provider):
    """Accept a push delivery from a telephony provider.

    Authenticated by the integration's webhook token (query string or
    X-Webhook-Token header). A parseable body is always acknowledged so the
    provider does not retry a payload we have already stored.
    """
    started = time.monotonic()

    if provider not in ADAPTERS:
        _log_delivery(None, provider, 404, "unknown provider", started)
        return jsonify({"error": "Unknown provider"}), 404

    token = request.args.get("token") or request.headers.get("X-Webhook-Token")
    integration = None
    if token:
        integration = IntegrationAccount.query.filter_by(
            webhook_token=token, provider=provider
        ).first()
    if integration is None or not integration.is_active:
        logger.warning("Rejected %s webhook with unknown or inactive token", provider)
        _log_delivery(
            integration.id if integration else None,
            provider, 404, "unknown or inactive webhook token", started,
        )
        return jsonify({"error": "Unknown webhook token"}), 404

    payload, parse_error = _parse_body(provider)
    if parse_error:
        try:
            record_webhook_failure(integration.id, parse_error)
        except SQLAlchemyError as e:
            raise_system_alert("webhook_aborted", str(e), integration_id=integration.id)
        _log_delivery(integration.id, provider, 400, parse_error, started)
        return jsonify({"error": parse_error}), 400

    try:
        ensure_sync_status(integration)
        try:
            event = normalize(provider, payload)
        except NormalizationError as e:
            store_unprocessed(integration, e, "webhook")
            record_webhook_success(integration.id, created=False)
            _log_delivery(integration.id, provider, 200, f"unprocessed: {e.reason}", started)
            return jsonify({"status": "unprocessed", "reason": e.reason}), 200

        result = upsert(integration, event, "webhook")
        record_webhook_success(integration.id, created=result.created)
    except (InfrastructureError, IdempotencyConflict, SQLAlchemyError) as e:
        db.session.rollback()
        raise_system_alert(
            "webhook_aborted", str(e), integration_id=integration.id, provider=provider
        )
        _log_delivery(integration.id, provider, 500, str(e)[:2000], started)
        return jsonify({"error": "Internal error"}), 500

    if result.created or event.status == "ended":
        spawn_followups(current_app._get_current_object(), [result.event_id])

    logger.info(
        "Integration %s: %s webhook %s %s (%s)",
        integration.id, provider, event.event_type, event.provider_event_id, result.outcome,
    )
    _log_delivery(integration.id, provider, 200, None, started)
    return jsonify(
        {"status": result.outcome, "event_id": result.event_id, "event_type": event.event_type}
    ), 200
