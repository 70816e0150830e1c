import logging
from datetime import datetime

from flask import request, jsonify, abort, current_app, url_for
from flask_login import login_required, current_user

from ..credentials import encrypt_credentials, validate_credentials
from ..errors import CredentialsUnavailable
from ..event_store import get_thread
from ..metrics import compute_metrics
from ..models import db, PROVIDERS, IntegrationAccount, TelephonyEvent, WebhookDeliveryLog
from ..poll_service import spawn_poll
from ..sync_status import ensure_sync_status, resume_polling, set_channels_enabled
from . import bp

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200
MAX_LOG_LIMIT = 500


def _own_integration(integration_id):
    integration = db.session.get(IntegrationAccount, integration_id)
    if integration is None or integration.user_id != current_user.id:
        abort(404)
    return integration


def _integration_dict(integration):
    status = ensure_sync_status(integration)
    return {
        "id": integration.id,
        "provider": integration.provider,
        "display_name": integration.display_name,
        "capabilities": integration.capabilities or [],
        "is_active": integration.is_active,
        "polling_interval_minutes": integration.polling_interval_minutes,
        "webhook_url": url_for(
            "webhooks.receive", provider=integration.provider,
            token=integration.webhook_token, _external=True,
        ),
        "overall_health": status.overall_health,
        "sync_confidence_percentage": round(status.sync_confidence_percentage or 0.0, 1),
        "created_at": integration.created_at.isoformat() if integration.created_at else None,
    }


def _parse_date(value):
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        abort(400, description=f"Invalid date {value!r}, expected YYYY-MM-DD")


# --- Integrations ---


@bp.route("/integrations", methods=["GET"])
@login_required
def list_integrations():
    integrations = (
        IntegrationAccount.query.filter_by(user_id=current_user.id)
        .order_by(IntegrationAccount.created_at)
        .all()
    )
    return jsonify({"integrations": [_integration_dict(i) for i in integrations]})


@bp.route("/integrations", methods=["POST"])
@login_required
def create_integration():
    data = request.get_json(silent=True) or {}
    provider = (data.get("provider") or "").strip().lower()
    credentials = data.get("credentials") or {}

    if provider not in PROVIDERS:
        return jsonify({"error": f"Unsupported provider {provider!r}"}), 400
    missing = validate_credentials(provider, credentials)
    if missing:
        return jsonify({"error": f"Missing credentials: {', '.join(missing)}"}), 400

    try:
        encrypted = encrypt_credentials(credentials)
    except CredentialsUnavailable:
        logger.exception("Could not store credentials for new %s integration", provider)
        return jsonify({"error": "Credential storage unavailable"}), 503

    integration = IntegrationAccount(
        user_id=current_user.id,
        provider=provider,
        display_name=data.get("display_name") or provider.title(),
        encrypted_credentials=encrypted,
        capabilities=data.get("capabilities") or ["voice", "sms"],
        polling_interval_minutes=current_app.config["DEFAULT_POLLING_INTERVAL_MINUTES"],
    )
    db.session.add(integration)
    db.session.commit()
    ensure_sync_status(integration)

    logger.info("User %s connected %s integration %s", current_user.id, provider, integration.id)
    return jsonify(_integration_dict(integration)), 201


@bp.route("/integrations/<int:integration_id>/deactivate", methods=["POST"])
@login_required
def deactivate_integration(integration_id):
    integration = _own_integration(integration_id)
    integration.is_active = False
    db.session.commit()
    set_channels_enabled(integration.id, webhook=False, polling=False)
    logger.info("Integration %s deactivated", integration.id)
    return jsonify(_integration_dict(integration))


@bp.route("/integrations/<int:integration_id>/rotate-token", methods=["POST"])
@login_required
def rotate_token(integration_id):
    integration = _own_integration(integration_id)
    integration.rotate_webhook_token()
    db.session.commit()
    logger.info("Integration %s webhook token rotated", integration.id)
    return jsonify(_integration_dict(integration))


@bp.route("/integrations/<int:integration_id>/credentials", methods=["POST"])
@login_required
def update_credentials(integration_id):
    """Re-authorize an integration; resumes polling suspended on an auth error."""
    integration = _own_integration(integration_id)
    credentials = (request.get_json(silent=True) or {}).get("credentials") or {}
    missing = validate_credentials(integration.provider, credentials)
    if missing:
        return jsonify({"error": f"Missing credentials: {', '.join(missing)}"}), 400

    try:
        integration.encrypted_credentials = encrypt_credentials(credentials)
    except CredentialsUnavailable:
        logger.exception("Could not store credentials for integration %s", integration.id)
        return jsonify({"error": "Credential storage unavailable"}), 503
    db.session.commit()

    status = resume_polling(integration.id)
    return jsonify(status.to_dict())


@bp.route("/integrations/<int:integration_id>/sync", methods=["POST"])
@login_required
def trigger_sync(integration_id):
    integration = _own_integration(integration_id)
    if not integration.is_active:
        return jsonify({"error": "Integration is inactive"}), 409
    spawn_poll(integration.id)
    return jsonify({"status": "started"}), 202


@bp.route("/integrations/<int:integration_id>/sync-status", methods=["GET"])
@login_required
def sync_status(integration_id):
    integration = _own_integration(integration_id)
    return jsonify(ensure_sync_status(integration).to_dict())


@bp.route("/integrations/<int:integration_id>/webhook-logs", methods=["GET"])
@login_required
def webhook_logs(integration_id):
    integration = _own_integration(integration_id)
    limit = min(request.args.get("limit", 50, type=int) or 50, MAX_LOG_LIMIT)
    logs = (
        WebhookDeliveryLog.query.filter_by(integration_id=integration.id)
        .order_by(WebhookDeliveryLog.created_at.desc(), WebhookDeliveryLog.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify({"logs": [log.to_dict() for log in logs]})


# --- Events ---


@bp.route("/integrations/<int:integration_id>/events", methods=["GET"])
@login_required
def list_events(integration_id):
    integration = _own_integration(integration_id)
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    per_page = min(request.args.get("per_page", 50, type=int) or 50, MAX_PAGE_SIZE)
    include_raw = request.args.get("include_raw") in ("1", "true")

    query = TelephonyEvent.query.filter_by(integration_id=integration.id)
    processing_status = request.args.get("processing_status")
    if processing_status:
        query = query.filter_by(processing_status=processing_status)

    total = query.count()
    events = (
        query.order_by(TelephonyEvent.received_at.desc(), TelephonyEvent.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )
    return jsonify({
        "events": [e.to_dict(include_raw=include_raw) for e in events],
        "page": page,
        "per_page": per_page,
        "total": total,
    })


@bp.route("/events/<int:event_id>/thread", methods=["GET"])
@login_required
def event_thread(event_id):
    event = db.session.get(TelephonyEvent, event_id)
    if event is None:
        abort(404)
    _own_integration(event.integration_id)
    thread = get_thread(event_id)
    return jsonify({
        "root_id": thread[0].id,
        "events": [e.to_dict() for e in thread],
    })


@bp.route("/metrics", methods=["GET"])
@login_required
def metrics():
    integration_ids = [
        i.id for i in IntegrationAccount.query.filter_by(user_id=current_user.id).all()
    ]
    filters = {
        "provider": request.args.get("provider") or None,
        "integration_id": request.args.get("integration_id", type=int),
        "date_from": _parse_date(request.args.get("date_from")),
        "date_to": _parse_date(request.args.get("date_to")),
    }

    events = []
    if integration_ids:
        events = TelephonyEvent.query.filter(
            TelephonyEvent.integration_id.in_(integration_ids),
            TelephonyEvent.processing_status == "processed",
        ).all()

    result = compute_metrics(
        events,
        filters=filters,
        rate_table=current_app.config["COST_RATE_TABLE"],
        tz_name=current_user.timezone or "UTC",
    )
    return jsonify(result)
