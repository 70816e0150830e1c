"""Deferred work that must never hold up an ingestion path."""

import logging
import threading

from flask import current_app

from .ai_classifier import classify_sms, classify_transcript
from .models import db, TelephonyEvent

logger = logging.getLogger(__name__)


def run_followups(event_ids):
    """Classify newly stored SMS bodies and call transcripts.

    Returns the number of events classified. A failure on one event is
    logged and the rest still run.
    """
    if not current_app.config.get("AI_CLASSIFICATION_ENABLED"):
        return 0

    classified = 0
    for event_id in event_ids:
        event = db.session.get(TelephonyEvent, event_id)
        if event is None or event.classification or event.processing_status != "processed":
            continue

        transcript = (event.extra or {}).get("transcript")
        try:
            if event.kind == "sms" and event.body:
                result = classify_sms(event.body)
            elif event.kind == "call" and transcript:
                result = classify_transcript(transcript)
            else:
                continue
        except Exception as e:
            logger.warning("Classification failed for event %s: %s", event_id, e)
            continue

        event.classification = result
        db.session.commit()
        classified += 1
        logger.info("Event %s classified as %s", event_id, result.get("category"))

    return classified


def spawn_followups(app, event_ids):
    """Run follow-ups for ``event_ids`` in a background thread."""
    event_ids = list(event_ids)
    if not event_ids or not app.config.get("FOLLOWUPS_ENABLED"):
        return None

    def _run():
        with app.app_context():
            try:
                run_followups(event_ids)
            except Exception:
                logger.exception("Follow-up work failed for events %s", event_ids)
            finally:
                db.session.remove()

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return thread
