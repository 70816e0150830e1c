"""Cron job: recompute staleness-driven health for every integration.

Channel health decays with time even when nothing arrives, so this runs
every few minutes to keep overall_health and confidence current. It also
sweeps thread links a write could not resolve, which webhook-only integrations
would otherwise never get:
    python scripts/refresh_sync_health.py
"""

import os
import sys
import logging

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from callsync import create_app
from callsync.event_store import relink_orphans
from callsync.models import IntegrationAccount
from callsync.sync_status import ensure_sync_status, refresh_health

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    app = create_app()
    with app.app_context():
        integrations = IntegrationAccount.query.filter_by(is_active=True).all()
        logger.info("Refreshing sync health for %d integrations", len(integrations))

        degraded = 0
        for integration in integrations:
            ensure_sync_status(integration)
            relink_orphans(integration.id)
            status = refresh_health(integration.id)
            if status.overall_health != "healthy":
                degraded += 1
                logger.info(
                    "Integration %s: %s (confidence %.1f%%)",
                    integration.id, status.overall_health,
                    status.sync_confidence_percentage,
                )

        logger.info("Done. %d of %d integrations not healthy.", degraded, len(integrations))


if __name__ == "__main__":
    main()
