"""Cron job: reconcile provider history for every integration that is due.

Run every minute via cron; integrations are only polled when their interval
(or retry backoff) has elapsed:
    python scripts/poll_integrations.py

Poll everything now, ignoring due times:
    python scripts/poll_integrations.py --all
"""

import argparse
import os
import sys
import logging

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from callsync import create_app
from callsync.poll_service import run_due_polls

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Poll telephony providers for new events")
    parser.add_argument(
        "--all",
        action="store_true",
        help="Poll every active integration, not just the ones that are due.",
    )
    args = parser.parse_args()

    app = create_app()
    results = run_due_polls(app, include_all=args.all)

    failed = [iid for iid, result in results.items() if result is None or result.error]
    total_new = sum(r.created for r in results.values() if r is not None)
    total_merged = sum(r.merged for r in results.values() if r is not None)

    logger.info(
        "Done. %d integrations polled, %d new events, %d merged, %d failed.",
        len(results), total_new, total_merged, len(failed),
    )
    if failed:
        logger.warning("Failed integrations: %s", ", ".join(str(i) for i in failed))


if __name__ == "__main__":
    main()
