# src/donorguard/scripts/maintenance.py
"""
Operator maintenance tasks.

Run daily from cron to enforce abuse event retention:

    python -m donorguard.scripts.maintenance purge-events

Mint a bearer token for the abuse monitoring endpoints:

    python -m donorguard.scripts.maintenance admin-token alice
"""

from __future__ import annotations

import argparse
import logging
import sys

from donorguard.core.security import create_admin_token
from donorguard.core.settings import settings
from donorguard.db.session import SessionLocal
from donorguard.services.abuse import purge_events_older_than

logger = logging.getLogger("donorguard.maintenance")


def purge_events(days: int) -> int:
    """Delete abuse events older than ``days``.

    Args:
        days: Retention period in days

    Returns:
        Number of rows removed
    """
    db = SessionLocal()
    try:
        removed = purge_events_older_than(db, days)
    finally:
        db.close()
    logger.info("Removed %d abuse events older than %d days", removed, days)
    return removed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="donorguard-maintenance", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    purge = sub.add_parser("purge-events", help="Enforce abuse event retention")
    purge.add_argument(
        "--days",
        type=int,
        default=settings.abuse_event_retention_days,
        help="Retention period in days (default: %(default)s)",
    )

    token = sub.add_parser("admin-token", help="Print an operator bearer token")
    token.add_argument("operator", help="Name recorded as the token subject")
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(message)s")
    args = build_parser().parse_args(argv)

    if args.command == "purge-events":
        if args.days < 1:
            logger.error("--days must be at least 1")
            return 1
        purge_events(args.days)
        return 0

    print(create_admin_token(args.operator))
    return 0


if __name__ == "__main__":
    sys.exit(main())
