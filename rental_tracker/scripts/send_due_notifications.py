#!/usr/bin/env python3
"""Queue and send return-reminder and overdue emails for active rentals."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.session import RENTAL_TRACKER_DB_URL, init_db
from services.notification_service import dispatch_pending_notifications
from services.rental_service import enqueue_due_notifications, list_overdue_rentals, list_return_reminders


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send return reminders and overdue notices.")
    parser.add_argument(
        "--days",
        type=int,
        default=int(os.environ.get("REMINDER_DAYS") or "3"),
        help="Remind rentals due within this many days (default: REMINDER_DAYS or 3).",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only list the rentals that would be notified.")
    parser.add_argument(
        "--db-url",
        default=RENTAL_TRACKER_DB_URL,
        help="SQLAlchemy DB URL; defaults to RENTAL_TRACKER_DB_URL or the app's SQLite file.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if args.days < 0:
        parser.error("--days must be >= 0")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    init_db(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with session_factory() as db:
        if args.dry_run:
            for rental, days_left in list_return_reminders(db, args.days):
                print(f"REMINDER rental={rental.RentalID} user={rental.UserID} item={rental.ItemID} days_left={days_left}")
            for rental, days_overdue in list_overdue_rentals(db):
                print(f"OVERDUE rental={rental.RentalID} user={rental.UserID} item={rental.ItemID} days_overdue={days_overdue}")
            return 0

        queued = enqueue_due_notifications(db, args.days)
        result = dispatch_pending_notifications(db)

    print(f"OK queued={queued} sent={result['sent']} failed={result['failed']}")
    return 0 if result["failed"] == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
