"""Send due email notifications and flag sessions whose join window has closed.

Meant to run from cron every few minutes.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kalm import create_app
from kalm.bookings import mark_missed
from kalm.notifications import dispatch_pending, pending_notifications


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deliver queued Kalm email notifications.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List due notifications without sending them",
    )
    parser.add_argument(
        "--skip-missed",
        action="store_true",
        help="Do not mark overdue scheduled sessions as missed",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    app = create_app()

    with app.app_context():
        if args.dry_run:
            for notification in pending_notifications():
                print(f"{notification.notification_id}\t{notification.notification_type}\t{notification.recipient_email}")
            return

        counts = dispatch_pending()
        print(f"sent={counts['sent']} retrying={counts['retrying']} failed={counts['failed']}")

        if not args.skip_missed:
            print(f"missed={mark_missed()}")


if __name__ == "__main__":
    main()
