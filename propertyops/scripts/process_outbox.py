"""
Run the outbox processor by hand, or inspect what is waiting in the outbox.

Useful when the scheduler is disabled on a worker, or to push a stuck export
through right after fixing its invoice.

Usage:
    python -m propertyops.scripts.process_outbox                  # Run one processing pass
    python -m propertyops.scripts.process_outbox --list           # Show PENDING/PROCESSING/FAILED events
    python -m propertyops.scripts.process_outbox --list --status FAILED
"""

import argparse

from propertyops.datetime_utils import format_datetime_utc
from propertyops.logging_config import get_logger
from propertyops.services.outbox_service import OutboxService

logger = get_logger(__name__)

LISTED_STATUSES = ["PENDING", "PROCESSING", "FAILED"]


def list_events(statuses, limit=50):
    print("=" * 80)
    print("OUTBOX EVENTS")
    print("=" * 80)

    total = 0
    for status in statuses:
        events = OutboxService.list_events(status=status, limit=limit)
        print(f"\n[{status}] {len(events)} event(s)")
        for event in events:
            total += 1
            print(
                f"  {event.id}  {event.event_type:<16} {event.entity_type}:{event.entity_id}  "
                f"retries={event.retry_count}  next={format_datetime_utc(event.next_retry_at) or '-'}"
            )
            if event.last_error:
                print(f"      last error: {event.last_error[:120]}")
    return total


def process_once(app):
    print("[INFO] Running one outbox processing pass...")
    succeeded = app.extensions["outbox_processor"].run_once()
    print(f"[INFO] {succeeded} event(s) succeeded")
    return succeeded


def main(argv=None):
    parser = argparse.ArgumentParser(description="Process or inspect the integration outbox")
    parser.add_argument("--list", action="store_true", help="List events instead of processing")
    parser.add_argument(
        "--status",
        action="append",
        choices=["PENDING", "PROCESSING", "SUCCEEDED", "FAILED"],
        help="Status to list (repeatable, default: PENDING, PROCESSING, FAILED)",
    )
    parser.add_argument("--limit", type=int, default=50)
    args = parser.parse_args(argv)

    from propertyops import create_app

    app = create_app()
    scheduler = app.extensions.get("outbox_scheduler")
    if scheduler is not None:
        # This run is the processing pass; no background timer alongside it
        scheduler.shutdown()

    with app.app_context():
        if args.list:
            list_events(args.status or LISTED_STATUSES, limit=args.limit)
            return 0
        process_once(app)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
