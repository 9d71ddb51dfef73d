#!/usr/bin/env python3
"""
One-shot Square booking reconciliation.

Runs the same ReconciliationJob as the scheduled worker, with an explicit
window. Windows longer than 31 days are clamped to 30 days from the start.

Usage:
    # Default window (last 7 days to 23 days ahead)
    python -m scripts.sync_square_bookings

    # Last 14 days up to today
    python -m scripts.sync_square_bookings --days 14

    # Explicit range, report only
    python -m scripts.sync_square_bookings --start 2025-01-01 --end 2025-01-31 --dry-run
"""

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser
from datetime import UTC, datetime, timedelta

from shared.logging_config import configure_logging
from shared.startup_validator import StartupValidationError, validate_startup_config
from sync.services.components import get_reconciliation_job

logger = logging.getLogger(__name__)


def parse_date(value: str) -> datetime:
    """Parse YYYY-MM-DD (or full ISO 8601) as UTC."""
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description="Reconcile Square bookings into local appointments")
    parser.add_argument("--days", type=int, help="Reconcile the last N days up to now")
    parser.add_argument("--start", type=parse_date, help="Window start (YYYY-MM-DD)")
    parser.add_argument("--end", type=parse_date, help="Window end (YYYY-MM-DD)")
    parser.add_argument(
        "--dry-run", action="store_true", help="Report what would change without writing"
    )
    return parser


def resolve_dates(args) -> tuple[datetime | None, datetime | None]:
    if args.days is not None:
        if args.start or args.end:
            raise ValueError("--days cannot be combined with --start/--end")
        end = datetime.now(UTC)
        return end - timedelta(days=args.days), end
    return args.start, args.end


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        start_date, end_date = resolve_dates(args)
    except ValueError as e:
        logger.error(str(e))
        return 2

    try:
        await validate_startup_config(require_square=True)
    except StartupValidationError as e:
        logger.error(f"Cannot run reconciliation: {e}")
        return 1

    result = await get_reconciliation_job().run(
        start_date=start_date, end_date=end_date, dry_run=args.dry_run
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success and not result.errors else 1


if __name__ == "__main__":
    configure_logging()
    sys.exit(asyncio.run(main()))
