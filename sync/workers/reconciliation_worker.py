"""
Square Reconciliation Worker - scheduled reconciliation of bookings and payments.

This worker handles:
1. Booking reconciliation (ReconciliationJob) every SYNC_INTERVAL_MINUTES
2. Background payment sync (missing local payments from the last 24 hours)

Architecture:
    - Runs once immediately on startup, then on a fixed interval
    - Single event loop (asyncio.sleep, no scheduler library)
    - Graceful shutdown on SIGTERM/SIGINT between runs
    - Writes a JSON health file after every run for container health checks
"""

import asyncio
import json
import logging
import signal
import sys
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.startup_validator import StartupValidationError, validate_startup_config
from sync.services.components import get_payment_service, get_reconciliation_job

logger = logging.getLogger(__name__)

HEALTH_DIR = Path("/tmp/health")
HEALTH_FILE_NAME = "reconciliation_worker_health.json"

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Request shutdown after the current run finishes."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, shutting down after current run...")
    shutdown_requested = True


async def run_reconciliation_cycle() -> dict[str, Any]:
    """Run booking reconciliation then background payment sync. Never raises."""
    job = get_reconciliation_job()
    result = await job.run()

    payment_stats: dict[str, int] = {}
    try:
        payment_stats = await get_payment_service().background_sync_payments()
    except Exception as e:
        logger.error(f"Background payment sync failed: {e}", exc_info=True)
        payment_stats = {"errors": 1}

    stats = {**result.to_dict(), "payments": payment_stats}
    await update_health_check(
        last_run=datetime.now(UTC),
        status="healthy" if result.success and not result.errors else "unhealthy",
        stats=stats,
    )
    return stats


async def update_health_check(
    last_run: datetime,
    status: str,
    stats: dict[str, Any],
    health_dir: Path = HEALTH_DIR,
) -> None:
    """Atomically write the health file (temp file + rename)."""
    health_dir.mkdir(parents=True, exist_ok=True)
    health_file = health_dir / HEALTH_FILE_NAME
    temp_file = health_dir / f"{HEALTH_FILE_NAME}.{int(time.time())}.tmp"

    health_data = {
        "last_run": last_run.isoformat(),
        "status": status,
        "synced": stats.get("synced", 0),
        "created": stats.get("created", 0),
        "updated": stats.get("updated", 0),
        "recovered": stats.get("recovered", 0),
        "errors": len(stats.get("errors", [])),
        "payments": stats.get("payments", {}),
        "last_updated": datetime.now(UTC).isoformat(),
    }

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


async def async_main() -> None:
    """
    Main async entry point - runs reconciliation on schedule using a single event loop.

    Uses asyncio.sleep() rather than repeated asyncio.run() so asyncpg
    connections stay on the loop that created them.
    """
    settings = get_settings()
    sync_interval = settings.SYNC_INTERVAL_MINUTES

    try:
        await validate_startup_config(require_square=True)
    except StartupValidationError as e:
        logger.critical(f"Reconciliation worker startup blocked: {e}")
        sys.exit(1)

    logger.info(f"Reconciliation worker starting: interval={sync_interval} minutes")
    await update_health_check(last_run=datetime.now(UTC), status="starting", stats={})

    await run_reconciliation_cycle()

    while not shutdown_requested:
        # Sleep in 30s slices so shutdown is noticed promptly
        for _ in range(max(1, sync_interval * 60 // 30)):
            if shutdown_requested:
                break
            await asyncio.sleep(30)

        if shutdown_requested:
            break

        await run_reconciliation_cycle()

    logger.info("Reconciliation worker shutting down gracefully...")


def run_reconciliation_worker() -> None:
    """Synchronous entry point: logging, signal handlers, event loop."""
    configure_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main())


if __name__ == "__main__":
    run_reconciliation_worker()
