"""
Startup configuration validation module.

Catches misconfigurations at startup (fail-fast) instead of mid-batch.

Usage:
    from shared.startup_validator import validate_startup_config, StartupValidationError

    async def main():
        try:
            await validate_startup_config(require_square=True)
        except StartupValidationError as e:
            logger.critical(f"Startup blocked: {e}")
            sys.exit(1)
"""

import logging

from shared.config import get_settings

logger = logging.getLogger(__name__)


class StartupValidationError(Exception):
    """Raised when critical startup validation fails."""

    pass


async def validate_startup_config(require_square: bool = True) -> dict[str, bool]:
    """
    Validate all critical configuration at startup.

    Performs tiered validation:
    - TIER 1 (CRITICAL): Block startup if any fail
    - TIER 2 (IMPORTANT): Warn but allow startup

    Args:
        require_square: If True, Square credentials are CRITICAL. The API sets
                        this to False: it still accepts webhooks and reports
                        status while the sync engine checks credentials at
                        job entry.

    Returns:
        dict of {check_name: passed} for all validations

    Raises:
        StartupValidationError: If any CRITICAL check fails
    """
    settings = get_settings()
    results: dict[str, bool] = {}
    critical_failures: list[str] = []

    # =========================================================================
    # TIER 1: CRITICAL (block startup if any fail)
    # =========================================================================

    # 1. Database URL format
    if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
        critical_failures.append(
            "DATABASE_URL must use the asyncpg driver: postgresql+asyncpg://..."
        )
        results["database_url_format"] = False
    else:
        results["database_url_format"] = True

    # 2. Square credentials
    if not settings.square_configured:
        error = "SQUARE_ACCESS_TOKEN and SQUARE_LOCATION_ID must both be set"
        if require_square:
            critical_failures.append(error)
        else:
            logger.warning(f"  [WARN] {error} (Square sync disabled for this service)")
        results["square_credentials"] = False
    else:
        results["square_credentials"] = True
        logger.info(f"  [OK] Square configured ({settings.SQUARE_ENVIRONMENT})")

    if settings.SQUARE_ENVIRONMENT not in ("sandbox", "production"):
        critical_failures.append(
            f"SQUARE_ENVIRONMENT must be sandbox or production, got {settings.SQUARE_ENVIRONMENT!r}"
        )
        results["square_environment"] = False
    else:
        results["square_environment"] = True

    # 3. Reconciliation window fits Square's 31-day booking search limit
    window_days = settings.SYNC_LOOKBACK_DAYS + settings.SYNC_LOOKAHEAD_DAYS
    if window_days > 31:
        critical_failures.append(
            f"SYNC_LOOKBACK_DAYS + SYNC_LOOKAHEAD_DAYS = {window_days} exceeds 31 days"
        )
        results["sync_window"] = False
    else:
        results["sync_window"] = True

    # =========================================================================
    # TIER 2: IMPORTANT (warn but allow startup)
    # =========================================================================

    # 4. Webhook signature key
    if not settings.SQUARE_WEBHOOK_SIGNATURE_KEY:
        logger.warning(
            "SQUARE_WEBHOOK_SIGNATURE_KEY not set - Square webhooks will be rejected"
        )
        results["webhook_signature_key"] = False
    else:
        results["webhook_signature_key"] = True

    # 5. Redis reachability when a Redis backend is selected
    if "redis" in (settings.RATE_LIMIT_BACKEND, settings.CACHE_BACKEND):
        try:
            from shared.redis_client import get_redis_client

            await get_redis_client().ping()
            results["redis"] = True
            logger.info("  [OK] Redis reachable")
        except Exception as e:
            logger.warning(f"Redis not reachable, rate limits/cache degraded: {e}")
            results["redis"] = False

    # =========================================================================
    # Summary and result
    # =========================================================================

    passed = sum(1 for v in results.values() if v)
    total = len(results)
    logger.info(f"Startup validation: {passed}/{total} checks passed")

    if critical_failures:
        logger.critical("=" * 60)
        logger.critical("STARTUP BLOCKED - Critical configuration errors:")
        for i, failure in enumerate(critical_failures, 1):
            logger.critical(f"  {i}. {failure}")
        logger.critical("=" * 60)
        raise StartupValidationError(
            f"Critical startup validation failed ({len(critical_failures)} errors): "
            f"{'; '.join(critical_failures)}"
        )

    return results
