"""
Reconciliation API Endpoints

Provides REST endpoints for:
- POST /api/admin/reconciliation/run - Start a reconciliation run now
- GET /api/admin/reconciliation/status - Configuration, running state and last run
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from api.models.reconciliation import (
    ReconciliationRunRequest,
    ReconciliationRunResponse,
    ReconciliationStatusResponse,
)
from shared.rate_limiter import RateLimitBucket, RateLimiter
from sync.services.components import get_rate_limiter, get_reconciliation_job
from sync.services.reconciliation_job import ReconciliationJob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/reconciliation", tags=["reconciliation"])


@router.post(
    "/run",
    response_model=ReconciliationRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_reconciliation(
    background_tasks: BackgroundTasks,
    request: ReconciliationRunRequest | None = None,
    job: ReconciliationJob = Depends(get_reconciliation_job),
) -> ReconciliationRunResponse:
    """
    Start a reconciliation run in the background.

    Raises:
        HTTPException: 503 if Square is not configured, 409 if a run is active
    """
    request = request or ReconciliationRunRequest()

    if not job.client.is_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Square is not configured",
        )

    if job.is_running:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Reconciliation already running",
        )

    background_tasks.add_task(
        job.run,
        start_date=request.start_date,
        end_date=request.end_date,
        dry_run=request.dry_run,
    )

    logger.info(
        f"Manual reconciliation started: start={request.start_date}, "
        f"end={request.end_date}, dry_run={request.dry_run}",
        extra={"job": "reconcile"},
    )
    return ReconciliationRunResponse(
        status="started",
        dry_run=request.dry_run,
        start_date=request.start_date,
        end_date=request.end_date,
    )


@router.get("/status", response_model=ReconciliationStatusResponse)
async def get_reconciliation_status(
    job: ReconciliationJob = Depends(get_reconciliation_job),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> ReconciliationStatusResponse:
    """Report whether Square is configured, whether a run is active, and the last run."""
    last_run = await job.get_last_run_status()

    rate_limits = {
        bucket: await rate_limiter.status(bucket)
        for bucket in (
            RateLimitBucket.PROVIDER_API,
            RateLimitBucket.PAYMENT_PROCESSING,
            RateLimitBucket.INBOUND_EVENTS,
        )
    }

    return ReconciliationStatusResponse(
        configured=job.client.is_configured,
        is_running=job.is_running,
        last_run=last_run,
        rate_limits=rate_limits,
    )
