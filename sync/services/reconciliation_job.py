"""
Reconciliation Job - corrects drift between Square bookings and local appointments.

Each run:
1. Checks Square credentials (fails without network calls when missing)
2. Clamps the window to Square's 31-day booking search limit
3. Recovers appointments that were never mirrored (no external_booking_id)
4. Pulls Square bookings for the window and creates/updates local records
5. Writes reconcile_started and reconcile_completed/reconcile_failed audit records

Booking Classification:
    - Booking WITH a linked appointment (external_booking_id) = update if fields differ
    - Booking WITHOUT a linked appointment, active = create shadow appointment
    - Booking WITHOUT a linked appointment, cancelled = skip

At most one run per job instance is active at a time; a concurrent run()
returns an "already running" result immediately.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum as PyEnum
from typing import Any

from database.models import (
    ACTIVE_APPOINTMENT_STATUSES,
    AppointmentStatus,
    SyncAction,
    SyncOutcome,
)
from database.store import LocalStore
from shared.config import get_settings
from shared.rate_limiter import RateLimitBucket, RateLimiter
from shared.resilient_api import call_with_retry
from shared.square_client import MAX_BOOKING_WINDOW_DAYS, SquareClient, parse_rfc3339
from shared.square_errors import SyncValidationError, extract_error_message
from sync.services.booking_sync_service import DEFAULT_DURATION_MINUTES, BookingSyncService

logger = logging.getLogger(__name__)

CLAMPED_WINDOW_DAYS = 30

SQUARE_BOOKING_STATUS_MAP = {
    "PENDING": AppointmentStatus.SCHEDULED,
    "ACCEPTED": AppointmentStatus.CONFIRMED,
    "CANCELLED_BY_CUSTOMER": AppointmentStatus.CANCELLED,
    "CANCELLED_BY_SELLER": AppointmentStatus.CANCELLED,
    "DECLINED": AppointmentStatus.CANCELLED,
    "NO_SHOW": AppointmentStatus.CANCELLED,
}

# Fields compared between a Square booking and its local appointment
RECONCILED_FIELDS = ("start_time", "duration_minutes", "status", "artist_id")


class JobState(PyEnum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ReconciliationResult:
    success: bool
    synced: int = 0
    created: int = 0
    updated: int = 0
    recovered: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    duration_ms: int = 0
    window_start: datetime | None = None
    window_end: datetime | None = None
    dry_run: bool = False
    already_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("window_start", "window_end"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def map_booking_status(square_status: str | None) -> AppointmentStatus:
    return SQUARE_BOOKING_STATUS_MAP.get(square_status or "", AppointmentStatus.SCHEDULED)


def booking_to_appointment_fields(booking: dict[str, Any]) -> dict[str, Any]:
    """Local appointment fields implied by a Square booking."""
    segments = booking.get("appointment_segments") or []
    duration = sum(s.get("duration_minutes") or 0 for s in segments)

    return {
        "start_time": parse_rfc3339(booking["start_at"]),
        "duration_minutes": duration or DEFAULT_DURATION_MINUTES,
        "status": map_booking_status(booking.get("status")),
        "artist_id": segments[0].get("team_member_id") if segments else None,
    }


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class ReconciliationJob:
    """
    Single-flight reconciliation of Square bookings into local appointments.

    Args:
        client: Square client
        store: Local store
        sync_service: Used by the recovery pass; recovery is skipped without it
        rate_limiter: Each bookings page consumes one provider-api slot; a
            denied page stops paging and is reported as an error
        clock: Returns the current aware datetime (tests pass a fixed clock)
    """

    def __init__(
        self,
        client: SquareClient,
        store: LocalStore,
        sync_service: BookingSyncService | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] | None = None,
        lookback_days: int | None = None,
        lookahead_days: int | None = None,
        max_retries: int | None = None,
        retry_initial_delay: float = 1.0,
    ):
        settings = get_settings()
        self.client = client
        self.store = store
        self.sync_service = sync_service
        self.rate_limiter = rate_limiter
        self._clock = clock or (lambda: datetime.now(UTC))
        self.lookback_days = lookback_days if lookback_days is not None else settings.SYNC_LOOKBACK_DAYS
        self.lookahead_days = (
            lookahead_days if lookahead_days is not None else settings.SYNC_LOOKAHEAD_DAYS
        )
        self.max_retries = max_retries if max_retries is not None else settings.SQUARE_MAX_RETRIES
        self.retry_initial_delay = retry_initial_delay

        self._state = JobState.IDLE
        self._state_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._state is JobState.RUNNING

    def resolve_window(
        self, start_date: datetime | None = None, end_date: datetime | None = None
    ) -> tuple[datetime, datetime]:
        """
        Resolve the booking window, clamped to Square's 31-day limit.

        Raises:
            SyncValidationError: end_date before start_date
        """
        now = self._clock()
        if start_date is None and end_date is None:
            start = now - timedelta(days=self.lookback_days)
            end = now + timedelta(days=self.lookahead_days)
        elif start_date is None:
            end = _as_utc(end_date)
            start = end - timedelta(days=CLAMPED_WINDOW_DAYS)
        elif end_date is None:
            start = _as_utc(start_date)
            end = start + timedelta(days=CLAMPED_WINDOW_DAYS)
        else:
            start, end = _as_utc(start_date), _as_utc(end_date)

        if end < start:
            raise SyncValidationError(
                f"end_date {end.isoformat()} is before start_date {start.isoformat()}"
            )

        if end - start > timedelta(days=MAX_BOOKING_WINDOW_DAYS):
            clamped = start + timedelta(days=CLAMPED_WINDOW_DAYS)
            logger.warning(
                f"Reconciliation window {start.date()} -> {end.date()} exceeds "
                f"{MAX_BOOKING_WINDOW_DAYS} days, clamped to {clamped.date()}"
            )
            end = clamped

        return start, end

    async def run(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        dry_run: bool = False,
    ) -> ReconciliationResult:
        """Run one reconciliation pass. Never raises."""
        with self._state_lock:
            if self._state is JobState.RUNNING:
                logger.warning("Reconciliation already running, skipping", extra={"job": "reconcile"})
                return ReconciliationResult(
                    success=False,
                    already_running=True,
                    dry_run=dry_run,
                    errors=[{"booking_id": "job", "error": "Job already running"}],
                )
            self._state = JobState.RUNNING

        try:
            return await self._run(start_date, end_date, dry_run)
        finally:
            with self._state_lock:
                self._state = JobState.IDLE

    async def _run(
        self, start_date: datetime | None, end_date: datetime | None, dry_run: bool
    ) -> ReconciliationResult:
        started = time.monotonic()

        if not self.client.is_configured:
            logger.error("Square not configured, reconciliation skipped")
            return ReconciliationResult(
                success=False,
                dry_run=dry_run,
                errors=[{"booking_id": "config", "error": "Square is not configured"}],
            )

        try:
            window_start, window_end = self.resolve_window(start_date, end_date)
        except SyncValidationError as e:
            return ReconciliationResult(
                success=False, dry_run=dry_run, errors=[{"booking_id": "window", "error": str(e)}]
            )

        result = ReconciliationResult(
            success=True, window_start=window_start, window_end=window_end, dry_run=dry_run
        )
        logger.info(
            f"Starting reconciliation {window_start.isoformat()} -> {window_end.isoformat()} "
            f"(dry_run={dry_run})",
            extra={"job": "reconcile"},
        )
        await self._audit(
            SyncAction.RECONCILE_STARTED,
            SyncOutcome.SUCCESS,
            details={
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "dry_run": dry_run,
            },
        )

        try:
            await self._recover_unlinked(window_start, window_end, result)
            await self._pull_bookings(window_start, window_end, result)
        except Exception as e:
            message, _ = extract_error_message(e)
            logger.exception(f"Reconciliation failed: {message}")
            result.success = False
            result.errors.append({"booking_id": "job", "error": message})
            result.duration_ms = int((time.monotonic() - started) * 1000)
            await self._audit(
                SyncAction.RECONCILE_FAILED,
                SyncOutcome.FAILURE,
                error_detail=message,
                details=result.to_dict(),
            )
            return result

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Completed reconciliation in {result.duration_ms}ms: "
            f"synced={result.synced}, created={result.created}, updated={result.updated}, "
            f"recovered={result.recovered}, errors={len(result.errors)}",
            extra={"job": "reconcile"},
        )
        await self._audit(
            SyncAction.RECONCILE_COMPLETED,
            SyncOutcome.SUCCESS if not result.errors else SyncOutcome.FAILURE,
            error_detail=f"{len(result.errors)} item errors" if result.errors else None,
            details=result.to_dict(),
        )
        return result

    async def _recover_unlinked(
        self, window_start: datetime, window_end: datetime, result: ReconciliationResult
    ) -> None:
        """Push appointments whose initial mirror (or replacement) never succeeded."""
        if self.sync_service is None:
            return

        appointments = await self.store.list_unlinked_appointments(window_start, window_end)
        if appointments:
            logger.info(f"Found {len(appointments)} appointments without a Square booking")

        for appointment in appointments:
            if result.dry_run:
                result.recovered += 1
                continue

            sync = await self.sync_service.sync_appointment_outbound(appointment)
            if sync.error:
                result.errors.append({"booking_id": f"local:{appointment.id}", "error": sync.error})
            elif sync.external_id:
                result.recovered += 1

    async def _pull_bookings(
        self, window_start: datetime, window_end: datetime, result: ReconciliationResult
    ) -> None:
        cursor: str | None = None
        while True:
            if self.rate_limiter is not None and not await self.rate_limiter.allow(
                RateLimitBucket.PROVIDER_API
            ):
                logger.warning(
                    "Provider rate limit reached, stopping booking pull early",
                    extra={"job": "reconcile"},
                )
                result.errors.append(
                    {
                        "booking_id": "rate_limit",
                        "error": "Provider rate limit reached, remaining bookings not pulled; try later",
                    }
                )
                break

            bookings, cursor = await call_with_retry(
                self.client.list_bookings,
                start_at_min=window_start,
                start_at_max=window_end,
                cursor=cursor,
                max_retries=self.max_retries,
                initial_delay=self.retry_initial_delay,
            )

            for booking in bookings:
                booking_id = booking.get("id", "unknown")
                try:
                    action = await self._reconcile_booking(booking, result.dry_run)
                except Exception as e:
                    message, _ = extract_error_message(e)
                    logger.error(
                        f"Failed to reconcile Square booking {booking_id}: {message}",
                        extra={"external_booking_id": booking_id},
                    )
                    result.errors.append({"booking_id": booking_id, "error": message})
                    continue

                result.synced += 1
                if action == "created":
                    result.created += 1
                elif action == "updated":
                    result.updated += 1

            if not cursor:
                break

    async def _reconcile_booking(self, booking: dict[str, Any], dry_run: bool) -> str:
        """Returns "created", "updated", "unchanged" or "skipped"."""
        booking_id = booking["id"]
        fields = booking_to_appointment_fields(booking)

        local = await self.store.find_appointment_by_external_booking_id(booking_id)
        if local is not None:
            if local.status == AppointmentStatus.COMPLETED:
                # Square has no completed state; keep the local terminal status
                fields.pop("status")
            changes = {k: v for k, v in fields.items() if getattr(local, k) != v}
            if not changes:
                return "unchanged"
            if not dry_run:
                await self.store.update_appointment(local.id, **changes)
            logger.info(
                f"Updated appointment {local.id} from Square booking {booking_id}: "
                f"{', '.join(changes)}",
                extra={"appointment_id": local.id, "external_booking_id": booking_id},
            )
            return "updated"

        if fields["status"] not in ACTIVE_APPOINTMENT_STATUSES:
            logger.debug(f"Skipping inactive unlinked Square booking {booking_id}")
            return "skipped"

        customer = None
        if booking.get("customer_id"):
            customer = await self.store.find_customer_by_external_id(booking["customer_id"])

        if not dry_run:
            created = await self.store.create_appointment(
                **fields,
                customer_id=customer.id if customer else None,
                external_booking_id=booking_id,
                appointment_type="Square booking",
                notes=booking.get("seller_note") or booking.get("customer_note"),
                created_by_sync=True,
            )
            logger.info(
                f"Created shadow appointment {created.id} for Square booking {booking_id}",
                extra={"appointment_id": created.id, "external_booking_id": booking_id},
            )
        return "created"

    async def _audit(
        self,
        action: str,
        outcome: SyncOutcome,
        error_detail: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self.store.add_sync_attempt(
                action=action,
                outcome=outcome,
                target_entity_id="reconciliation",
                error_detail=error_detail,
                details=details,
            )
        except Exception as e:
            logger.error(f"Failed to write {action} audit record: {e}")

    async def get_last_run_status(self) -> dict[str, Any]:
        """
        Last run as recorded in the audit trail.

        in_progress is True when the latest start has no later completion,
        which also detects runs in other processes.
        """
        started = await self.store.latest_sync_attempt([SyncAction.RECONCILE_STARTED])
        finished = await self.store.latest_sync_attempt(
            [SyncAction.RECONCILE_COMPLETED, SyncAction.RECONCILE_FAILED]
        )

        in_progress = started is not None and (
            finished is None or started.created_at > finished.created_at
        )

        return {
            "last_started_at": started.created_at.isoformat() if started else None,
            "last_run": finished.created_at.isoformat() if finished else None,
            "success": (
                finished.action == SyncAction.RECONCILE_COMPLETED
                and finished.outcome == SyncOutcome.SUCCESS
            ) if finished else None,
            "results": finished.details if finished else None,
            "in_progress": in_progress,
            "is_running": self.is_running,
        }
