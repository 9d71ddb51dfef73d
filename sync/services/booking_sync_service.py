"""
Booking Sync Service - mirrors local appointments to Square bookings.

Architecture:
- The local write happens FIRST and is the source of truth
- Mirroring to Square happens after it and never raises: every outcome is a
  SyncResult/CancelResult, so a Square outage never fails a booking
- Square ids are stored back on the local records when calls succeed
- Every failure writes a SyncAttemptRecord for after-the-fact diagnosis

Square bookings cannot be updated in place, so a modified appointment is
mirrored by cancelling the old booking and creating a replacement.

Usage:
    service = BookingSyncService(client, store, rate_limiter)

    # After the appointment is committed
    result = await service.on_appointment_created(appointment)
    if result.error:
        ...  # already logged and audited
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import UUID

from database.models import Appointment, AppointmentStatus, Customer, SyncAction, SyncOutcome
from database.store import LocalStore
from shared.config import get_settings
from shared.rate_limiter import RateLimitBucket, RateLimiter
from shared.resilient_api import call_with_retry
from shared.square_client import SquareClient, generate_idempotency_key
from shared.square_errors import (
    RateLimitExceededError,
    SquareConfigurationError,
    SyncValidationError,
    extract_error_message,
    is_not_found,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DURATION_MINUTES = 60

CANCELLED_BOOKING_STATUSES = {
    "CANCELLED_BY_CUSTOMER",
    "CANCELLED_BY_SELLER",
    "DECLINED",
}


@dataclass
class SyncResult:
    """Outcome of an outbound sync. `skipped` is an explicit no-op, not an error."""

    external_id: str | None = None
    skipped: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CancelResult:
    """Outcome of a booking cancel. `not_found` counts as success."""

    success: bool
    not_found: bool = False
    already_cancelled: bool = False
    error: str | None = None


def split_name(name: str | None) -> tuple[str, str]:
    """First token is the given name, the remainder the family name."""
    tokens = (name or "").split()
    if not tokens:
        return "", ""
    return tokens[0], " ".join(tokens[1:])


def build_booking_note(appointment: Appointment) -> str:
    appointment_type = appointment.appointment_type or "Appointment"
    if appointment.notes:
        return f"{appointment_type} - {appointment.notes}"
    return appointment_type


class BookingSyncService:
    """
    Outbound mirroring of appointments and customers to Square.

    Every Square call consumes one slot of the provider-api bucket. A denied
    call fails the operation with a "try later" error instead of reaching Square.
    """

    def __init__(
        self,
        client: SquareClient,
        store: LocalStore,
        rate_limiter: RateLimiter | None = None,
        max_retries: int | None = None,
        retry_initial_delay: float = 1.0,
    ):
        self.client = client
        self.store = store
        self.rate_limiter = rate_limiter
        self.max_retries = (
            max_retries if max_retries is not None else get_settings().SQUARE_MAX_RETRIES
        )
        self.retry_initial_delay = retry_initial_delay

    async def _call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if self.rate_limiter is not None and not await self.rate_limiter.allow(
            RateLimitBucket.PROVIDER_API
        ):
            raise RateLimitExceededError(RateLimitBucket.PROVIDER_API)
        return await call_with_retry(
            func,
            *args,
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            **kwargs,
        )

    async def _record_failure(
        self,
        action: str,
        target_id: UUID | str | None,
        error: Any,
        extra: dict[str, Any] | None = None,
    ) -> str:
        """Log and audit a failure. Returns the extracted message."""
        message, details = extract_error_message(error)
        severity = (
            "warning" if isinstance(error, (SyncValidationError, RateLimitExceededError)) else "error"
        )

        logger.error(
            f"Square {action} failed for {target_id}: {message}",
            extra={"appointment_id": target_id},
        )

        try:
            await self.store.add_sync_attempt(
                action=action,
                outcome=SyncOutcome.FAILURE,
                target_entity_id=str(target_id) if target_id is not None else None,
                error_detail=message,
                details={
                    "error": message,
                    "error_details": details,
                    "severity": severity,
                    **(extra or {}),
                },
            )
        except Exception as audit_error:
            logger.error(f"Failed to write sync audit record for {action}: {audit_error}")

        return message

    # =========================================================================
    # Customers
    # =========================================================================

    async def ensure_external_customer(self, customer: Customer) -> str:
        """
        Return the customer's Square id, creating the Square customer if needed.

        The new id is persisted before returning so a later booking failure
        does not cause the customer to be created again on retry.

        Raises:
            SyncValidationError: Customer has no email
        """
        if customer.external_customer_id:
            return customer.external_customer_id

        if not customer.email:
            raise SyncValidationError(
                f"Customer {customer.id} has no email; Square customer requires one"
            )

        given_name, family_name = split_name(customer.name)
        square_customer = await self._call(
            self.client.create_customer,
            idempotency_key=generate_idempotency_key(),
            given_name=given_name,
            family_name=family_name,
            email=customer.email,
            phone=customer.phone,
            reference_id=str(customer.id),
        )

        external_id = square_customer["id"]
        await self.store.set_customer_external_id(customer.id, external_id)
        customer.external_customer_id = external_id

        logger.info(f"Created Square customer {external_id} for customer {customer.id}")
        return external_id

    async def _create_booking(self, appointment: Appointment, external_customer_id: str) -> str:
        if not appointment.artist_id:
            raise SyncValidationError(
                f"Appointment {appointment.id} has no artist (Square team member)"
            )

        booking = await self._call(
            self.client.create_booking,
            idempotency_key=generate_idempotency_key(),
            customer_id=external_customer_id,
            start_at=appointment.start_time,
            duration_minutes=appointment.duration_minutes or DEFAULT_DURATION_MINUTES,
            team_member_id=appointment.artist_id,
            seller_note=build_booking_note(appointment),
        )
        return booking["id"]

    async def _resolve_customer(self, appointment: Appointment) -> str:
        if not self.client.is_configured:
            raise SquareConfigurationError("Square is not configured")

        customer = await self.store.get_customer(appointment.customer_id)
        if customer is None:
            raise SyncValidationError(f"Customer {appointment.customer_id} not found")

        return await self.ensure_external_customer(customer)

    # =========================================================================
    # Bookings
    # =========================================================================

    async def sync_appointment_outbound(self, appointment: Appointment) -> SyncResult:
        """
        Create the Square booking for a local appointment.

        Anonymous appointments are skipped. Appointments already linked to a
        Square booking are left alone so a booking is never created twice.
        """
        if appointment.customer_id is None:
            logger.info(f"Skipping Square sync for anonymous appointment {appointment.id}")
            return SyncResult(skipped=True)

        if appointment.external_booking_id:
            logger.debug(
                f"Appointment {appointment.id} already linked to "
                f"{appointment.external_booking_id}"
            )
            return SyncResult(external_id=appointment.external_booking_id)

        try:
            external_customer_id = await self._resolve_customer(appointment)
            booking_id = await self._create_booking(appointment, external_customer_id)
            await self.store.set_appointment_external_booking_id(appointment.id, booking_id)
            appointment.external_booking_id = booking_id
        except Exception as e:
            message = await self._record_failure(SyncAction.SYNC_OUTBOUND, appointment.id, e)
            return SyncResult(error=message)

        logger.info(
            f"Appointment {appointment.id} mirrored to Square booking {booking_id}",
            extra={"appointment_id": appointment.id, "external_booking_id": booking_id},
        )
        return SyncResult(external_id=booking_id)

    async def update_external_booking(self, appointment: Appointment) -> SyncResult:
        """
        Mirror a modified appointment by cancel + recreate.

        A failed cancel (other than not-found) aborts before a duplicate is
        created. If the replacement cannot be created after the old booking
        is gone, the appointment is unlinked so the reconciliation recovery
        pass pushes it again.
        """
        if appointment.customer_id is None:
            return SyncResult(skipped=True)

        if not appointment.external_booking_id:
            return await self.sync_appointment_outbound(appointment)

        old_booking_id = appointment.external_booking_id
        cancel = await self.cancel_external_booking(old_booking_id)
        if not cancel.success:
            message = await self._record_failure(
                SyncAction.UPDATE_BOOKING,
                appointment.id,
                {"message": f"Cancel of {old_booking_id} failed, replacement not created: {cancel.error}"},
                extra={"external_booking_id": old_booking_id},
            )
            return SyncResult(error=message)

        try:
            external_customer_id = await self._resolve_customer(appointment)
            booking_id = await self._create_booking(appointment, external_customer_id)
        except Exception as e:
            try:
                await self.store.set_appointment_external_booking_id(appointment.id, None)
                appointment.external_booking_id = None
            except Exception as unlink_error:
                logger.error(f"Failed to unlink appointment {appointment.id}: {unlink_error}")
            message = await self._record_failure(
                SyncAction.UPDATE_BOOKING,
                appointment.id,
                e,
                extra={"replacement_failed": True, "cancelled_booking_id": old_booking_id},
            )
            return SyncResult(error=message)

        try:
            await self.store.set_appointment_external_booking_id(appointment.id, booking_id)
            appointment.external_booking_id = booking_id
        except Exception as e:
            message = await self._record_failure(
                SyncAction.UPDATE_BOOKING, appointment.id, e, extra={"new_booking_id": booking_id}
            )
            return SyncResult(error=message)

        logger.info(
            f"Appointment {appointment.id} re-mirrored: {old_booking_id} -> {booking_id}",
            extra={"appointment_id": appointment.id, "external_booking_id": booking_id},
        )
        return SyncResult(external_id=booking_id)

    async def cancel_external_booking(self, external_booking_id: str) -> CancelResult:
        """
        Cancel a Square booking using its current version.

        Not-found and already-cancelled bookings are successful no-ops.
        """
        try:
            booking = await self._call(self.client.get_booking, external_booking_id)
        except Exception as e:
            if is_not_found(e):
                logger.warning(f"Square booking {external_booking_id} not found, nothing to cancel")
                return CancelResult(success=True, not_found=True)
            message = await self._record_failure(SyncAction.CANCEL_BOOKING, external_booking_id, e)
            return CancelResult(success=False, error=message)

        if booking.get("status") in CANCELLED_BOOKING_STATUSES:
            logger.info(f"Square booking {external_booking_id} already cancelled")
            return CancelResult(success=True, already_cancelled=True)

        try:
            await self._call(
                self.client.cancel_booking,
                external_booking_id,
                version=booking.get("version"),
                idempotency_key=generate_idempotency_key(),
            )
        except Exception as e:
            if is_not_found(e):
                logger.warning(f"Square booking {external_booking_id} disappeared before cancel")
                return CancelResult(success=True, not_found=True)
            message = await self._record_failure(SyncAction.CANCEL_BOOKING, external_booking_id, e)
            return CancelResult(success=False, error=message)

        logger.info(
            f"Cancelled Square booking {external_booking_id}",
            extra={"external_booking_id": external_booking_id},
        )
        return CancelResult(success=True)

    # =========================================================================
    # Hooks for the local write path
    # =========================================================================

    async def on_appointment_created(self, appointment: Appointment) -> SyncResult:
        return await self.sync_appointment_outbound(appointment)

    async def on_appointment_updated(self, appointment: Appointment) -> SyncResult:
        if appointment.status == AppointmentStatus.CANCELLED:
            cancel = await self.on_appointment_cancelled(appointment)
            return SyncResult(external_id=appointment.external_booking_id, error=cancel.error)
        if appointment.status == AppointmentStatus.COMPLETED:
            # Square bookings have no completed state; the finished booking stays as is
            logger.debug(f"Appointment {appointment.id} completed, Square booking left unchanged")
            return SyncResult(external_id=appointment.external_booking_id, skipped=True)
        return await self.update_external_booking(appointment)

    async def on_appointment_cancelled(self, appointment: Appointment) -> CancelResult:
        if not appointment.external_booking_id:
            return CancelResult(success=True, not_found=True)
        return await self.cancel_external_booking(appointment.external_booking_id)
