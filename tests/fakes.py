"""In-memory test doubles for the local store and clocks."""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from database.models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    Customer,
    Invoice,
    Payment,
    SyncAttemptRecord,
    SyncOutcome,
)
from database.store import LocalStore


class ManualClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryStore(LocalStore):
    """
    LocalStore over plain dicts.

    Server-side defaults don't run outside the database, so ids and
    strictly increasing created_at values are assigned here.
    """

    def __init__(self):
        self.customers: dict[UUID, Customer] = {}
        self.appointments: dict[UUID, Appointment] = {}
        self.payments: dict[UUID, Payment] = {}
        self.invoices: dict[UUID, Invoice] = {}
        self.sync_attempts: list[SyncAttemptRecord] = []
        self._tick = datetime(2025, 1, 1, tzinfo=UTC)

    def _timestamp(self) -> datetime:
        self._tick += timedelta(seconds=1)
        return self._tick

    # Seeding helpers

    def add_customer(self, **fields: Any) -> Customer:
        fields.setdefault("id", uuid4())
        fields.setdefault("name", "Jane Doe")
        customer = Customer(**fields)
        customer.created_at = customer.updated_at = self._timestamp()
        self.customers[customer.id] = customer
        return customer

    def add_appointment(self, **fields: Any) -> Appointment:
        fields.setdefault("id", uuid4())
        fields.setdefault("duration_minutes", 60)
        fields.setdefault("status", AppointmentStatus.SCHEDULED)
        fields.setdefault("appointment_type", "Appointment")
        fields.setdefault("created_by_sync", False)
        appointment = Appointment(**fields)
        appointment.created_at = appointment.updated_at = self._timestamp()
        self.appointments[appointment.id] = appointment
        return appointment

    def add_payment(self, **fields: Any) -> Payment:
        fields.setdefault("id", uuid4())
        fields.setdefault("method", "square")
        payment = Payment(**fields)
        payment.created_at = payment.updated_at = self._timestamp()
        self.payments[payment.id] = payment
        return payment

    def add_invoice(self, **fields: Any) -> Invoice:
        fields.setdefault("id", uuid4())
        fields.setdefault("status", "sent")
        invoice = Invoice(**fields)
        invoice.created_at = self._timestamp()
        self.invoices[invoice.id] = invoice
        return invoice

    def attempts(self, action: str) -> list[SyncAttemptRecord]:
        return [a for a in self.sync_attempts if a.action == action]

    # LocalStore

    async def get_customer(self, customer_id: UUID) -> Customer | None:
        return self.customers.get(customer_id)

    async def find_customer_by_external_id(self, external_customer_id: str) -> Customer | None:
        return next(
            (c for c in self.customers.values() if c.external_customer_id == external_customer_id),
            None,
        )

    async def set_customer_external_id(self, customer_id: UUID, external_customer_id: str) -> None:
        self.customers[customer_id].external_customer_id = external_customer_id

    async def get_appointment(self, appointment_id: UUID) -> Appointment | None:
        return self.appointments.get(appointment_id)

    async def find_appointment_by_external_booking_id(
        self, external_booking_id: str
    ) -> Appointment | None:
        return next(
            (
                a
                for a in self.appointments.values()
                if a.external_booking_id == external_booking_id
            ),
            None,
        )

    async def create_appointment(self, **fields: Any) -> Appointment:
        booking_id = fields.get("external_booking_id")
        if booking_id and await self.find_appointment_by_external_booking_id(booking_id):
            raise ValueError(f"duplicate external_booking_id {booking_id}")
        return self.add_appointment(**fields)

    async def update_appointment(self, appointment_id: UUID, **fields: Any) -> Appointment | None:
        appointment = self.appointments.get(appointment_id)
        if appointment is None:
            return None
        for key, value in fields.items():
            setattr(appointment, key, value)
        appointment.updated_at = self._timestamp()
        return appointment

    async def list_unlinked_appointments(
        self, start: datetime, end: datetime
    ) -> list[Appointment]:
        return sorted(
            (
                a
                for a in self.appointments.values()
                if a.external_booking_id is None
                and a.customer_id is not None
                and a.status in ACTIVE_APPOINTMENT_STATUSES
                and start <= a.start_time <= end
            ),
            key=lambda a: a.start_time,
        )

    async def find_payment(
        self,
        external_payment_id: str | None = None,
        reference_id: str | None = None,
    ) -> Payment | None:
        if external_payment_id:
            for payment in self.payments.values():
                if payment.external_payment_id == external_payment_id:
                    return payment
        if reference_id:
            matches = [p for p in self.payments.values() if p.reference_id == reference_id]
            if matches:
                return max(matches, key=lambda p: p.created_at)
        return None

    async def create_payment(self, **fields: Any) -> Payment:
        return self.add_payment(**fields)

    async def update_payment(self, payment_id: UUID, **fields: Any) -> Payment | None:
        payment = self.payments.get(payment_id)
        if payment is None:
            return None
        for key, value in fields.items():
            setattr(payment, key, value)
        payment.updated_at = self._timestamp()
        return payment

    async def existing_external_payment_ids(self, external_ids: Iterable[str]) -> set[str]:
        wanted = set(external_ids)
        return {
            p.external_payment_id
            for p in self.payments.values()
            if p.external_payment_id in wanted
        }

    async def find_invoice_by_external_id(self, external_invoice_id: str) -> Invoice | None:
        return next(
            (i for i in self.invoices.values() if i.external_invoice_id == external_invoice_id),
            None,
        )

    async def update_invoice(self, invoice_id: UUID, **fields: Any) -> Invoice | None:
        invoice = self.invoices.get(invoice_id)
        if invoice is None:
            return None
        for key, value in fields.items():
            setattr(invoice, key, value)
        return invoice

    async def add_sync_attempt(
        self,
        action: str,
        outcome: SyncOutcome,
        target_entity_id: str | None = None,
        error_detail: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SyncAttemptRecord:
        record = SyncAttemptRecord(
            id=uuid4(),
            action=action,
            outcome=outcome,
            target_entity_id=target_entity_id,
            error_detail=error_detail,
            details=details,
        )
        record.created_at = self._timestamp()
        self.sync_attempts.append(record)
        return record

    async def latest_sync_attempt(self, actions: Sequence[str]) -> SyncAttemptRecord | None:
        matches = [a for a in self.sync_attempts if a.action in actions]
        return max(matches, key=lambda a: a.created_at) if matches else None
