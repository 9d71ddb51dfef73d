"""
Local store used by the sync engine.

LocalStore is the narrow set of find/create/update calls the engine needs;
SqlAlchemyStore implements it with one short session per call so that a
failing Square call never holds a database transaction open.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select

from database.models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    Customer,
    Invoice,
    Payment,
    SyncAttemptRecord,
    SyncOutcome,
)

logger = logging.getLogger(__name__)


def _jsonable(details: dict[str, Any] | None) -> dict[str, Any] | None:
    """Coerce audit details (datetimes, UUIDs, Decimals) into JSON-safe values."""
    if details is None:
        return None
    return json.loads(json.dumps(details, default=str))


class LocalStore(ABC):
    """Local system of record as seen by the sync engine."""

    # Customers
    @abstractmethod
    async def get_customer(self, customer_id: UUID) -> Customer | None: ...

    @abstractmethod
    async def find_customer_by_external_id(self, external_customer_id: str) -> Customer | None: ...

    @abstractmethod
    async def set_customer_external_id(self, customer_id: UUID, external_customer_id: str) -> None: ...

    # Appointments
    @abstractmethod
    async def get_appointment(self, appointment_id: UUID) -> Appointment | None: ...

    @abstractmethod
    async def find_appointment_by_external_booking_id(
        self, external_booking_id: str
    ) -> Appointment | None: ...

    @abstractmethod
    async def create_appointment(self, **fields: Any) -> Appointment: ...

    @abstractmethod
    async def update_appointment(self, appointment_id: UUID, **fields: Any) -> Appointment | None: ...

    @abstractmethod
    async def list_unlinked_appointments(
        self, start: datetime, end: datetime
    ) -> list[Appointment]:
        """Active appointments with a customer but no Square booking, starting in [start, end]."""

    async def set_appointment_external_booking_id(
        self, appointment_id: UUID, external_booking_id: str | None
    ) -> None:
        """Idempotent: writing the same id twice is harmless."""
        await self.update_appointment(appointment_id, external_booking_id=external_booking_id)

    # Payments
    @abstractmethod
    async def find_payment(
        self,
        external_payment_id: str | None = None,
        reference_id: str | None = None,
    ) -> Payment | None:
        """Look up by Square payment id first, then by reference id."""

    @abstractmethod
    async def create_payment(self, **fields: Any) -> Payment: ...

    @abstractmethod
    async def update_payment(self, payment_id: UUID, **fields: Any) -> Payment | None: ...

    @abstractmethod
    async def existing_external_payment_ids(self, external_ids: Iterable[str]) -> set[str]: ...

    # Invoices
    @abstractmethod
    async def find_invoice_by_external_id(self, external_invoice_id: str) -> Invoice | None: ...

    @abstractmethod
    async def update_invoice(self, invoice_id: UUID, **fields: Any) -> Invoice | None: ...

    # Audit trail
    @abstractmethod
    async def add_sync_attempt(
        self,
        action: str,
        outcome: SyncOutcome,
        target_entity_id: str | None = None,
        error_detail: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SyncAttemptRecord: ...

    @abstractmethod
    async def latest_sync_attempt(self, actions: Sequence[str]) -> SyncAttemptRecord | None: ...


class SqlAlchemyStore(LocalStore):
    """LocalStore backed by PostgreSQL through SQLAlchemy async sessions."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from database.connection import get_async_session

            session_factory = get_async_session
        self._session = session_factory

    async def _get(self, model, entity_id: UUID):
        async with self._session() as session:
            return await session.get(model, entity_id)

    async def _first(self, query):
        async with self._session() as session:
            result = await session.execute(query.limit(1))
            return result.scalars().first()

    async def _create(self, model, fields: dict[str, Any]):
        async with self._session() as session:
            instance = model(**fields)
            session.add(instance)
            await session.commit()
            await session.refresh(instance)
            return instance

    async def _update(self, model, entity_id: UUID, fields: dict[str, Any]):
        async with self._session() as session:
            instance = await session.get(model, entity_id)
            if instance is None:
                logger.warning(f"{model.__name__} {entity_id} not found for update")
                return None
            for key, value in fields.items():
                setattr(instance, key, value)
            await session.commit()
            await session.refresh(instance)
            return instance

    async def get_customer(self, customer_id: UUID) -> Customer | None:
        return await self._get(Customer, customer_id)

    async def find_customer_by_external_id(self, external_customer_id: str) -> Customer | None:
        return await self._first(
            select(Customer).where(Customer.external_customer_id == external_customer_id)
        )

    async def set_customer_external_id(self, customer_id: UUID, external_customer_id: str) -> None:
        await self._update(Customer, customer_id, {"external_customer_id": external_customer_id})

    async def get_appointment(self, appointment_id: UUID) -> Appointment | None:
        return await self._get(Appointment, appointment_id)

    async def find_appointment_by_external_booking_id(
        self, external_booking_id: str
    ) -> Appointment | None:
        return await self._first(
            select(Appointment).where(Appointment.external_booking_id == external_booking_id)
        )

    async def create_appointment(self, **fields: Any) -> Appointment:
        return await self._create(Appointment, fields)

    async def update_appointment(self, appointment_id: UUID, **fields: Any) -> Appointment | None:
        return await self._update(Appointment, appointment_id, fields)

    async def list_unlinked_appointments(
        self, start: datetime, end: datetime
    ) -> list[Appointment]:
        query = select(Appointment).where(
            and_(
                Appointment.external_booking_id.is_(None),
                Appointment.customer_id.is_not(None),
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                Appointment.start_time >= start,
                Appointment.start_time <= end,
            )
        ).order_by(Appointment.start_time)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_payment(
        self,
        external_payment_id: str | None = None,
        reference_id: str | None = None,
    ) -> Payment | None:
        if external_payment_id:
            payment = await self._first(
                select(Payment).where(Payment.external_payment_id == external_payment_id)
            )
            if payment is not None:
                return payment
        if reference_id:
            return await self._first(
                select(Payment)
                .where(Payment.reference_id == reference_id)
                .order_by(Payment.created_at.desc())
            )
        return None

    async def create_payment(self, **fields: Any) -> Payment:
        if "raw_provider_payload" in fields:
            fields["raw_provider_payload"] = _jsonable(fields["raw_provider_payload"])
        return await self._create(Payment, fields)

    async def update_payment(self, payment_id: UUID, **fields: Any) -> Payment | None:
        if "raw_provider_payload" in fields:
            fields["raw_provider_payload"] = _jsonable(fields["raw_provider_payload"])
        return await self._update(Payment, payment_id, fields)

    async def existing_external_payment_ids(self, external_ids: Iterable[str]) -> set[str]:
        ids = list(external_ids)
        if not ids:
            return set()
        async with self._session() as session:
            result = await session.execute(
                select(Payment.external_payment_id).where(Payment.external_payment_id.in_(ids))
            )
            return {row for row in result.scalars().all() if row}

    async def find_invoice_by_external_id(self, external_invoice_id: str) -> Invoice | None:
        return await self._first(
            select(Invoice).where(Invoice.external_invoice_id == external_invoice_id)
        )

    async def update_invoice(self, invoice_id: UUID, **fields: Any) -> Invoice | None:
        return await self._update(Invoice, invoice_id, fields)

    async def add_sync_attempt(
        self,
        action: str,
        outcome: SyncOutcome,
        target_entity_id: str | None = None,
        error_detail: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SyncAttemptRecord:
        return await self._create(
            SyncAttemptRecord,
            {
                "action": action,
                "outcome": outcome,
                "target_entity_id": target_entity_id,
                "error_detail": error_detail,
                "details": _jsonable(details),
            },
        )

    async def latest_sync_attempt(self, actions: Sequence[str]) -> SyncAttemptRecord | None:
        return await self._first(
            select(SyncAttemptRecord)
            .where(SyncAttemptRecord.action.in_(list(actions)))
            .order_by(SyncAttemptRecord.created_at.desc())
        )
