"""
SQLAlchemy ORM models for the local system of record.

This module defines the tables the Square sync engine reads and writes:
- customers: contact info plus the linked Square customer id
- appointments: bookings, linked to at most one Square booking
- payments: local payment records with the raw Square payload
- invoices: local invoices linked to Square invoices
- sync_attempts: append-only audit trail of sync outcomes

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB for opaque provider payloads and audit details
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    TIMESTAMP,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class AppointmentStatus(PyEnum):
    """Appointment lifecycle status."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    def __str__(self):
        return self.value


ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


class SyncOutcome(str, PyEnum):
    """Outcome of a sync attempt."""

    SUCCESS = "success"
    FAILURE = "failure"


class SyncAction:
    """Audit actions written to sync_attempts."""

    SYNC_OUTBOUND = "square_sync_outbound"
    CUSTOMER_CREATE = "square_customer_create"
    UPDATE_BOOKING = "square_update_booking"
    CANCEL_BOOKING = "square_cancel_booking"
    RECONCILE_STARTED = "reconcile_started"
    RECONCILE_COMPLETED = "reconcile_completed"
    RECONCILE_FAILED = "reconcile_failed"
    PAYMENT_WEBHOOK_RECEIVED = "payment_webhook_received"
    INVOICE_PAID = "invoice_paid"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_FAILED = "square_payment_failed"


# ============================================================================
# Core Models
# ============================================================================


class Customer(Base):
    """
    Customer model - must exist (with email) before a booking can be mirrored.

    Square requires its own customer record for bookings; the id is stored
    in external_customer_id the first time the customer is mirrored.
    """

    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    external_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, name={self.name}, square_id={self.external_customer_id})>"


class Appointment(Base):
    """
    Appointment model - local booking, mirrored to Square when it has a customer.

    Anonymous appointments (customer_id NULL) are never mirrored.
    external_booking_id is unique: at most one appointment links to a given
    Square booking, and reconciliation resolves Square -> local through it.
    Shadow records created by reconciliation have created_by_sync set.
    """

    __tablename__ = "appointments"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    customer_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Square team member id
    artist_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    start_time: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=AppointmentStatus.SCHEDULED,
        nullable=False,
        index=True,
    )

    appointment_type: Mapped[str] = mapped_column(
        String(100), default="Appointment", nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    external_booking_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    created_by_sync: Mapped[bool] = mapped_column(
        default=False, server_default=text("false"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_appointments_unlinked", "start_time", postgresql_where=text("external_booking_id IS NULL")),
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, start={self.start_time}, "
            f"status={self.status}, square_booking={self.external_booking_id})>"
        )


class Payment(Base):
    """
    Payment model - local payment records updated by Square webhooks.

    reference_id correlates the payment with an appointment or order.
    raw_provider_payload keeps Square's payment object for audit only.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    customer_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)
    method: Mapped[str] = mapped_column(String(30), default="square", nullable=False)

    external_payment_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    raw_provider_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, amount={self.amount}, status={self.status})>"


class Invoice(Base):
    """Invoice model - local invoice linked to a Square invoice."""

    __tablename__ = "invoices"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    customer_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="draft", nullable=False)
    external_invoice_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    paid_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"


class SyncAttemptRecord(Base):
    """
    Audit trail entry for a sync outcome. Append-only.

    target_entity_id is a string because it may hold a local UUID, a Square
    id, or a job marker.
    """

    __tablename__ = "sync_attempts"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    target_entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    outcome: Mapped[SyncOutcome] = mapped_column(
        SQLEnum(
            SyncOutcome,
            name="sync_outcome",
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<SyncAttemptRecord(action={self.action}, outcome={self.outcome})>"
