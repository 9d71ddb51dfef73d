"""create square sync tables

Revision ID: a1c0e5b7d2f4
Revises:
Create Date: 2026-10-19

Creates the local system of record used by the Square sync engine:
- customers, appointments, payments, invoices
- sync_attempts: append-only audit trail
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a1c0e5b7d2f4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    op.create_table(
        'customers',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_customer_id', name='uq_customers_external_customer_id'),
    )

    appointment_status = postgresql.ENUM(
        'scheduled', 'confirmed', 'cancelled', 'completed',
        name='appointment_status',
    )
    op.create_table(
        'appointments',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('customer_id', sa.UUID(), nullable=True),
        sa.Column('artist_id', sa.String(255), nullable=True),
        sa.Column('start_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('status', appointment_status, nullable=False, server_default='scheduled'),
        sa.Column('appointment_type', sa.String(100), nullable=False,
                  server_default='Appointment'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('external_booking_id', sa.String(255), nullable=True),
        sa.Column('created_by_sync', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('external_booking_id', name='uq_appointments_external_booking_id'),
    )
    op.create_index('ix_appointments_customer_id', 'appointments', ['customer_id'])
    op.create_index('ix_appointments_start_time', 'appointments', ['start_time'])
    op.create_index('ix_appointments_status', 'appointments', ['status'])
    op.create_index(
        'idx_appointments_unlinked', 'appointments', ['start_time'],
        postgresql_where=sa.text('external_booking_id IS NULL'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('customer_id', sa.UUID(), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('method', sa.String(30), nullable=False, server_default='square'),
        sa.Column('external_payment_id', sa.String(255), nullable=True),
        sa.Column('reference_id', sa.String(255), nullable=True),
        sa.Column('raw_provider_payload', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('external_payment_id', name='uq_payments_external_payment_id'),
    )
    op.create_index('ix_payments_customer_id', 'payments', ['customer_id'])
    op.create_index('ix_payments_reference_id', 'payments', ['reference_id'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('customer_id', sa.UUID(), nullable=True),
        sa.Column('invoice_number', sa.String(100), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='draft'),
        sa.Column('external_invoice_id', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('external_invoice_id', name='uq_invoices_external_invoice_id'),
    )
    op.create_index('ix_invoices_customer_id', 'invoices', ['customer_id'])

    sync_outcome = postgresql.ENUM('success', 'failure', name='sync_outcome')
    op.create_table(
        'sync_attempts',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('target_entity_id', sa.String(255), nullable=True),
        sa.Column('outcome', sync_outcome, nullable=False),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sync_attempts_action', 'sync_attempts', ['action'])
    op.create_index('ix_sync_attempts_target_entity_id', 'sync_attempts', ['target_entity_id'])
    op.create_index('ix_sync_attempts_created_at', 'sync_attempts', ['created_at'])


def downgrade() -> None:
    op.drop_table('sync_attempts')
    op.drop_table('invoices')
    op.drop_table('payments')
    op.drop_table('appointments')
    op.drop_table('customers')
    op.execute('DROP TYPE IF EXISTS sync_outcome')
    op.execute('DROP TYPE IF EXISTS appointment_status')
