"""Initial migration - create payment_orders, service_line_items, order_status_history and webhook_events tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'payment_orders',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(100), nullable=False, unique=True),
        sa.Column('sigla', sa.String(50), nullable=False),
        sa.Column('customer_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('payment_method', sa.String(20), nullable=False, server_default='stripe'),
        sa.Column('provider_payment_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payment_orders_status', 'payment_orders', ['status'])
    op.create_index('ix_payment_orders_sigla', 'payment_orders', ['sigla'])
    op.create_index('ix_payment_orders_created_at', 'payment_orders', ['created_at'])
    op.create_index(
        'ix_payment_orders_provider_payment_id',
        'payment_orders',
        ['payment_method', 'provider_payment_id'],
    )

    op.create_table(
        'service_line_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('sigla', sa.String(50), nullable=False),
        sa.Column('category', sa.String(20), nullable=False),
        sa.Column('pieces', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(10), nullable=False, server_default='unpaid'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_service_line_items_sigla_status', 'service_line_items', ['sigla', 'status'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('provider_status', sa.String(50), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('order_id', sa.String(100), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event'),
    )


def downgrade() -> None:
    op.drop_table('webhook_events')

    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_service_line_items_sigla_status', table_name='service_line_items')
    op.drop_table('service_line_items')

    op.drop_index('ix_payment_orders_provider_payment_id', table_name='payment_orders')
    op.drop_index('ix_payment_orders_created_at', table_name='payment_orders')
    op.drop_index('ix_payment_orders_sigla', table_name='payment_orders')
    op.drop_index('ix_payment_orders_status', table_name='payment_orders')
    op.drop_table('payment_orders')
