"""add outbox hot-path and stale-order indexes

Revision ID: 0002_orders_hot_indexes
Revises: 0001_orders
Create Date: 2026-10-14
"""

from alembic import op


revision = "0002_orders_hot_indexes"
down_revision = "0001_orders"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_orders_payment_status_created_at",
        "orders",
        ["payment_status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_orders_payment_status_created_at", table_name="orders")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
