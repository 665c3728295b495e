"""initial perishable reservation schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("origin", sa.String(length=128), nullable=True),
        sa.Column("qty_available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_safety_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("sku", name="uq_items_sku"),
        sa.CheckConstraint("qty_available >= 0", name="ck_items_qty_available_nonneg"),
        sa.CheckConstraint("min_safety_stock >= 0", name="ck_items_min_safety_nonneg"),
    )
    op.create_index("ix_items_category", "items", ["category"])

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(length=40), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("qty", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("destination", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("qty > 0", name="ck_reservations_qty_pos"),
    )
    op.create_index("ix_reservations_item_id", "reservations", ["item_id"])
    # TTL 扫描：status='pending' AND payment_deadline <= now
    op.create_index("ix_reservations_status_deadline", "reservations", ["status", "payment_deadline"])

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("after_qty", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("reservation_id", sa.String(length=40), sa.ForeignKey("reservations.id"), nullable=True),
        sa.Column("note", sa.String(length=255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stock_movements_item_id", "stock_movements", ["item_id"])
    op.create_index("ix_stock_movements_reservation_id", "stock_movements", ["reservation_id"])
    op.create_index("ix_movements_item_id_id", "stock_movements", ["item_id", "id"])
    op.create_index(
        "uq_movements_reservation_reason",
        "stock_movements",
        ["reservation_id", "reason"],
        unique=True,
    )

    op.create_table(
        "payment_charges",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("reservation_id", sa.String(length=40), sa.ForeignKey("reservations.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("failure_reason", sa.String(length=64), nullable=True),
        sa.Column("qr_payload", sa.Text(), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("reservation_id", name="uq_payment_charges_reservation_id"),
    )
    op.create_index("ix_payment_charges_status", "payment_charges", ["status"])


def downgrade() -> None:
    op.drop_index("ix_payment_charges_status", table_name="payment_charges")
    op.drop_table("payment_charges")

    op.drop_index("uq_movements_reservation_reason", table_name="stock_movements")
    op.drop_index("ix_movements_item_id_id", table_name="stock_movements")
    op.drop_index("ix_stock_movements_reservation_id", table_name="stock_movements")
    op.drop_index("ix_stock_movements_item_id", table_name="stock_movements")
    op.drop_table("stock_movements")

    op.drop_index("ix_reservations_status_deadline", table_name="reservations")
    op.drop_index("ix_reservations_item_id", table_name="reservations")
    op.drop_table("reservations")

    op.drop_index("ix_items_category", table_name="items")
    op.drop_table("items")
