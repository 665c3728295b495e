"""payment_charges.delivery_requested_at

Revision ID: 0002_charge_delivery_requested
Revises: 0001_initial
Create Date: 2026-10-19 15:00:00.000000

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_charge_delivery_requested"
down_revision: Union[str, Sequence[str], None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("payment_charges") as batch:
        batch.add_column(sa.Column("delivery_requested_at", sa.DateTime(timezone=True), nullable=True))

    # 迁移前已 paid 的收款单视为已投递，避免上线后被补发
    op.execute(
        "UPDATE payment_charges SET delivery_requested_at = paid_at "
        "WHERE status = 'paid' AND delivery_requested_at IS NULL"
    )


def downgrade() -> None:
    with op.batch_alter_table("payment_charges") as batch:
        batch.drop_column("delivery_requested_at")
