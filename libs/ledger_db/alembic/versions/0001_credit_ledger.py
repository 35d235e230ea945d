"""Create credit ledger, balance snapshot and alert tables

Revision ID: 0001_credit_ledger
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_credit_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), autoincrement=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("source_id", sa.String(length=255), nullable=True),
        sa.CheckConstraint("delta <> 0", name=op.f("ck_credit_ledger_delta_non_zero")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_credit_ledger")),
        sa.UniqueConstraint("user_id", "source_id", name="uq_credit_ledger_user_source"),
    )
    op.create_index("ix_credit_ledger_user_id_id", "credit_ledger", ["user_id", "id"], unique=False)
    op.create_index("ix_credit_ledger_source_id", "credit_ledger", ["source_id"], unique=False)

    op.create_table(
        "credit_balances",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("credits_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_pack_purchased", sa.String(length=64), nullable=True),
        sa.Column("auto_extend_enabled", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name=op.f("ck_credit_balances_balance_non_negative")),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_credit_balances")),
    )
    op.create_index("ix_credit_balances_credits_expires_at", "credit_balances", ["credits_expires_at"], unique=False)

    op.create_table(
        "balance_alerts_sent",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("threshold", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "threshold", name=op.f("pk_balance_alerts_sent")),
    )


def downgrade() -> None:
    op.drop_table("balance_alerts_sent")
    op.drop_index("ix_credit_balances_credits_expires_at", table_name="credit_balances")
    op.drop_table("credit_balances")
    op.drop_index("ix_credit_ledger_source_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")
