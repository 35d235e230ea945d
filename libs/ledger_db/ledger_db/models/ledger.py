"""Credit ledger tables.
The ledger is append-only and authoritative; ``credit_balances`` is a per-user cache of its sum
plus the expiry metadata that the sum alone cannot express.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, CheckConstraint, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from common.db.db_utils import DateTimeUTC
from common.ids import LedgerEntryId, PackId, UserId
from ledger_db.db import Base, UpdatedAtMixin


class LedgerReason(StrEnum):
    PURCHASE = "purchase"
    CONSUMPTION = "consumption"
    REFUND = "refund"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    EXPIRY = "expiry"


class CreditLedgerEntry(Base):
    """One immutable signed change to a user's credits."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        # NULL source ids never collide, so only correlated entries are deduplicated
        UniqueConstraint("user_id", "source_id", name="uq_credit_ledger_user_source"),
        CheckConstraint("delta <> 0", name="delta_non_zero"),
        Index("ix_credit_ledger_user_id_id", "user_id", "id"),
        Index("ix_credit_ledger_source_id", "source_id"),
    )

    # BIGINT identity on Postgres; SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[LedgerEntryId] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id: Mapped[UserId] = mapped_column(String(128), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[LedgerReason] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(255), nullable=True)


class CreditBalance(UpdatedAtMixin, Base):
    """Per-user balance snapshot. Advisory: always reconcilable to the ledger sum."""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="balance_non_negative"),
        Index("ix_credit_balances_credits_expires_at", "credits_expires_at"),
    )

    user_id: Mapped[UserId] = mapped_column(String(128), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    credits_expires_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(), nullable=True)
    last_pack_purchased: Mapped[PackId | None] = mapped_column(String(64), nullable=True)
    auto_extend_enabled: Mapped[bool] = mapped_column(nullable=False, default=False, server_default="0")
    # Last time ``balance`` was checked against the ledger sum
    verified_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(), nullable=True)


class BalanceAlertSent(Base):
    """Low-balance thresholds already announced to a user."""

    __tablename__ = "balance_alerts_sent"

    user_id: Mapped[UserId] = mapped_column(String(128), primary_key=True)
    threshold: Mapped[int] = mapped_column(Integer, primary_key=True)
