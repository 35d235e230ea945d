"""Pydantic schemas for the credit ledger."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from common.ids import LedgerEntryId, PackId, UserId
from common.utils.json_model import JsonModel
from common.utils.utils import ensure_utc, get_now
from ledger_db.models.ledger import LedgerReason


class LedgerEntry(BaseModel):
    id: LedgerEntryId
    user_id: UserId
    delta: int
    reason: LedgerReason
    source_id: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BalanceSnapshot(BaseModel):
    user_id: UserId
    balance: int = 0
    credits_expires_at: datetime | None = None
    last_pack_purchased: PackId | None = None
    auto_extend_enabled: bool = False
    verified_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.credits_expires_at is None:
            return False
        return ensure_utc(self.credits_expires_at) <= (now or get_now())

    def spendable_at(self, now: datetime | None = None) -> int:
        """Expired credits read as zero until the sweeper collects them."""
        if self.is_expired(now):
            return 0
        return max(self.balance, 0)

    @property
    def expired(self) -> bool:
        return self.is_expired()

    @property
    def spendable(self) -> int:
        return self.spendable_at()


class LedgerPage(BaseModel):
    entries: list[LedgerEntry]
    next_cursor: LedgerEntryId | None = None


class LedgerTotals(JsonModel):
    users: int = 0
    granted: int = 0
    consumed: int = 0
    refunded: int = 0
    expired: int = 0
    outstanding: int = 0


class TopConsumer(JsonModel):
    user_id: UserId
    consumed: int
