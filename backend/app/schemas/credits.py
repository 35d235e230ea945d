"""Credit balance, consumption and pack schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field

from common.ids import LedgerEntryId, PackId, UserId
from common.utils.json_model import JsonModel
from ledger_db.models.ledger import LedgerReason
from ledger_db.schemas.ledger import BalanceSnapshot, LedgerEntry, LedgerTotals, TopConsumer


class CreditPack(JsonModel):
    id: PackId
    label: str
    credits: int = Field(..., gt=0)
    duration_days: int = Field(..., gt=0)
    grace_days: int = Field(default=0, ge=0)
    auto_extend: bool = False
    extension_days: int | None = Field(default=None, gt=0)
    price_id_key: str | None = Field(default=None, exclude=True)
    price_id: str | None = Field(default=None, exclude=True)


class ConsumeFailureReason(StrEnum):
    """Failure reasons for credit consumption attempts."""

    INSUFFICIENT_BALANCE = "insufficient_balance"
    CREDITS_EXPIRED = "credits_expired"


class ConsumptionResult(JsonModel):
    """Result of attempting to spend credits."""

    successful: bool
    entry: LedgerEntry | None = None
    balance: int = Field(..., description="Spendable balance after the attempt")
    failure_reason: ConsumeFailureReason | None = None
    replayed: bool = Field(default=False, description="The source id was already consumed; nothing was charged")


class GrantResult(JsonModel):
    entry: LedgerEntry | None = None
    balance: int
    credits_expires_at: datetime | None = None
    already_applied: bool = False


class ReconcileReport(JsonModel):
    user_id: UserId
    previous: int | None = Field(default=None, description="Snapshot balance before the recompute")
    ledger_sum: int
    drift: int
    repaired: bool


class SweepResult(JsonModel):
    examined: int = 0
    expired_users: int = 0
    credits_expired: int = 0
    failed_users: list[UserId] = Field(default_factory=list)
    skipped: bool = False


# API models


class BalanceResponse(JsonModel):
    balance: int = Field(..., description="Spendable credits right now")
    raw_balance: int
    credits_expires_at: datetime | None = None
    expired: bool
    last_pack_purchased: PackId | None = None
    auto_extend_enabled: bool

    @classmethod
    def from_snapshot(cls, snapshot: BalanceSnapshot) -> BalanceResponse:
        return cls(
            balance=snapshot.spendable,
            raw_balance=snapshot.balance,
            credits_expires_at=snapshot.credits_expires_at,
            expired=snapshot.expired,
            last_pack_purchased=snapshot.last_pack_purchased,
            auto_extend_enabled=snapshot.auto_extend_enabled,
        )


class LedgerEntryResponse(JsonModel):
    id: LedgerEntryId
    delta: int
    reason: LedgerReason
    source_id: str | None = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> LedgerEntryResponse:
        return cls(id=entry.id, delta=entry.delta, reason=entry.reason, source_id=entry.source_id, created_at=entry.created_at)


class TransactionsResponse(JsonModel):
    entries: list[LedgerEntryResponse]
    next_cursor: LedgerEntryId | None = None


class CheckCreditsRequest(BaseModel):
    count: int = Field(..., gt=0)


class CheckCreditsResponse(JsonModel):
    ok: Literal[True] = True
    balance: int


class ListPacksResponse(JsonModel):
    packs: list[CreditPack]


class ConsumeCreditsRequest(JsonModel):
    user_id: UserId
    amount: int = Field(..., gt=0)
    reason: LedgerReason = LedgerReason.CONSUMPTION
    source_id: str | None = None


class ConsumeCreditsResponse(JsonModel):
    entry: LedgerEntryResponse
    balance: int
    replayed: bool = False


class AdjustCreditsRequest(JsonModel):
    user_id: UserId
    delta: int
    reason: LedgerReason = LedgerReason.ADJUSTMENT
    source_id: str | None = None
    pack_id: PackId | None = None


class AdjustCreditsResponse(JsonModel):
    entry: LedgerEntryResponse | None = None
    balance: int
    already_applied: bool = False


class CreditStatsResponse(JsonModel):
    totals: LedgerTotals
    consumed_last_24h: int
    top_consumers: list[TopConsumer]
