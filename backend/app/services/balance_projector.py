"""Balance projector: the read model over the credit ledger and the only spend path.

Every mutation runs as one transaction that locks the user's ``credit_balances`` row, re-reads the
authoritative ledger sum, appends to the ledger and refreshes the snapshot. Concurrent spends for a
user therefore serialize on that row and can never overdraw it.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.schemas.credits import ConsumeFailureReason, ConsumptionResult, CreditPack, GrantResult, ReconcileReport
from app.services.expiry_sweeper import collect_expired
from app.services.low_balance_notifier import LowBalanceNotifier
from app.services.pack_catalog import PackCatalog
from common.core.app_error import AppException, Errors
from common.core.config_service import CreditsSection
from common.db.db import Db
from common.db.db_utils import storage_errors, use_session
from common.ids import UserId
from common.utils.utils import ensure_utc, get_logger, get_now
from ledger_db.crud.alerts import BalanceAlertDAO
from ledger_db.crud.balance import BalanceSnapshotDAO
from ledger_db.crud.ledger import LedgerDAO
from ledger_db.models.ledger import LedgerReason
from ledger_db.schemas.ledger import BalanceSnapshot

logger = get_logger()

CONSUMPTION_REASONS = frozenset({LedgerReason.CONSUMPTION, LedgerReason.ADJUSTMENT, LedgerReason.REFUND})
GRANT_REASONS = frozenset({LedgerReason.PURCHASE, LedgerReason.BONUS, LedgerReason.ADJUSTMENT})


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise Errors.Ledger.INVALID_ENTRY.create("amount must be a positive integer", details={"amount": amount})


def _require_reason(reason: LedgerReason | str, allowed: frozenset[LedgerReason]) -> LedgerReason:
    try:
        parsed = LedgerReason(reason)
    except ValueError as e:
        raise Errors.Ledger.INVALID_ENTRY.create(f"Unknown ledger reason '{reason}'", cause=e) from e
    if parsed not in allowed:
        raise Errors.Ledger.INVALID_ENTRY.create(f"Reason '{parsed}' is not allowed here", details={"reason": parsed})
    return parsed


class BalanceProjector:
    def __init__(
        self,
        db: Db,
        ledger_dao: LedgerDAO,
        snapshot_dao: BalanceSnapshotDAO,
        alert_dao: BalanceAlertDAO,
        packs: PackCatalog,
        notifier: LowBalanceNotifier,
        config: CreditsSection,
    ) -> None:
        self._db = db
        self._ledger_dao = ledger_dao
        self._snapshot_dao = snapshot_dao
        self._alert_dao = alert_dao
        self._packs = packs
        self._notifier = notifier
        self._config = config
        self._cache: dict[UserId, tuple[float, BalanceSnapshot]] = {}

    # Cache

    def _cache_get(self, user_id: UserId) -> BalanceSnapshot | None:
        cached = self._cache.get(user_id)
        if cached is None:
            return None
        stored_at, snapshot = cached
        if time.monotonic() - stored_at > self._config.cache_ttl_seconds:
            self._cache.pop(user_id, None)
            return None
        return snapshot

    def _cache_put(self, snapshot: BalanceSnapshot) -> None:
        if self._config.cache_ttl_seconds > 0:
            self._cache[snapshot.user_id] = (time.monotonic(), snapshot)

    def invalidate(self, user_id: UserId) -> None:
        self._cache.pop(user_id, None)

    def _is_fresh(self, snapshot: BalanceSnapshot, now: datetime) -> bool:
        if snapshot.verified_at is None:
            return False
        return now - ensure_utc(snapshot.verified_at) <= timedelta(seconds=self._config.snapshot_max_age_seconds)

    # Reads

    async def get_balance(self, user_id: UserId) -> BalanceSnapshot:
        """Cached snapshot, else the stored row if recently verified, else a recompute from the ledger."""
        cached = self._cache_get(user_id)
        if cached is not None:
            return cached

        now = get_now()
        with storage_errors(user_id=user_id):
            async with self._db.new_session() as db:
                snapshot = await self._snapshot_dao.get(db, user_id)
                if snapshot is None:
                    ledger_sum = await self._ledger_dao.sum_for_user(db, user_id)
                    if ledger_sum == 0:
                        # Users without a ledger are not worth a row
                        return BalanceSnapshot(user_id=user_id)
                if snapshot is None or not self._is_fresh(snapshot, now):
                    async with use_session(db):
                        snapshot, _ = await self._recompute(db, user_id, now)

        self._cache_put(snapshot)
        return snapshot

    async def can_afford(self, user_id: UserId, count: int) -> bool:
        _require_positive(count)
        snapshot = await self.get_balance(user_id)
        return snapshot.spendable >= count

    async def reconcile(self, user_id: UserId) -> ReconcileReport:
        """Recomputes the snapshot from the ledger sum and repairs any drift."""
        now = get_now()
        with storage_errors(user_id=user_id):
            async with self._db.new_session() as db:
                async with use_session(db):
                    previous = await self._snapshot_dao.get(db, user_id)
                    snapshot, ledger_sum = await self._recompute(db, user_id, now)
        self.invalidate(user_id)

        previous_balance = previous.balance if previous is not None else None
        drift = ledger_sum - (previous_balance or 0)
        report = ReconcileReport(user_id=user_id, previous=previous_balance, ledger_sum=ledger_sum, drift=drift, repaired=drift != 0)
        logger.info("Balance reconciled", **report.to_dict())
        return report

    async def _recompute(self, db: AsyncSession, user_id: UserId, now: datetime) -> tuple[BalanceSnapshot, int]:
        await self._snapshot_dao.ensure_row(db, user_id)
        snapshot = await self._snapshot_dao.lock(db, user_id)
        ledger_sum = await self._ledger_dao.sum_for_user(db, user_id)
        if ledger_sum < 0:
            logger.error("Ledger sum is negative", user_id=user_id, ledger_sum=ledger_sum)

        balance = max(ledger_sum, 0)
        if balance != snapshot.balance:
            logger.warning("Balance snapshot drifted from ledger, repairing", user_id=user_id, snapshot_balance=snapshot.balance, ledger_sum=ledger_sum)
        await self._snapshot_dao.update(db, user_id, balance=balance, verified_at=now)
        return snapshot.model_copy(update={"balance": balance, "verified_at": now}), ledger_sum

    # Writes

    async def reserve_and_consume(
        self,
        user_id: UserId,
        amount: int,
        reason: LedgerReason | str = LedgerReason.CONSUMPTION,
        source_id: str | None = None,
    ) -> ConsumptionResult:
        """Spends ``amount`` credits if the user can afford them right now.
        Insufficient or expired balances are reported in the result, never raised, and change nothing.
        """
        _require_positive(amount)
        return await self._consume(user_id, amount, _require_reason(reason, CONSUMPTION_REASONS), source_id, clamp=False)

    async def reverse(self, user_id: UserId, amount: int, source_id: str) -> ConsumptionResult:
        """Takes back up to ``amount`` credits for a refunded payment, never more than the user holds."""
        _require_positive(amount)
        return await self._consume(user_id, amount, LedgerReason.REFUND, source_id, clamp=True)

    async def _consume(self, user_id: UserId, amount: int, parsed_reason: LedgerReason, source_id: str | None, *, clamp: bool) -> ConsumptionResult:
        now = get_now()
        crossed: list[int] = []

        with storage_errors(user_id=user_id, source_id=source_id, reason=parsed_reason):
            async with self._db.new_session() as db:
                async with use_session(db):
                    await self._snapshot_dao.ensure_row(db, user_id)
                    snapshot = await self._snapshot_dao.lock(db, user_id)

                    if source_id is not None:
                        existing = await self._ledger_dao.get_by_source(db, user_id=user_id, source_id=source_id)
                        if existing is not None:
                            if existing.reason != parsed_reason or (not clamp and existing.delta != -amount):
                                raise Errors.Ledger.DUPLICATE_SOURCE.create(
                                    "Source id was already used for a different entry",
                                    details={"user_id": user_id, "source_id": source_id, "existing_entry_id": existing.id},
                                )
                            logger.info("Consumption already applied", user_id=user_id, source_id=source_id, entry_id=existing.id)
                            return ConsumptionResult(successful=True, entry=existing, balance=snapshot.spendable_at(now), replayed=True)

                    raw_balance = max(await self._ledger_dao.sum_for_user(db, user_id), 0)
                    expired = snapshot.is_expired(now)
                    spendable = 0 if expired else raw_balance
                    available = spendable

                    if clamp:
                        # Refunds also take back expired, not yet swept credits
                        amount = min(amount, raw_balance)
                        available = raw_balance

                    if amount == 0 or available < amount:
                        failure_reason = ConsumeFailureReason.CREDITS_EXPIRED if expired and raw_balance >= amount > 0 else ConsumeFailureReason.INSUFFICIENT_BALANCE
                        logger.info(
                            "Credit consumption rejected",
                            user_id=user_id,
                            amount=amount,
                            spendable=spendable,
                            source_id=source_id,
                            failure_reason=failure_reason,
                        )
                        return ConsumptionResult(successful=False, balance=spendable, failure_reason=failure_reason)

                    entry = await self._ledger_dao.append(db, user_id=user_id, delta=-amount, reason=parsed_reason, source_id=source_id)
                    new_balance = raw_balance - amount

                    values: dict[str, Any] = {"balance": new_balance, "verified_at": now}
                    extended = self._extended_expiry(snapshot, now) if parsed_reason == LedgerReason.CONSUMPTION else None
                    if extended is not None:
                        values["credits_expires_at"] = extended
                    await self._snapshot_dao.update(db, user_id, **values)

                    if not expired:
                        crossed = await self._record_alerts(db, user_id, before=spendable, after=new_balance)

        self.invalidate(user_id)
        logger.info("Credits consumed", user_id=user_id, delta=-amount, reason=parsed_reason, source_id=source_id, balance=new_balance)
        for threshold in crossed:
            await self._notifier.notify(user_id, threshold, new_balance)
        return ConsumptionResult(successful=True, entry=entry, balance=0 if expired else new_balance)

    async def grant(
        self,
        user_id: UserId,
        amount: int,
        reason: LedgerReason | str,
        source_id: str | None = None,
        pack_id: str | None = None,
    ) -> GrantResult:
        """Adds credits. A repeated ``source_id`` is reported as ``already_applied`` and adds nothing."""
        _require_positive(amount)
        parsed_reason = _require_reason(reason, GRANT_REASONS)
        pack = self._packs.get(pack_id) if pack_id else None
        now = get_now()

        with storage_errors(user_id=user_id, source_id=source_id, reason=parsed_reason):
            async with self._db.new_session() as db:
                async with use_session(db):
                    await self._snapshot_dao.ensure_row(db, user_id)
                    snapshot = await self._snapshot_dao.lock(db, user_id)

                    if source_id is not None:
                        existing = await self._ledger_dao.get_by_source(db, user_id=user_id, source_id=source_id)
                        if existing is not None:
                            logger.info("Grant already applied", user_id=user_id, source_id=source_id, entry_id=existing.id)
                            return GrantResult(
                                entry=existing,
                                balance=snapshot.spendable_at(now),
                                credits_expires_at=snapshot.credits_expires_at,
                                already_applied=True,
                            )

                    # Forfeit expired credits first so the new grant cannot revive them
                    await collect_expired(db, self._ledger_dao, self._snapshot_dao, snapshot, now)

                    try:
                        entry = await self._ledger_dao.append(db, user_id=user_id, delta=amount, reason=parsed_reason, source_id=source_id)
                    except AppException as e:
                        if not Errors.Ledger.DUPLICATE_SOURCE.is_(e):
                            raise
                        return GrantResult(balance=snapshot.spendable_at(now), credits_expires_at=snapshot.credits_expires_at, already_applied=True)

                    new_balance = max(await self._ledger_dao.sum_for_user(db, user_id), 0)
                    values: dict[str, Any] = {"balance": new_balance, "verified_at": now}
                    expires_at = self._grant_expiry(snapshot, parsed_reason, pack, now)
                    if expires_at is not None:
                        values["credits_expires_at"] = expires_at
                    if pack is not None and parsed_reason == LedgerReason.PURCHASE:
                        values["last_pack_purchased"] = pack.id
                        values["auto_extend_enabled"] = pack.auto_extend
                    await self._snapshot_dao.update(db, user_id, **values)

                    # Thresholds below the new balance can fire again
                    await self._alert_dao.clear(db, user_id, [t for t in self._config.low_balance_thresholds if t < new_balance])

        self.invalidate(user_id)
        credits_expires_at = values.get("credits_expires_at", snapshot.credits_expires_at)
        logger.info(
            "Credits granted",
            user_id=user_id,
            delta=amount,
            reason=parsed_reason,
            source_id=source_id,
            pack_id=pack.id if pack else None,
            balance=new_balance,
            credits_expires_at=credits_expires_at,
        )
        return GrantResult(entry=entry, balance=new_balance, credits_expires_at=credits_expires_at)

    def _grant_expiry(self, snapshot: BalanceSnapshot, reason: LedgerReason, pack: CreditPack | None, now: datetime) -> datetime | None:
        """``max(existing, now + lifetime)``; a bare adjustment keeps a live expiry untouched."""
        if reason == LedgerReason.ADJUSTMENT and pack is None and not snapshot.is_expired(now):
            return None
        lifetime = self._packs.duration(pack) if pack is not None else timedelta(days=self._config.default_grant_days)
        candidate = now + lifetime
        if snapshot.credits_expires_at is None:
            return candidate
        return max(ensure_utc(snapshot.credits_expires_at), candidate)

    def _extended_expiry(self, snapshot: BalanceSnapshot, now: datetime) -> datetime | None:
        if not snapshot.auto_extend_enabled or snapshot.credits_expires_at is None or snapshot.is_expired(now):
            return None
        return ensure_utc(snapshot.credits_expires_at) + self._packs.extension_window(snapshot.last_pack_purchased)

    async def _record_alerts(self, db: AsyncSession, user_id: UserId, *, before: int, after: int) -> list[int]:
        crossed: list[int] = []
        for threshold in sorted(self._config.low_balance_thresholds, reverse=True):
            if before > threshold >= after and await self._alert_dao.mark_sent(db, user_id, threshold):
                crossed.append(threshold)
        return crossed
