"""DAO for the append-only credit ledger.
Methods flush but never commit: the caller owns the transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.core.app_error import Errors
from common.ids import LedgerEntryId, UserId
from common.utils.utils import get_logger, get_now
from ledger_db.models.ledger import CreditLedgerEntry, LedgerReason
from ledger_db.schemas.ledger import LedgerEntry, LedgerPage, LedgerTotals, TopConsumer

logger = get_logger(__name__)

SortOrder = Literal["asc", "desc"]


def _validate(delta: int, reason: LedgerReason | str, source_id: str | None) -> tuple[LedgerReason, str | None]:
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise Errors.Ledger.INVALID_ENTRY.create("delta must be a non-zero integer", details={"delta": delta})
    try:
        parsed_reason = LedgerReason(reason)
    except ValueError as e:
        raise Errors.Ledger.INVALID_ENTRY.create(f"Unknown ledger reason '{reason}'", cause=e) from e
    if source_id is not None:
        source_id = source_id.strip()
        if not source_id:
            raise Errors.Ledger.INVALID_ENTRY.create("source_id must not be blank")
    return parsed_reason, source_id


class LedgerDAO:
    async def append(
        self,
        db: AsyncSession,
        *,
        user_id: UserId,
        delta: int,
        reason: LedgerReason | str,
        source_id: str | None = None,
    ) -> LedgerEntry:
        """Appends one immutable entry.
        Raises ``Errors.Ledger.DUPLICATE_SOURCE`` if ``(user_id, source_id)`` already exists; the
        insert runs in a SAVEPOINT so the caller's transaction stays usable either way.
        """
        parsed_reason, source_id = _validate(delta, reason, source_id)
        row = CreditLedgerEntry(user_id=user_id, delta=delta, reason=parsed_reason, source_id=source_id, created_at=get_now())
        try:
            async with db.begin_nested():
                db.add(row)
                await db.flush()
        except IntegrityError as e:
            logger.info("Duplicate ledger source, entry not appended", user_id=user_id, source_id=source_id, reason=parsed_reason)
            raise Errors.Ledger.DUPLICATE_SOURCE.create(details={"user_id": user_id, "source_id": source_id}, cause=e) from e
        return LedgerEntry.model_validate(row)

    async def append_if_absent(
        self,
        db: AsyncSession,
        *,
        user_id: UserId,
        delta: int,
        reason: LedgerReason | str,
        source_id: str | None = None,
    ) -> LedgerEntry | None:
        """Same as ``append`` but returns None for a duplicate source."""
        try:
            return await self.append(db, user_id=user_id, delta=delta, reason=reason, source_id=source_id)
        except Exception as e:
            if Errors.Ledger.DUPLICATE_SOURCE.is_(e):
                return None
            raise

    async def get_by_source(self, db: AsyncSession, *, user_id: UserId, source_id: str) -> LedgerEntry | None:
        result = await db.execute(
            select(CreditLedgerEntry).where(CreditLedgerEntry.user_id == user_id, CreditLedgerEntry.source_id == source_id)
        )
        row = result.scalar_one_or_none()
        return LedgerEntry.model_validate(row) if row else None

    async def find_by_source(self, db: AsyncSession, *, source_id: str, reason: LedgerReason | None = None) -> LedgerEntry | None:
        """Looks a source up across users (refunds only carry the payment id)."""
        stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.source_id == source_id)
        if reason is not None:
            stmt = stmt.where(CreditLedgerEntry.reason == reason)
        result = await db.execute(stmt.order_by(CreditLedgerEntry.id).limit(1))
        row = result.scalar_one_or_none()
        return LedgerEntry.model_validate(row) if row else None

    async def sum_for_user(self, db: AsyncSession, user_id: UserId) -> int:
        result = await db.execute(select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(CreditLedgerEntry.user_id == user_id))
        return int(result.scalar_one())

    async def entries_for_user(
        self,
        db: AsyncSession,
        user_id: UserId,
        *,
        limit: int,
        cursor: LedgerEntryId | None = None,
        order: SortOrder = "desc",
    ) -> LedgerPage:
        """Keyset page over the user's entries. Ids are assigned in insert order, so
        ordering by id is ordering by creation, and a cursor stays valid while rows are appended.
        """
        if limit <= 0:
            raise Errors.Generic.INVALID_INPUT.create("limit must be positive", details={"limit": limit})

        stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.user_id == user_id)
        if order == "desc":
            if cursor is not None:
                stmt = stmt.where(CreditLedgerEntry.id < cursor)
            stmt = stmt.order_by(CreditLedgerEntry.id.desc())
        else:
            if cursor is not None:
                stmt = stmt.where(CreditLedgerEntry.id > cursor)
            stmt = stmt.order_by(CreditLedgerEntry.id.asc())

        result = await db.execute(stmt.limit(limit + 1))
        rows = list(result.scalars().all())
        has_more = len(rows) > limit
        entries = [LedgerEntry.model_validate(row) for row in rows[:limit]]
        return LedgerPage(entries=entries, next_cursor=entries[-1].id if has_more and entries else None)

    async def entries_in_range(
        self,
        db: AsyncSession,
        user_id: UserId,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int,
    ) -> list[LedgerEntry]:
        """Newest first, ``start`` inclusive and ``end`` exclusive."""
        stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.user_id == user_id)
        if start is not None:
            stmt = stmt.where(CreditLedgerEntry.created_at >= start)
        if end is not None:
            stmt = stmt.where(CreditLedgerEntry.created_at < end)
        result = await db.execute(stmt.order_by(CreditLedgerEntry.id.desc()).limit(limit))
        return [LedgerEntry.model_validate(row) for row in result.scalars().all()]

    async def totals(self, db: AsyncSession) -> LedgerTotals:
        def _sum_where(condition: object) -> object:
            return func.coalesce(func.sum(case((condition, CreditLedgerEntry.delta), else_=0)), 0)  # type: ignore[arg-type]

        result = await db.execute(
            select(
                func.count(func.distinct(CreditLedgerEntry.user_id)),
                _sum_where(CreditLedgerEntry.delta > 0),
                _sum_where(CreditLedgerEntry.reason == LedgerReason.CONSUMPTION),
                _sum_where(CreditLedgerEntry.reason == LedgerReason.REFUND),
                _sum_where(CreditLedgerEntry.reason == LedgerReason.EXPIRY),
                func.coalesce(func.sum(CreditLedgerEntry.delta), 0),
            )
        )
        users, granted, consumed, refunded, expired, outstanding = result.one()
        return LedgerTotals(
            users=int(users),
            granted=int(granted),
            consumed=-int(consumed),
            refunded=-int(refunded),
            expired=-int(expired),
            outstanding=int(outstanding),
        )

    async def consumption_since(self, db: AsyncSession, since: datetime) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(
                CreditLedgerEntry.reason == LedgerReason.CONSUMPTION,
                CreditLedgerEntry.created_at >= since,
            )
        )
        return -int(result.scalar_one())

    async def top_consumers(self, db: AsyncSession, since: datetime, limit: int = 10) -> list[TopConsumer]:
        consumed = func.sum(CreditLedgerEntry.delta)
        result = await db.execute(
            select(CreditLedgerEntry.user_id, consumed)
            .where(CreditLedgerEntry.reason == LedgerReason.CONSUMPTION, CreditLedgerEntry.created_at >= since)
            .group_by(CreditLedgerEntry.user_id)
            .order_by(consumed.asc(), CreditLedgerEntry.user_id)
            .limit(limit)
        )
        return [TopConsumer(user_id=UserId(user_id), consumed=-int(total)) for user_id, total in result.all()]
