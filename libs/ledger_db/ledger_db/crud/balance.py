"""DAO for the per-user balance snapshot."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, func, select, union, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.ids import UserId
from common.utils.utils import get_now
from ledger_db.models.ledger import CreditBalance, CreditLedgerEntry
from ledger_db.schemas.ledger import BalanceSnapshot


class BalanceSnapshotDAO:
    async def ensure_row(self, db: AsyncSession, user_id: UserId) -> None:
        """Creates an empty snapshot row unless one exists. Concurrent callers never conflict."""
        now = get_now()
        values: dict[str, Any] = {"user_id": user_id, "balance": 0, "auto_extend_enabled": False, "created_at": now, "updated_at": now}
        dialect = db.get_bind().dialect.name

        if dialect == "postgresql":
            await db.execute(postgresql.insert(CreditBalance).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))
            return
        if dialect == "sqlite":
            await db.execute(sqlite.insert(CreditBalance).values(**values).on_conflict_do_nothing(index_elements=["user_id"]))
            return

        if await self.get(db, user_id) is not None:
            return
        try:
            async with db.begin_nested():
                db.add(CreditBalance(**values))
                await db.flush()
        except IntegrityError:
            pass

    async def get(self, db: AsyncSession, user_id: UserId) -> BalanceSnapshot | None:
        result = await db.execute(select(CreditBalance).where(CreditBalance.user_id == user_id).execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        return BalanceSnapshot.model_validate(row) if row else None

    async def lock(self, db: AsyncSession, user_id: UserId) -> BalanceSnapshot:
        """Row lock held until the caller's transaction ends (a no-op clause on SQLite,
        where ``BEGIN IMMEDIATE`` already serializes writers).
        """
        result = await db.execute(
            select(CreditBalance).where(CreditBalance.user_id == user_id).with_for_update().execution_options(populate_existing=True)
        )
        return BalanceSnapshot.model_validate(result.scalar_one())

    async def update(self, db: AsyncSession, user_id: UserId, **values: Any) -> None:
        values.setdefault("updated_at", get_now())
        await db.execute(update(CreditBalance).where(CreditBalance.user_id == user_id).values(**values))

    async def list_expired_with_balance(
        self,
        db: AsyncSession,
        now: datetime,
        *,
        limit: int,
        after_user_id: UserId | None = None,
    ) -> list[BalanceSnapshot]:
        """Expired snapshots whose ledger sum is still positive. The cached balance column is not consulted."""
        ledger_sums = _ledger_sums().subquery()
        stmt = (
            select(CreditBalance)
            .join(ledger_sums, ledger_sums.c.user_id == CreditBalance.user_id)
            .where(
                CreditBalance.credits_expires_at.is_not(None),
                CreditBalance.credits_expires_at < now,
                ledger_sums.c.total > 0,
            )
        )
        if after_user_id is not None:
            stmt = stmt.where(CreditBalance.user_id > after_user_id)
        result = await db.execute(stmt.order_by(CreditBalance.user_id).limit(limit))
        return [BalanceSnapshot.model_validate(row) for row in result.scalars().all()]

    async def users_with_balance(self, db: AsyncSession) -> list[UserId]:
        """Users holding credits by either the ledger or their snapshot, so drifted rows are included."""
        ledger_sums = _ledger_sums().subquery()
        holders = union(
            select(ledger_sums.c.user_id).where(ledger_sums.c.total > 0),
            select(CreditBalance.user_id).where(CreditBalance.balance > 0),
        ).subquery()
        result = await db.execute(select(holders.c.user_id).order_by(holders.c.user_id))
        return [UserId(user_id) for user_id in result.scalars().all()]


def _ledger_sums() -> Select[tuple[str, int]]:
    return select(CreditLedgerEntry.user_id.label("user_id"), func.sum(CreditLedgerEntry.delta).label("total")).group_by(
        CreditLedgerEntry.user_id
    )
