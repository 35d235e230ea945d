from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from common.ids import UserId
from common.utils.utils import get_now
from ledger_db.models.ledger import BalanceAlertSent


class BalanceAlertDAO:
    async def mark_sent(self, db: AsyncSession, user_id: UserId, threshold: int) -> bool:
        """True only the first time a threshold is recorded for the user."""
        try:
            async with db.begin_nested():
                await db.execute(insert(BalanceAlertSent).values(user_id=user_id, threshold=threshold, created_at=get_now()))
        except IntegrityError:
            return False
        return True

    async def clear(self, db: AsyncSession, user_id: UserId, thresholds: Iterable[int]) -> None:
        thresholds = list(thresholds)
        if not thresholds:
            return
        await db.execute(delete(BalanceAlertSent).where(BalanceAlertSent.user_id == user_id, BalanceAlertSent.threshold.in_(thresholds)))
