"""Expiry sweeper.
Turns balances whose ``credits_expires_at`` has passed into an explicit ``expiry`` ledger entry so
the ledger sum converges with the spendable balance. Runs are never concurrent with themselves.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.schemas.credits import SweepResult
from common.core.app_error import Errors
from common.core.config_service import SweeperSection
from common.db.db import Db
from common.db.db_utils import storage_errors, use_session
from common.ids import UserId
from common.utils.utils import ensure_utc, get_logger, get_now
from ledger_db.crud.balance import BalanceSnapshotDAO
from ledger_db.crud.ledger import LedgerDAO
from ledger_db.models.ledger import LedgerReason
from ledger_db.schemas.ledger import BalanceSnapshot, LedgerEntry

logger = get_logger()

# pg_try_advisory_lock key shared by every process running the sweeper
SWEEP_ADVISORY_LOCK_KEY = 0x43524544


def expiry_source_id(expires_at: datetime) -> str:
    return f"expiry:{ensure_utc(expires_at).isoformat()}"


async def collect_expired(
    db: AsyncSession,
    ledger_dao: LedgerDAO,
    snapshot_dao: BalanceSnapshotDAO,
    snapshot: BalanceSnapshot,
    now: datetime,
) -> LedgerEntry | None:
    """Forfeits the user's outstanding credits if they have expired.
    Expects ``snapshot`` to be locked by the caller. ``credits_expires_at`` is left as is.
    """
    if snapshot.credits_expires_at is None or not snapshot.is_expired(now):
        return None

    ledger_sum = await ledger_dao.sum_for_user(db, snapshot.user_id)
    entry: LedgerEntry | None = None
    if ledger_sum > 0:
        entry = await ledger_dao.append_if_absent(
            db,
            user_id=snapshot.user_id,
            delta=-ledger_sum,
            reason=LedgerReason.EXPIRY,
            source_id=expiry_source_id(snapshot.credits_expires_at),
        )
        if entry is None:
            logger.warning(
                "Expired credits already collected for this expiry date but balance is positive",
                user_id=snapshot.user_id,
                ledger_sum=ledger_sum,
                credits_expires_at=snapshot.credits_expires_at,
            )
            return None
        logger.info("Expired credits collected", user_id=snapshot.user_id, delta=entry.delta, credits_expires_at=snapshot.credits_expires_at)

    await snapshot_dao.update(db, snapshot.user_id, balance=max(ledger_sum + (entry.delta if entry else 0), 0), verified_at=now)
    return entry


class ExpirySweeper:
    def __init__(
        self,
        db: Db,
        ledger_dao: LedgerDAO,
        snapshot_dao: BalanceSnapshotDAO,
        config: SweeperSection,
        on_user_swept: Callable[[UserId], None] | None = None,
    ) -> None:
        self._db = db
        self._ledger_dao = ledger_dao
        self._snapshot_dao = snapshot_dao
        self._config = config
        self._on_user_swept = on_user_swept
        self._lock = asyncio.Lock()

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        if self._lock.locked():
            logger.info("Expiry sweep already running in this process, skipping")
            return SweepResult(skipped=True)

        async with self._lock, self._cluster_lock() as acquired:
            if not acquired:
                logger.info("Expiry sweep already running in another process, skipping")
                return SweepResult(skipped=True)
            return await self._sweep(now or get_now())

    @asynccontextmanager
    async def _cluster_lock(self) -> AsyncGenerator[bool]:
        """Session-level advisory lock on PostgreSQL; SQLite deployments are single process."""
        if self._db.dialect_name != "postgresql":
            yield True
            return

        async with self._db.engine.connect() as conn:
            acquired = bool((await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": SWEEP_ADVISORY_LOCK_KEY})).scalar())
            await conn.commit()
            try:
                yield acquired
            finally:
                if acquired:
                    await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": SWEEP_ADVISORY_LOCK_KEY})
                    await conn.commit()

    async def _sweep(self, now: datetime) -> SweepResult:
        result = SweepResult()
        logger.info("Expiry sweep started", now=now, batch_size=self._config.batch_size)

        after: UserId | None = None
        while True:
            with storage_errors(operation="list_expired"):
                async with self._db.new_session() as db:
                    batch = await self._snapshot_dao.list_expired_with_balance(db, now, limit=self._config.batch_size, after_user_id=after)
            if not batch:
                break

            for snapshot in batch:
                result.examined += 1
                try:
                    entry = await self._sweep_user(snapshot.user_id, now)
                except Exception as e:
                    # One user's failure never blocks the others; the next run retries it
                    error = Errors.Sweep.PARTIAL_FAILURE.create(details={"user_id": snapshot.user_id}, cause=e)
                    logger.exception("Expiry sweep failed for user", user_id=snapshot.user_id, error=error.details)
                    result.failed_users.append(snapshot.user_id)
                    continue
                if entry is not None:
                    result.expired_users += 1
                    result.credits_expired += -entry.delta

            after = batch[-1].user_id
            if len(batch) < self._config.batch_size:
                break

        if result.failed_users:
            logger.warning("Expiry sweep finished with failures", **result.to_dict())
        else:
            logger.info("Expiry sweep finished", **result.to_dict())
        return result

    async def _sweep_user(self, user_id: UserId, now: datetime) -> LedgerEntry | None:
        async with self._db.new_session() as db:
            async with use_session(db):
                snapshot = await self._snapshot_dao.lock(db, user_id)
                entry = await collect_expired(db, self._ledger_dao, self._snapshot_dao, snapshot, now)
        if self._on_user_swept is not None:
            self._on_user_swept(user_id)
        return entry
