"""Tests for LedgerDAO: append-only entries, per-source uniqueness, sums and history pages."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from common.core.app_error import AppException, Errors
from common.db.db import Db
from common.db.db_utils import use_session
from common.ids import UserId
from common.utils.utils import get_now
from ledger_db.crud.ledger import LedgerDAO
from ledger_db.models.ledger import LedgerReason

USER = UserId("user-1")
OTHER = UserId("user-2")


@pytest.fixture
def dao() -> LedgerDAO:
    return LedgerDAO()


class TestAppend:
    @pytest.mark.asyncio
    async def test_append_returns_entry_with_id(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            entry = await dao.append(session, user_id=USER, delta=10, reason=LedgerReason.PURCHASE, source_id="pi_1")

        assert entry.id > 0
        assert entry.user_id == USER
        assert entry.delta == 10
        assert entry.reason == LedgerReason.PURCHASE
        assert entry.source_id == "pi_1"
        assert entry.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_source_is_rejected_and_adds_no_row(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=USER, delta=10, reason=LedgerReason.PURCHASE, source_id="pi_123")

        for _ in range(3):
            async with db.new_session() as session, use_session(session):
                with pytest.raises(AppException) as exc_info:
                    await dao.append(session, user_id=USER, delta=10, reason=LedgerReason.PURCHASE, source_id="pi_123")
            assert Errors.Ledger.DUPLICATE_SOURCE.is_(exc_info.value)
            assert exc_info.value.http_status == 409

        async with db.new_session() as session:
            assert await dao.sum_for_user(session, USER) == 10
            page = await dao.entries_for_user(session, USER, limit=10)
        assert len(page.entries) == 1

    @pytest.mark.asyncio
    async def test_duplicate_keeps_the_surrounding_transaction_usable(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=USER, delta=5, reason=LedgerReason.BONUS, source_id="promo")
            duplicate = await dao.append_if_absent(session, user_id=USER, delta=5, reason=LedgerReason.BONUS, source_id="promo")
            await dao.append(session, user_id=USER, delta=-2, reason=LedgerReason.CONSUMPTION, source_id="job-1")

        assert duplicate is None
        async with db.new_session() as session:
            assert await dao.sum_for_user(session, USER) == 3

    @pytest.mark.asyncio
    async def test_same_source_for_different_users_is_allowed(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=USER, delta=1, reason=LedgerReason.BONUS, source_id="welcome")
            await dao.append(session, user_id=OTHER, delta=1, reason=LedgerReason.BONUS, source_id="welcome")

        async with db.new_session() as session:
            assert await dao.sum_for_user(session, USER) == 1
            assert await dao.sum_for_user(session, OTHER) == 1

    @pytest.mark.asyncio
    async def test_entries_without_source_never_collide(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=USER, delta=3, reason=LedgerReason.ADJUSTMENT)
            await dao.append(session, user_id=USER, delta=3, reason=LedgerReason.ADJUSTMENT)

        async with db.new_session() as session:
            assert await dao.sum_for_user(session, USER) == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("delta", "reason", "source_id"),
        [
            (0, LedgerReason.PURCHASE, "pi_1"),
            (True, LedgerReason.PURCHASE, "pi_1"),
            (5, "gift", "pi_1"),
            (5, LedgerReason.PURCHASE, "   "),
        ],
    )
    async def test_invalid_entries_are_rejected(self, db: Db, dao: LedgerDAO, delta: int, reason: str, source_id: str) -> None:
        async with db.new_session() as session:
            with pytest.raises(AppException) as exc_info:
                await dao.append(session, user_id=USER, delta=delta, reason=reason, source_id=source_id)
        assert Errors.Ledger.INVALID_ENTRY.is_(exc_info.value)

    @pytest.mark.asyncio
    async def test_concurrent_appends_with_same_source_insert_once(self, db: Db, dao: LedgerDAO) -> None:
        async def _append() -> bool:
            async with db.new_session() as session, use_session(session):
                return await dao.append_if_absent(session, user_id=USER, delta=10, reason=LedgerReason.PURCHASE, source_id="pi_race") is not None

        results = await asyncio.gather(*[_append() for _ in range(5)])

        assert results.count(True) == 1
        async with db.new_session() as session:
            assert await dao.sum_for_user(session, USER) == 10


class TestLookups:
    @pytest.mark.asyncio
    async def test_sum_is_order_independent(self, db: Db, dao: LedgerDAO) -> None:
        deltas = [10, -3, 5, -2, -1, 20, -4]
        async with db.new_session() as session, use_session(session):
            for i, delta in enumerate(reversed(deltas)):
                reason = LedgerReason.PURCHASE if delta > 0 else LedgerReason.CONSUMPTION
                await dao.append(session, user_id=USER, delta=delta, reason=reason, source_id=f"src-{i}")

        async with db.new_session() as session:
            assert await dao.sum_for_user(session, USER) == sum(deltas)
            assert await dao.sum_for_user(session, OTHER) == 0

    @pytest.mark.asyncio
    async def test_find_by_source_across_users(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=OTHER, delta=10, reason=LedgerReason.PURCHASE, source_id="pi_9")

        async with db.new_session() as session:
            found = await dao.find_by_source(session, source_id="pi_9", reason=LedgerReason.PURCHASE)
            missing = await dao.find_by_source(session, source_id="pi_9", reason=LedgerReason.REFUND)
            by_user = await dao.get_by_source(session, user_id=USER, source_id="pi_9")

        assert found is not None
        assert found.user_id == OTHER
        assert missing is None
        assert by_user is None


class TestHistory:
    @pytest.mark.asyncio
    async def test_cursor_pagination_newest_first(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            for i in range(5):
                await dao.append(session, user_id=USER, delta=i + 1, reason=LedgerReason.BONUS, source_id=f"b-{i}")
            await dao.append(session, user_id=OTHER, delta=1, reason=LedgerReason.BONUS, source_id="b-other")

        async with db.new_session() as session:
            first = await dao.entries_for_user(session, USER, limit=2)
            second = await dao.entries_for_user(session, USER, limit=2, cursor=first.next_cursor)
            third = await dao.entries_for_user(session, USER, limit=2, cursor=second.next_cursor)

        assert [e.delta for e in first.entries] == [5, 4]
        assert [e.delta for e in second.entries] == [3, 2]
        assert [e.delta for e in third.entries] == [1]
        assert third.next_cursor is None

    @pytest.mark.asyncio
    async def test_cursor_pagination_oldest_first(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            for i in range(3):
                await dao.append(session, user_id=USER, delta=i + 1, reason=LedgerReason.BONUS, source_id=f"b-{i}")

        async with db.new_session() as session:
            first = await dao.entries_for_user(session, USER, limit=2, order="asc")
            second = await dao.entries_for_user(session, USER, limit=2, cursor=first.next_cursor, order="asc")

        assert [e.delta for e in first.entries] == [1, 2]
        assert [e.delta for e in second.entries] == [3]
        assert second.next_cursor is None

    @pytest.mark.asyncio
    async def test_exact_page_has_no_next_cursor(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            for i in range(2):
                await dao.append(session, user_id=USER, delta=1, reason=LedgerReason.BONUS, source_id=f"b-{i}")

        async with db.new_session() as session:
            page = await dao.entries_for_user(session, USER, limit=2)
        assert len(page.entries) == 2
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_non_positive_limit_is_invalid(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session:
            with pytest.raises(AppException) as exc_info:
                await dao.entries_for_user(session, USER, limit=0)
        assert Errors.Generic.INVALID_INPUT.is_(exc_info.value)

    @pytest.mark.asyncio
    async def test_entries_in_range_bounds(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=USER, delta=1, reason=LedgerReason.BONUS, source_id="b-1")
            await dao.append(session, user_id=USER, delta=2, reason=LedgerReason.BONUS, source_id="b-2")

        now = get_now()
        async with db.new_session() as session:
            everything = await dao.entries_in_range(session, USER, limit=100)
            future = await dao.entries_in_range(session, USER, start=now + timedelta(minutes=1), limit=100)
            past = await dao.entries_in_range(session, USER, end=now - timedelta(hours=1), limit=100)
            capped = await dao.entries_in_range(session, USER, limit=1)

        assert [e.delta for e in everything] == [2, 1]
        assert future == []
        assert past == []
        assert [e.delta for e in capped] == [2]


class TestStats:
    @pytest.mark.asyncio
    async def test_totals_and_top_consumers(self, db: Db, dao: LedgerDAO) -> None:
        async with db.new_session() as session, use_session(session):
            await dao.append(session, user_id=USER, delta=10, reason=LedgerReason.PURCHASE, source_id="pi_1")
            await dao.append(session, user_id=USER, delta=-4, reason=LedgerReason.CONSUMPTION, source_id="job-1")
            await dao.append(session, user_id=OTHER, delta=5, reason=LedgerReason.BONUS, source_id="welcome")
            await dao.append(session, user_id=OTHER, delta=-1, reason=LedgerReason.CONSUMPTION, source_id="job-2")
            await dao.append(session, user_id=OTHER, delta=-4, reason=LedgerReason.EXPIRY, source_id="expiry:x")
            await dao.append(session, user_id=USER, delta=-2, reason=LedgerReason.REFUND, source_id="refund:ch_1")

        since = get_now() - timedelta(hours=24)
        async with db.new_session() as session:
            totals = await dao.totals(session)
            consumed = await dao.consumption_since(session, since)
            top = await dao.top_consumers(session, since, limit=10)

        assert totals.users == 2
        assert totals.granted == 15
        assert totals.consumed == 5
        assert totals.refunded == 2
        assert totals.expired == 4
        assert totals.outstanding == 4
        assert consumed == 5
        assert [(t.user_id, t.consumed) for t in top] == [(USER, 4), (OTHER, 1)]
