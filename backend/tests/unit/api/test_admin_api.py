"""Tests for the operator routes."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest
from httpx import AsyncClient

from app.service_container import Services
from common.ids import UserId
from common.utils.utils import get_now
from ledger_db.models.ledger import LedgerReason

ADJUST = "/api/v1/admin/credits/adjust"


@pytest.mark.asyncio
async def test_admin_routes_reject_regular_users(client: AsyncClient, user_headers: dict[str, str]) -> None:
    response = await client.post(ADJUST, json={"userId": "user-1", "delta": 5}, headers=user_headers)

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_positive_adjustment_grants(client: AsyncClient, services: Services, admin_headers: dict[str, str]) -> None:
    body = {"userId": "user-1", "delta": 5, "reason": "bonus", "sourceId": "support-42"}

    first = await client.post(ADJUST, json=body, headers=admin_headers)
    replay = await client.post(ADJUST, json=body, headers=admin_headers)

    assert first.status_code == 200
    assert first.json()["balance"] == 5
    assert first.json()["entry"]["reason"] == "bonus"
    assert first.json()["alreadyApplied"] is False
    assert replay.json()["alreadyApplied"] is True
    assert (await services.balance_projector.get_balance(UserId("user-1"))).balance == 5


@pytest.mark.asyncio
async def test_adjustment_with_pack_sets_expiry(client: AsyncClient, services: Services, admin_headers: dict[str, str]) -> None:
    response = await client.post(
        ADJUST, json={"userId": "user-1", "delta": 10, "reason": "bonus", "packId": "pack_10"}, headers=admin_headers
    )

    assert response.status_code == 200
    snapshot = await services.balance_projector.get_balance(UserId("user-1"))
    assert snapshot.credits_expires_at is not None
    assert snapshot.credits_expires_at > get_now() + timedelta(days=364)


@pytest.mark.asyncio
async def test_negative_adjustment_debits(client: AsyncClient, services: Services, admin_headers: dict[str, str]) -> None:
    await services.balance_projector.grant(UserId("user-1"), 5, LedgerReason.BONUS, source_id="welcome")

    debit = await client.post(ADJUST, json={"userId": "user-1", "delta": -3, "sourceId": "fix-1"}, headers=admin_headers)
    overdraw = await client.post(ADJUST, json={"userId": "user-1", "delta": -10}, headers=admin_headers)

    assert debit.status_code == 200
    assert debit.json()["entry"]["delta"] == -3
    assert debit.json()["entry"]["reason"] == "adjustment"
    assert debit.json()["balance"] == 2
    assert overdraw.status_code == 402


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"userId": "user-1", "delta": 0},
        {"userId": "user-1", "delta": -1, "reason": "bonus"},
        {"userId": "user-1", "delta": 5, "reason": "expiry"},
        {"userId": "user-1", "delta": 5, "reason": "bonus", "packId": "no-such-pack"},
    ],
)
async def test_invalid_adjustments(client: AsyncClient, admin_headers: dict[str, str], body: dict[str, Any]) -> None:
    response = await client.post(ADJUST, json=body, headers=admin_headers)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_reconcile_route_repairs_drift(
    client: AsyncClient, services: Services, admin_headers: dict[str, str], write_snapshot: Any
) -> None:
    await services.balance_projector.grant(UserId("user-1"), 10, LedgerReason.BONUS, source_id="welcome")
    await write_snapshot("user-1", balance=1)

    response = await client.post("/api/v1/admin/credits/user-1/reconcile", headers=admin_headers)

    assert response.status_code == 200
    assert response.json() == {"userId": "user-1", "previous": 1, "ledgerSum": 10, "drift": 9, "repaired": True}


@pytest.mark.asyncio
async def test_stats(client: AsyncClient, services: Services, admin_headers: dict[str, str]) -> None:
    projector = services.balance_projector
    await projector.grant(UserId("user-1"), 10, LedgerReason.PURCHASE, source_id="pi_1")
    await projector.grant(UserId("user-2"), 5, LedgerReason.BONUS, source_id="welcome")
    await projector.reserve_and_consume(UserId("user-1"), 4, source_id="job-1")
    await projector.reserve_and_consume(UserId("user-2"), 1, source_id="job-2")

    body = (await client.get("/api/v1/admin/credits/stats", headers=admin_headers)).json()

    assert body["totals"]["users"] == 2
    assert body["totals"]["granted"] == 15
    assert body["totals"]["consumed"] == 5
    assert body["totals"]["outstanding"] == 10
    assert body["consumedLast24h"] == 5
    assert body["topConsumers"] == [{"userId": "user-1", "consumed": 4}, {"userId": "user-2", "consumed": 1}]


@pytest.mark.asyncio
async def test_manual_sweep(client: AsyncClient, services: Services, admin_headers: dict[str, str], write_snapshot: Any) -> None:
    await services.balance_projector.grant(UserId("user-1"), 6, LedgerReason.BONUS, source_id="welcome")
    await write_snapshot("user-1", credits_expires_at=get_now() - timedelta(days=2))

    response = await client.post("/api/v1/admin/credits/sweep", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["examined"] == 1
    assert response.json()["expiredUsers"] == 1
    assert response.json()["creditsExpired"] == 6
    assert response.json()["skipped"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("config_overrides", [{"features.admin_api": False}])
async def test_disabled_admin_api_is_not_found(client: AsyncClient, admin_headers: dict[str, str]) -> None:
    response = await client.post("/api/v1/admin/credits/sweep", headers=admin_headers)

    assert response.status_code == 404
