"""Tests for the Stripe webhook route: signature checks and HTTP status mapping."""

from __future__ import annotations

import asyncio
import time
from typing import Any
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from app.schemas.billing import ReconcileResult, ReconcileState
from app.service_container import Services
from app.services.payment_reconciler import PaymentReconciler
from common.core.app_error import Errors
from common.ids import UserId

WEBHOOK = "/api/v1/billing/webhook"


def _checkout_event(event_id: str = "evt_1", **session: Any) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": "cs_1",
        "object": "checkout.session",
        "payment_status": "paid",
        "client_reference_id": "user-1",
        "payment_intent": "pi_123",
        "metadata": {"pack_id": "pack_10"},
    }
    obj.update(session)
    return {"id": event_id, "object": "event", "type": "checkout.session.completed", "data": {"object": obj}}


@pytest.mark.asyncio
async def test_signed_checkout_is_credited_once(client: AsyncClient, services: Services, sign_event: Any) -> None:
    body, headers = sign_event(_checkout_event())

    first = await client.post(WEBHOOK, content=body, headers=headers)
    second = await client.post(WEBHOOK, content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"status": "ok", "state": "credited"}
    assert second.status_code == 200
    assert second.json() == {"status": "ok", "state": "already_credited"}
    assert (await services.balance_projector.get_balance(UserId("user-1"))).balance == 10


@pytest.mark.asyncio
async def test_refund_event_reverses(client: AsyncClient, sign_event: Any) -> None:
    body, headers = sign_event(_checkout_event())
    await client.post(WEBHOOK, content=body, headers=headers)
    refund = {
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "payment_intent": "pi_123", "amount": 1000, "amount_refunded": 1000}},
    }
    body, headers = sign_event(refund)

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["state"] == "reversed"


@pytest.mark.asyncio
async def test_unrelated_event_is_acknowledged(client: AsyncClient, sign_event: Any) -> None:
    body, headers = sign_event({"id": "evt_3", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["state"] == "ignored"


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client: AsyncClient, services: Services, sign_event: Any) -> None:
    body, _ = sign_event(_checkout_event())

    response = await client.post(WEBHOOK, content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_event"
    assert (await services.balance_projector.get_balance(UserId("user-1"))).balance == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "signing",
    [
        {"secret": "whsec_someone_else"},
        {"timestamp": int(time.time()) - 3600},
    ],
)
async def test_bad_or_stale_signature_is_rejected(client: AsyncClient, services: Services, sign_event: Any, signing: dict[str, Any]) -> None:
    body, headers = sign_event(_checkout_event(), **signing)

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["scope"] == "payments"
    assert response.json()["code"] == "invalid_event"
    assert (await services.balance_projector.get_balance(UserId("user-1"))).balance == 0


@pytest.mark.asyncio
async def test_tampered_body_is_rejected(client: AsyncClient, sign_event: Any) -> None:
    body, headers = sign_event(_checkout_event())

    response = await client.post(WEBHOOK, content=body.replace(b"pack_10", b"pack_50"), headers=headers)

    assert response.status_code == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [b"not json at all", b"[1, 2, 3]", b'{"id": "evt_1"}'])
async def test_signed_garbage_is_rejected(client: AsyncClient, sign_event: Any, payload: bytes) -> None:
    body, headers = sign_event(payload)

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_event"


@pytest.mark.asyncio
async def test_unmappable_payment_is_rejected(client: AsyncClient, sign_event: Any) -> None:
    body, headers = sign_event(_checkout_event(client_reference_id=None))

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_event"


@pytest.mark.asyncio
async def test_reconcile_failure_is_a_server_error(client: AsyncClient, services: Services, sign_event: Any) -> None:
    reconciler = AsyncMock(spec=PaymentReconciler)
    reconciler.reconcile.side_effect = Errors.Payments.RECONCILE_FAILED.create(details={"event_id": "evt_1"})
    services.payment_reconciler = reconciler
    body, headers = sign_event(_checkout_event())

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 500
    assert response.json()["code"] == "reconcile_failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("config_overrides", [{"credits.webhook_timeout_seconds": 0.05}])
async def test_slow_processing_times_out_with_503(client: AsyncClient, services: Services, sign_event: Any) -> None:
    async def _slow(_event: dict[str, Any]) -> ReconcileResult:
        await asyncio.sleep(5)
        return ReconcileResult(state=ReconcileState.CREDITED)

    reconciler = AsyncMock(spec=PaymentReconciler)
    reconciler.reconcile.side_effect = _slow
    services.payment_reconciler = reconciler
    body, headers = sign_event(_checkout_event())

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 503
    assert response.json()["code"] == "timeout"


@pytest.mark.asyncio
@pytest.mark.parametrize("config_overrides", [{"stripe.webhook_secret": ""}])
async def test_missing_secret_is_unavailable(client: AsyncClient, sign_event: Any) -> None:
    body, headers = sign_event(_checkout_event(), secret="whsec_anything")

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 503
    assert response.json()["code"] == "not_configured"


@pytest.mark.asyncio
@pytest.mark.parametrize("config_overrides", [{"features.stripe_webhook": False}])
async def test_disabled_webhook_is_not_found(client: AsyncClient, sign_event: Any) -> None:
    body, headers = sign_event(_checkout_event())

    response = await client.post(WEBHOOK, content=body, headers=headers)

    assert response.status_code == 404
    assert response.json()["code"] == "feature_disabled"
