"""Unit tests for Stripe webhook verification."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any

import pytest

from app.services.stripe_service import StripeService
from common.core.app_error import AppException, Errors
from common.core.config_service import ConfigService
from common.utils.msgspec import encode_json

EVENT: dict[str, Any] = {"id": "evt_1", "object": "event", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}


def _signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def stripe_service(config_service: ConfigService) -> StripeService:
    return StripeService(config_service)


def test_valid_signature_returns_the_event(stripe_service: StripeService) -> None:
    payload = encode_json(EVENT)

    event = stripe_service.verify_event(payload, _signature(payload, stripe_service.webhook_secret))

    assert event == EVENT


@pytest.mark.parametrize(
    "signature",
    [
        None,
        "",
        "t=1,v1=deadbeef",
        _signature(encode_json(EVENT), "whsec_wrong"),
        _signature(encode_json(EVENT), "whsec_test_secret", timestamp=int(time.time()) - 3600),
    ],
)
def test_bad_signatures_are_invalid_events(stripe_service: StripeService, signature: str | None) -> None:
    with pytest.raises(AppException) as exc_info:
        stripe_service.verify_event(encode_json(EVENT), signature)
    assert Errors.Payments.INVALID_EVENT.is_(exc_info.value)


@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"id": "evt_1"}', b'{"type": "charge.refunded"}'])
def test_signed_payloads_that_are_not_events(stripe_service: StripeService, payload: bytes) -> None:
    with pytest.raises(AppException) as exc_info:
        stripe_service.verify_event(payload, _signature(payload, stripe_service.webhook_secret))
    assert Errors.Payments.INVALID_EVENT.is_(exc_info.value)


@pytest.mark.parametrize("config_overrides", [{"stripe.webhook_secret": ""}])
def test_missing_secret_is_not_configured(stripe_service: StripeService) -> None:
    payload = encode_json(EVENT)

    with pytest.raises(AppException) as exc_info:
        stripe_service.verify_event(payload, _signature(payload, "whsec_test_secret"))
    assert Errors.Payments.NOT_CONFIGURED.is_(exc_info.value)
    assert exc_info.value.http_status == 503
