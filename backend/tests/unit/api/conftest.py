"""HTTP fixtures: the FastAPI app bound to the per-test Services container."""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.dependencies import get_services
from app.main import create_app
from app.service_container import Services
from common.core.config_service import ConfigService
from common.core.jwt_utils import create_access_token
from common.utils.msgspec import encode_json

Signer = Callable[..., tuple[bytes, dict[str, str]]]


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient]:
    app = create_app(use_lifespan=False)
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers(config_service: ConfigService) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(config_service.auth, 'user-1', email='user@example.com')}"}


@pytest.fixture
def admin_headers(config_service: ConfigService) -> dict[str, str]:
    token = create_access_token(config_service.auth, "admin-1", role=config_service.auth.admin_role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def internal_headers(config_service: ConfigService) -> dict[str, str]:
    return {"X-Internal-Token": config_service.auth.internal_api_token}


@pytest.fixture
def sign_event(config_service: ConfigService) -> Signer:
    """Builds a body and ``Stripe-Signature`` header the way Stripe signs webhooks."""

    def _sign(event: dict[str, Any] | bytes, *, secret: str | None = None, timestamp: int | None = None) -> tuple[bytes, dict[str, str]]:
        payload = event if isinstance(event, bytes) else encode_json(event)
        ts = int(time.time()) if timestamp is None else timestamp
        key = (secret or config_service.stripe.webhook_secret).encode()
        signature = hmac.new(key, f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return payload, {"Stripe-Signature": f"t={ts},v1={signature}", "Content-Type": "application/json"}

    return _sign
