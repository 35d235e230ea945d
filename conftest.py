"""Shared fixtures: a throwaway SQLite ledger per test and a Services container wired to it."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from common.core.config_service import ConfigService
from common.db.db import Db, DBConfig
from common.db.db_utils import use_session
from common.ids import UserId
from ledger_db.crud.balance import BalanceSnapshotDAO
from ledger_db.db.init_db import create_tables

# Read when ConfigService is built; keeps AWS Secrets Manager out of test runs
os.environ["APP_ENV"] = "test"

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_JWT_SECRET = "test-jwt-secret-with-enough-length"
TEST_INTERNAL_TOKEN = "internal-test-token"

TEST_CONFIG: dict[str, Any] = {
    "stripe.webhook_secret": TEST_WEBHOOK_SECRET,
    "auth.jwt_secret": TEST_JWT_SECRET,
    "auth.internal_api_token": TEST_INTERNAL_TOKEN,
    "credits.cache_ttl_seconds": 0,
    "sweeper.enabled": False,
    "STRIPE_PRICE_SINGLE": "price_single",
    "STRIPE_PRICE_PACK_5": "price_pack_5",
    "STRIPE_PRICE_PACK_10": "price_pack_10",
    "STRIPE_PRICE_PACK_20": "price_pack_20",
}

SnapshotWriter = Callable[..., Awaitable[None]]


@pytest.fixture
def config_overrides() -> dict[str, Any]:
    """Override in a test module to tweak the config the container is built with."""
    return {}


@pytest.fixture
def config_service(config_overrides: dict[str, Any]) -> ConfigService:
    return ConfigService(overrides={**TEST_CONFIG, **config_overrides})


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[Db]:
    database = Db(DBConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"))
    await database.start()
    await create_tables(database)
    yield database
    await database.stop()


@pytest_asyncio.fixture
async def services(db: Db, config_service: ConfigService) -> AsyncGenerator[Any]:
    # Imported here so the library tests never need the app package
    from app.service_container import Services

    container = Services(config_service=config_service, db=db)
    yield container
    await container.expiry_worker.stop()


@pytest.fixture
def write_snapshot(db: Db) -> SnapshotWriter:
    """Writes snapshot columns directly, e.g. to move an expiry into the past."""
    dao = BalanceSnapshotDAO()

    async def _write(user_id: str, **values: Any) -> None:
        async with db.new_session() as session:
            async with use_session(session):
                await dao.ensure_row(session, UserId(user_id))
                await dao.update(session, UserId(user_id), **values)

    return _write
