from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, override

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from common.core.lifecycle import Lifecycle
from common.utils import JsonSnakeCaseModel, decode_json, encode_json_str, get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.engine import URL

logger = get_logger()


def to_async_url(url: str) -> str:
    """Rewrites plain driver URLs to their async driver equivalents."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def to_sync_url(url: str) -> str:
    """The inverse of ``to_async_url``; alembic runs on sync drivers."""
    return url.replace("postgresql+asyncpg://", "postgresql://", 1).replace("sqlite+aiosqlite://", "sqlite://", 1)


class DBConfig(JsonSnakeCaseModel):
    url: str
    pool_size: int = 10
    pool_max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 300
    pool_pre_ping: bool = True
    pool_use_lifo: bool = True
    pool_disabled: bool = False
    echo: bool = False

    @property
    def async_url(self) -> URL:
        return make_url(to_async_url(self.url))

    @property
    def is_sqlite(self) -> bool:
        return self.async_url.get_backend_name() == "sqlite"

    @property
    def db_name(self) -> str:
        return self.async_url.database or ""


class Db(Lifecycle):
    """Owns the async engine; sessions are handed out per unit of work."""

    _config: DBConfig
    engine: AsyncEngine

    def __init__(self, config: DBConfig) -> None:
        super().__init__()
        self._config = config

        if config.is_sqlite:
            self.engine = create_async_engine(
                url=config.async_url,
                json_serializer=encode_json_str,
                json_deserializer=decode_json,
                echo=config.echo,
                pool_pre_ping=config.pool_pre_ping,
                connect_args={"timeout": config.pool_timeout},
            )

            @event.listens_for(self.engine.sync_engine, "connect")
            def _sqla_on_connect(dbapi_connection: Any, _: Any) -> Any:  # type: ignore
                """Disables pysqlite's own BEGIN handling so the one below is used."""
                dbapi_connection.isolation_level = None

            @event.listens_for(self.engine.sync_engine, "begin")
            def _sqla_on_begin(conn: Any) -> Any:  # type: ignore
                """Takes the write lock up front; writers serialize and savepoints work."""
                conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            pool_kwargs: dict[str, Any] = (
                {"poolclass": NullPool}
                if config.pool_disabled
                else {
                    "max_overflow": config.pool_max_overflow,
                    "pool_size": config.pool_size,
                    "pool_timeout": config.pool_timeout,
                    "pool_recycle": config.pool_recycle,
                    # lifo keeps the number of idle connections low
                    "pool_use_lifo": config.pool_use_lifo,
                }
            )
            self.engine = create_async_engine(
                url=config.async_url,
                json_serializer=encode_json_str,
                json_deserializer=decode_json,
                echo=config.echo,
                pool_pre_ping=config.pool_pre_ping,
                **pool_kwargs,
            )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    @override
    def _name_for_log(self) -> str:
        return f"Db[{self._config.db_name}]"

    @override
    async def _start(self) -> None:
        pass

    @override
    async def _stop(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def new_session(self) -> AsyncGenerator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False, autoflush=False) as session:
            yield session
