import asyncio

from sqlalchemy.exc import SQLAlchemyError

from common.db.db import Db
from common.utils.utils import get_logger
from ledger_db.db import Base
from ledger_db.db.run_migrations import run_migrations

# Registers the tables on Base.metadata
from ledger_db.models import ledger  # noqa: F401  # pyright: ignore[reportUnusedImport]

logger = get_logger()


async def create_tables(db: Db) -> None:
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(db: Db, database_url: str) -> bool:
    """Brings the schema up to date.
    SQLite (tests, local dev) gets ``create_all``; everything else runs the Alembic migrations.
    """
    try:
        if db.dialect_name == "sqlite":
            logger.info("Using SQLite - creating tables with create_all()", operation="create_sqlite_tables")
            await create_tables(db)
            logger.info("SQLite database tables created successfully", operation="create_sqlite_tables", status="success")
            return True

        logger.info("Running database migrations", operation="run_migrations")
        # Alembic drives a sync engine, keep it off the event loop
        return await asyncio.to_thread(run_migrations, database_url)
    except SQLAlchemyError as e:
        logger.exception("Error during database initialization", operation="init_db", status="error", error=str(e))
        return False
