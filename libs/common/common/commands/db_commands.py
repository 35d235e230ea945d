import asyncio

import typer

from common.core.config_service import ConfigService
from common.db.db import Db, DBConfig
from common.logging.setup_logging import setup_logging
from common.utils.utils import get_logger
from ledger_db.db.init_db import init_db
from ledger_db.db.run_migrations import run_migrations

logger = get_logger(__name__)

app = typer.Typer(help="Credit ledger database commands")


async def _init(database_url: str) -> bool:
    db = Db(DBConfig(url=database_url, pool_disabled=True))
    await db.start()
    try:
        return await init_db(db, database_url)
    finally:
        await db.stop()


@app.callback()
def main(log_level: str = typer.Option("INFO", help="Root log level")) -> None:
    setup_logging(level=log_level)


@app.command()
def init() -> None:
    """Create the ledger tables (SQLite) or migrate them to head (PostgreSQL)."""
    logger.info("Initializing database...")
    if not asyncio.run(_init(ConfigService().get_database_url())):
        logger.error("Database initialization failed!")
        raise typer.Exit(code=1)
    logger.info("Database initialized successfully!")


@app.command()
def migrate(revision: str = typer.Argument("head", help="Target revision")) -> None:
    """Run database migrations using Alembic."""
    logger.info("Running database migrations...", revision=revision)
    if not run_migrations(ConfigService().get_database_url(), revision=revision):
        logger.error("Database migrations failed!")
        raise typer.Exit(code=1)
    logger.info("Database migrations completed successfully!")


if __name__ == "__main__":
    app()
