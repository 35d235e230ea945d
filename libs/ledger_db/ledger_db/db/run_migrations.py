import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

from common.db.db import to_sync_url
from common.utils.utils import get_logger

logger = get_logger(__name__)

# libs/ledger_db/alembic.ini
ALEMBIC_INI = Path(__file__).resolve().parent.parent.parent / "alembic.ini"


def run_migrations(database_url: str | None = None, revision: str = "head") -> bool:
    """Upgrades the schema with Alembic.
    Without ``database_url`` alembic/env.py resolves the URL through ConfigService.
    """
    try:
        logger.info("Starting database migrations", operation="run_migrations", revision=revision)

        alembic_cfg = Config(str(ALEMBIC_INI))
        if database_url:
            alembic_cfg.set_main_option("sqlalchemy.url", to_sync_url(database_url))
        # Keep Alembic from replacing the structured logging config
        alembic_cfg.attributes["configure_logger"] = False
        command.upgrade(alembic_cfg, revision)

        logger.info("Database migrations completed successfully", operation="run_migrations", status="success")
        return True
    except Exception as e:
        logger.exception("Migration failed", operation="run_migrations", status="failed", error=str(e))
        return False


if __name__ == "__main__":
    success = run_migrations()
    sys.exit(0 if success else 1)
