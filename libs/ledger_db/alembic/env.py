import os
from logging.config import fileConfig
from typing import Any, Literal

from alembic import context
from alembic.autogenerate.api import AutogenContext
from sqlalchemy import TypeDecorator, engine_from_config, pool

from common.core.config_service import ConfigService
from common.db.db import to_sync_url
from common.logging.setup_logging import setup_logging
from ledger_db.db import Base

# Registers the ledger tables on Base.metadata for autogenerate
from ledger_db.models import ledger  # type: ignore # noqa: F401

config = context.config
target_metadata = Base.metadata

if os.getenv("ALEMBIC_USE_DEFAULT_LOGGING", "false").lower() in {"true", "1", "t", "yes"}:
    if config.config_file_name is not None:
        fileConfig(config.config_file_name)
elif config.attributes.get("configure_logger", True):
    setup_logging()

# run_migrations passes the URL explicitly; the CLI and bare `alembic upgrade` fall back to ConfigService
if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", to_sync_url(ConfigService().get_database_url()))


def render_item(type_: str, obj: Any, autogen_context: AutogenContext) -> str | Literal[False]:
    """Autogenerate writes DateTimeUTC columns as the plain DateTime they wrap."""
    if type_ == "type" and isinstance(obj, TypeDecorator):
        return f"sa.{obj.impl!r}"
    return False


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_item=render_item,
            # SQLite cannot ALTER constraints in place
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    raise RuntimeError("Offline migrations are not supported; run against a database")

run_migrations_online()
