"""Operator CLI for the credit ledger."""

import asyncio
from collections.abc import Awaitable, Callable

import typer

from app.schemas.credits import BalanceResponse
from app.service_container import Services
from common.core.request_context import RequestContext
from common.logging.setup_logging import setup_logging
from common.utils.msgspec import encode_json_str
from common.utils.utils import get_logger
from ledger_db.db.init_db import init_db

logger = get_logger(__name__)

app = typer.Typer(help="Credit ledger operations")


async def _with_services[T](action: Callable[[Services], Awaitable[T]]) -> T:
    services = Services()
    await services.db.start()
    try:
        if not await init_db(services.db, services.config_service.get_database_url()):
            raise RuntimeError("Failed to initialize database")
        with RequestContext.context(trigger="cli"):
            return await action(services)
    finally:
        await services.db.stop()


@app.callback()
def main(log_level: str = typer.Option("INFO", help="Root log level")) -> None:
    setup_logging(level=log_level)


@app.command()
def sweep() -> None:
    """Run one expiry sweep."""
    result = asyncio.run(_with_services(lambda services: services.expiry_sweeper.sweep()))
    typer.echo(result.to_json(pretty=True))
    if result.failed_users:
        raise typer.Exit(code=1)


@app.command()
def reconcile(
    user_id: str | None = typer.Argument(None, help="User to reconcile"),
    all_users: bool = typer.Option(False, "--all", help="Reconcile every user holding credits"),
) -> None:
    """Recompute balance snapshots from the ledger and repair drift."""
    if not user_id and not all_users:
        raise typer.BadParameter("Pass a USER_ID or --all")

    async def _reconcile(services: Services) -> list[str]:
        if user_id:
            user_ids = [user_id]
        else:
            async with services.db.new_session() as db:
                user_ids = list(await services.snapshot_dao.users_with_balance(db))
        reports: list[str] = []
        for uid in user_ids:
            report = await services.balance_projector.reconcile(uid)  # type: ignore[arg-type]
            reports.append(report.to_json())
        return reports

    for line in asyncio.run(_with_services(_reconcile)):
        typer.echo(line)


@app.command()
def balance(user_id: str = typer.Argument(..., help="User to inspect")) -> None:
    """Print a user's balance."""
    snapshot = asyncio.run(_with_services(lambda services: services.balance_projector.get_balance(user_id)))  # type: ignore[arg-type]
    typer.echo(encode_json_str(BalanceResponse.from_snapshot(snapshot)))


if __name__ == "__main__":
    app()
