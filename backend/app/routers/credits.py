"""Credit balance and history routes for the signed-in user."""

import csv
import io
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_balance_projector, get_config_service, get_current_user, get_db, get_ledger_dao, get_pack_catalog, require_feature
from app.schemas.credits import (
    BalanceResponse,
    CheckCreditsRequest,
    CheckCreditsResponse,
    LedgerEntryResponse,
    ListPacksResponse,
    TransactionsResponse,
)
from app.services.balance_projector import BalanceProjector
from app.services.pack_catalog import PackCatalog
from common.core.app_error import Errors
from common.core.config_service import ConfigService
from common.core.jwt_utils import TokenData
from common.db.db_utils import storage_errors
from common.ids import LedgerEntryId
from common.utils.utils import ensure_utc, get_logger
from ledger_db.crud.ledger import LedgerDAO

router = APIRouter(prefix="/credits", dependencies=[Depends(require_feature("credits_api"))])
logger = get_logger()


@router.get("/balance")
async def get_balance(
    user: Annotated[TokenData, Depends(get_current_user)],
    projector: Annotated[BalanceProjector, Depends(get_balance_projector)],
) -> BalanceResponse:
    snapshot = await projector.get_balance(user.user_id)
    return BalanceResponse.from_snapshot(snapshot)


@router.get("/transactions")
async def list_transactions(
    user: Annotated[TokenData, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger_dao: Annotated[LedgerDAO, Depends(get_ledger_dao)],
    config: Annotated[ConfigService, Depends(get_config_service)],
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
    cursor: Annotated[int | None, Query(ge=1)] = None,
    order: Literal["asc", "desc"] = "desc",
) -> TransactionsResponse:
    with storage_errors(user_id=user.user_id):
        page = await ledger_dao.entries_for_user(
            db,
            user.user_id,
            limit=limit or config.credits.history_page_limit,
            cursor=LedgerEntryId(cursor) if cursor is not None else None,
            order=order,
        )
    return TransactionsResponse(entries=[LedgerEntryResponse.from_entry(e) for e in page.entries], next_cursor=page.next_cursor)


@router.get("/ledger.csv")
async def export_ledger_csv(
    user: Annotated[TokenData, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger_dao: Annotated[LedgerDAO, Depends(get_ledger_dao)],
    config: Annotated[ConfigService, Depends(get_config_service)],
    start: Annotated[datetime | None, Query(alias="from")] = None,
    end: Annotated[datetime | None, Query(alias="to")] = None,
) -> Response:
    """The caller's ledger as CSV, newest first."""
    start = ensure_utc(start) if start else None
    end = ensure_utc(end) if end else None
    if start and end and start >= end:
        raise Errors.Generic.INVALID_INPUT.create("'from' must be before 'to'")

    with storage_errors(user_id=user.user_id):
        entries = await ledger_dao.entries_in_range(db, user.user_id, start=start, end=end, limit=config.credits.export_row_limit)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["date", "delta", "reason", "source_id"])
    for entry in entries:
        writer.writerow([ensure_utc(entry.created_at).isoformat(), entry.delta, entry.reason.value, entry.source_id or ""])

    logger.info("Ledger exported", user_id=user.user_id, rows=len(entries))
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="credit-ledger.csv"'},
    )


@router.post("/check")
async def check_credits(
    req: CheckCreditsRequest,
    user: Annotated[TokenData, Depends(get_current_user)],
    projector: Annotated[BalanceProjector, Depends(get_balance_projector)],
) -> CheckCreditsResponse:
    """Pre-flight check before the client starts paid work."""
    snapshot = await projector.get_balance(user.user_id)
    if snapshot.spendable < req.count:
        raise Errors.Credits.INSUFFICIENT_BALANCE.create(
            details={"requested": req.count, "balance": snapshot.spendable, "expired": snapshot.expired},
        )
    return CheckCreditsResponse(balance=snapshot.spendable)


@router.get("/packs")
async def list_packs(
    _user: Annotated[TokenData, Depends(get_current_user)],
    packs: Annotated[PackCatalog, Depends(get_pack_catalog)],
) -> ListPacksResponse:
    return ListPacksResponse(packs=packs.list())
