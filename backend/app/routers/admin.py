"""Operator routes: manual adjustments, reconciliation, stats and on-demand sweeps."""

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_admin_user, get_balance_projector, get_db, get_expiry_sweeper, get_ledger_dao, require_feature
from app.schemas.credits import (
    AdjustCreditsRequest,
    AdjustCreditsResponse,
    CreditStatsResponse,
    LedgerEntryResponse,
    ReconcileReport,
    SweepResult,
)
from app.services.balance_projector import BalanceProjector
from app.services.expiry_sweeper import ExpirySweeper
from common.core.app_error import Errors
from common.core.jwt_utils import TokenData
from common.db.db_utils import storage_errors
from common.ids import UserId
from common.utils.utils import get_logger, get_now
from ledger_db.crud.ledger import LedgerDAO
from ledger_db.models.ledger import LedgerReason

router = APIRouter(prefix="/credits", dependencies=[Depends(require_feature("admin_api"))])
logger = get_logger()


@router.post("/adjust")
async def adjust_credits(
    req: AdjustCreditsRequest,
    admin: Annotated[TokenData, Depends(get_admin_user)],
    projector: Annotated[BalanceProjector, Depends(get_balance_projector)],
) -> AdjustCreditsResponse:
    """Positive deltas grant (bonus or adjustment); negative deltas debit through the spend path."""
    logger.info("Manual credit adjustment", admin_id=admin.user_id, user_id=req.user_id, delta=req.delta, reason=req.reason, source_id=req.source_id)

    if req.delta > 0:
        granted = await projector.grant(req.user_id, req.delta, req.reason, source_id=req.source_id, pack_id=req.pack_id)
        return AdjustCreditsResponse(
            entry=LedgerEntryResponse.from_entry(granted.entry) if granted.entry else None,
            balance=granted.balance,
            already_applied=granted.already_applied,
        )
    if req.delta < 0:
        if req.reason != LedgerReason.ADJUSTMENT:
            raise Errors.Ledger.INVALID_ENTRY.create("Debits must use the 'adjustment' reason", details={"reason": req.reason})
        consumed = await projector.reserve_and_consume(req.user_id, -req.delta, LedgerReason.ADJUSTMENT, req.source_id)
        if not consumed.successful or consumed.entry is None:
            raise Errors.Credits.INSUFFICIENT_BALANCE.create(details={"user_id": req.user_id, "requested": -req.delta, "balance": consumed.balance})
        return AdjustCreditsResponse(entry=LedgerEntryResponse.from_entry(consumed.entry), balance=consumed.balance, already_applied=consumed.replayed)
    raise Errors.Ledger.INVALID_ENTRY.create("delta must be non-zero")


@router.post("/{user_id}/reconcile")
async def reconcile_user(
    user_id: str,
    _admin: Annotated[TokenData, Depends(get_admin_user)],
    projector: Annotated[BalanceProjector, Depends(get_balance_projector)],
) -> ReconcileReport:
    return await projector.reconcile(UserId(user_id))


@router.get("/stats")
async def credit_stats(
    _admin: Annotated[TokenData, Depends(get_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    ledger_dao: Annotated[LedgerDAO, Depends(get_ledger_dao)],
) -> CreditStatsResponse:
    since = get_now() - timedelta(hours=24)
    with storage_errors(operation="credit_stats"):
        totals = await ledger_dao.totals(db)
        consumed = await ledger_dao.consumption_since(db, since)
        top = await ledger_dao.top_consumers(db, since, limit=10)
    return CreditStatsResponse(totals=totals, consumed_last_24h=consumed, top_consumers=top)


@router.post("/sweep")
async def run_sweep(
    admin: Annotated[TokenData, Depends(get_admin_user)],
    sweeper: Annotated[ExpirySweeper, Depends(get_expiry_sweeper)],
) -> SweepResult:
    logger.info("Manual expiry sweep requested", admin_id=admin.user_id)
    return await sweeper.sweep()
