"""Service-to-service routes. The order pipeline spends credits here when paid work is performed."""

from typing import Annotated

from fastapi import APIRouter, Depends

from app.dependencies import get_balance_projector, require_feature, require_internal_token
from app.schemas.credits import ConsumeCreditsRequest, ConsumeCreditsResponse, ConsumeFailureReason, LedgerEntryResponse
from app.services.balance_projector import BalanceProjector
from common.core.app_error import Errors
from common.core.request_context import RequestContext
from common.utils.utils import get_logger

router = APIRouter(dependencies=[Depends(require_feature("credits_api")), Depends(require_internal_token)])
logger = get_logger()


@router.post("/credits/consume")
async def consume_credits(
    req: ConsumeCreditsRequest,
    projector: Annotated[BalanceProjector, Depends(get_balance_projector)],
) -> ConsumeCreditsResponse:
    request_context = RequestContext.get_or_none()
    if request_context is not None:
        request_context.user_id = req.user_id

    result = await projector.reserve_and_consume(req.user_id, req.amount, req.reason, req.source_id)
    if not result.successful or result.entry is None:
        raise Errors.Credits.INSUFFICIENT_BALANCE.create(
            "Credits have expired" if result.failure_reason == ConsumeFailureReason.CREDITS_EXPIRED else None,
            details={"user_id": req.user_id, "requested": req.amount, "balance": result.balance, "reason": result.failure_reason},
        )
    return ConsumeCreditsResponse(entry=LedgerEntryResponse.from_entry(result.entry), balance=result.balance, replayed=result.replayed)
