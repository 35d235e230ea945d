"""Billing routes: the Stripe webhook that credits purchases."""

import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request

from app.dependencies import get_config_service, get_payment_reconciler, get_stripe_service, require_feature
from app.schemas.billing import WebhookResponse
from app.services.payment_reconciler import PaymentReconciler
from app.services.stripe_service import StripeService
from common.core.app_error import Errors
from common.core.config_service import ConfigService
from common.utils.utils import get_logger

router = APIRouter(prefix="/billing", dependencies=[Depends(require_feature("stripe_webhook"))])
logger = get_logger()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_service: Annotated[StripeService, Depends(get_stripe_service)],
    reconciler: Annotated[PaymentReconciler, Depends(get_payment_reconciler)],
    config: Annotated[ConfigService, Depends(get_config_service)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookResponse:
    """200 for credited, already credited, reversed and ignored events. Anything else is
    non-2xx so Stripe redelivers; redelivery is safe because crediting is keyed by payment id.
    """
    payload = await request.body()
    event = stripe_service.verify_event(payload, stripe_signature)
    logger.info("Stripe event received", event_id=event.get("id"), event_type=event.get("type"))

    timeout_seconds = config.credits.webhook_timeout_seconds
    try:
        async with asyncio.timeout(timeout_seconds):
            result = await reconciler.reconcile(event)
    except TimeoutError as e:
        logger.error("Stripe event processing timed out", event_id=event.get("id"), event_type=event.get("type"), timeout_seconds=timeout_seconds)
        raise Errors.Payments.TIMEOUT.create(details={"event_id": event.get("id")}, cause=e) from e

    return WebhookResponse(status="ok", state=result.state)
