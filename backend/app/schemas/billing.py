"""Billing-related Pydantic schemas (Stripe)."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from common.ids import LedgerEntryId, PackId, StripeEventId, UserId
from common.utils.json_model import JsonModel


class ReconcileState(StrEnum):
    """Lifecycle of one payment event delivery."""

    RECEIVED = "received"
    VERIFIED = "verified"
    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"
    REVERSED = "reversed"
    IGNORED = "ignored"
    FAILED = "failed"


class StripeEventType(StrEnum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    CHARGE_REFUNDED = "charge.refunded"


class PaymentGrant(BaseModel):
    """A verified payment mapped to the credit it buys."""

    user_id: UserId
    source_id: str
    credits: int = Field(..., gt=0)
    pack_id: PackId | None = None


class PaymentReversal(BaseModel):
    """A refund that takes back credits granted for ``payment_source_id``."""

    charge_id: str
    payment_source_id: str
    amount: int | None = None
    amount_refunded: int | None = None

    def credits_to_reverse(self, granted: int) -> int:
        """Partial refunds take back the refunded share of the grant, rounded down."""
        if not self.amount or self.amount_refunded is None or self.amount_refunded >= self.amount:
            return granted
        return granted * max(self.amount_refunded, 0) // self.amount


class ReconcileResult(JsonModel):
    state: ReconcileState
    event_id: StripeEventId | None = None
    event_type: str | None = None
    user_id: UserId | None = None
    source_id: str | None = None
    credits: int = 0
    entry_id: LedgerEntryId | None = None


class WebhookResponse(JsonModel):
    """Response for Stripe webhook processing."""

    status: str = Field(..., description="Processing status")
    state: ReconcileState
