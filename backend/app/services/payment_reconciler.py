"""Payment event reconciler.
Maps verified Stripe events to ledger grants and reversals. Crediting is exactly once per payment:
the payment id is the ledger ``source_id``, so a redelivered event finds its grant and stops.
"""

from __future__ import annotations

from typing import Any

from app.schemas.billing import PaymentGrant, PaymentReversal, ReconcileResult, ReconcileState, StripeEventType
from app.services.balance_projector import BalanceProjector
from app.services.pack_catalog import PackCatalog
from common.core.app_error import AppException, Errors
from common.core.request_context import RequestContext
from common.db.db import Db
from common.ids import StripeEventId, UserId
from common.utils.utils import get_logger, is_dict, is_list
from ledger_db.crud.ledger import LedgerDAO
from ledger_db.models.ledger import LedgerReason

logger = get_logger()


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    # Expanded objects carry their id
    if is_dict(value):
        value = value.get("id")
    text = str(value).strip() if value is not None else ""
    return text or None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if is_dict(metadata) else {}


class PaymentEventMapper:
    """Turns raw Stripe event payloads into ``PaymentGrant`` / ``PaymentReversal`` values."""

    def __init__(self, packs: PackCatalog) -> None:
        self._packs = packs

    def map(self, event: dict[str, Any]) -> PaymentGrant | PaymentReversal | None:
        """None means the event is not one the ledger reacts to."""
        event_type = str(event.get("type", ""))
        data = event.get("data")
        obj = data.get("object") if is_dict(data) else None
        if not is_dict(obj):
            if event_type in set(StripeEventType):
                raise Errors.Payments.INVALID_EVENT.create("Event has no data object", details={"event_type": event_type})
            return None

        match event_type:
            case StripeEventType.CHECKOUT_SESSION_COMPLETED:
                return self._map_checkout_session(obj)
            case StripeEventType.PAYMENT_INTENT_SUCCEEDED:
                return self._map_payment_intent(obj)
            case StripeEventType.INVOICE_PAYMENT_SUCCEEDED:
                return self._map_invoice(obj)
            case StripeEventType.CHARGE_REFUNDED:
                return self._map_refund(obj)
            case _:
                return None

    def _map_checkout_session(self, session: dict[str, Any]) -> PaymentGrant | None:
        if session.get("payment_status") != "paid":
            # Async payment methods complete later via payment_intent.succeeded
            return None
        metadata = _metadata(session)
        user_id = _str_or_none(session.get("client_reference_id")) or _str_or_none(metadata.get("user_id"))
        source_id = _str_or_none(session.get("payment_intent")) or _str_or_none(session.get("id"))
        credits, pack_id = self._credits_from_metadata(metadata)
        return self._grant(user_id, source_id, credits, pack_id)

    def _map_payment_intent(self, intent: dict[str, Any]) -> PaymentGrant:
        metadata = _metadata(intent)
        credits, pack_id = self._credits_from_metadata(metadata)
        return self._grant(_str_or_none(metadata.get("user_id")), _str_or_none(intent.get("id")), credits, pack_id)

    def _map_invoice(self, invoice: dict[str, Any]) -> PaymentGrant:
        metadata = _metadata(invoice)
        user_id = _str_or_none(metadata.get("user_id"))
        if user_id is None:
            details = invoice.get("subscription_details")
            if is_dict(details):
                user_id = _str_or_none(_metadata(details).get("user_id"))

        credits = 0
        pack_id: str | None = None
        lines = invoice.get("lines")
        line_items = lines.get("data") if is_dict(lines) else None
        for line in line_items if is_list(line_items) else []:
            if not is_dict(line):
                continue
            price = line.get("price")
            pack = self._packs.by_price_id(_str_or_none(price))
            if pack is None:
                continue
            credits += pack.credits * (_int_or_none(line.get("quantity")) or 1)
            pack_id = pack_id or pack.id

        source_id = _str_or_none(invoice.get("payment_intent")) or _str_or_none(invoice.get("id"))
        return self._grant(user_id, source_id, credits, pack_id)

    def _map_refund(self, charge: dict[str, Any]) -> PaymentReversal:
        charge_id = _str_or_none(charge.get("id"))
        payment_source_id = _str_or_none(charge.get("payment_intent")) or charge_id
        if charge_id is None or payment_source_id is None:
            raise Errors.Payments.INVALID_EVENT.create("Refunded charge has no id")
        return PaymentReversal(
            charge_id=charge_id,
            payment_source_id=payment_source_id,
            amount=_int_or_none(charge.get("amount")),
            amount_refunded=_int_or_none(charge.get("amount_refunded")),
        )

    def _credits_from_metadata(self, metadata: dict[str, Any]) -> tuple[int, str | None]:
        quantity = _int_or_none(metadata.get("quantity")) or 1
        pack = self._packs.find(_str_or_none(metadata.get("pack_id"))) or self._packs.by_price_id(_str_or_none(metadata.get("price_id")))

        explicit = _int_or_none(metadata.get("credits"))
        if explicit is not None:
            return explicit, pack.id if pack else None
        if pack is not None:
            return pack.credits * quantity, pack.id
        return 0, None

    @staticmethod
    def _grant(user_id: str | None, source_id: str | None, credits: int, pack_id: str | None) -> PaymentGrant:
        if user_id is None or source_id is None or credits <= 0:
            raise Errors.Payments.INVALID_EVENT.create(
                "Payment event cannot be mapped to a credit grant",
                details={"user_id": user_id, "source_id": source_id, "credits": credits},
            )
        return PaymentGrant(user_id=UserId(user_id), source_id=source_id, credits=credits, pack_id=pack_id)


class PaymentReconciler:
    def __init__(self, db: Db, ledger_dao: LedgerDAO, projector: BalanceProjector, mapper: PaymentEventMapper) -> None:
        self._db = db
        self._ledger_dao = ledger_dao
        self._projector = projector
        self._mapper = mapper

    async def reconcile(self, event: dict[str, Any]) -> ReconcileResult:
        """Applies one verified event. Safe to call again with the same event."""
        event_id = StripeEventId(str(event.get("id", "")))
        event_type = str(event.get("type", ""))
        result = ReconcileResult(state=ReconcileState.VERIFIED, event_id=event_id, event_type=event_type)

        request_context = RequestContext.get_or_none()
        if request_context is not None:
            request_context.stripe_event_id = event_id

        try:
            mapped = self._mapper.map(event)
        except AppException as e:
            logger.error("Payment event rejected", event_id=event_id, event_type=event_type, error=e.details)
            raise

        if mapped is None:
            logger.info("Payment event ignored", event_id=event_id, event_type=event_type)
            result.state = ReconcileState.IGNORED
            return result

        try:
            if isinstance(mapped, PaymentReversal):
                return await self._reverse(result, mapped)
            return await self._credit(result, mapped)
        except Exception as e:
            result.state = ReconcileState.FAILED
            logger.exception(
                "Payment event reconciliation failed",
                event_id=event_id,
                event_type=event_type,
                user_id=result.user_id,
                source_id=result.source_id,
                credits=result.credits,
            )
            raise Errors.Payments.RECONCILE_FAILED.create(details={"event_id": event_id, "source_id": result.source_id}, cause=e) from e

    async def _credit(self, result: ReconcileResult, grant: PaymentGrant) -> ReconcileResult:
        result.user_id = grant.user_id
        result.source_id = grant.source_id
        result.credits = grant.credits

        outcome = await self._projector.grant(
            grant.user_id,
            grant.credits,
            LedgerReason.PURCHASE,
            source_id=grant.source_id,
            pack_id=grant.pack_id,
        )
        result.entry_id = outcome.entry.id if outcome.entry else None
        if outcome.already_applied:
            result.state = ReconcileState.ALREADY_CREDITED
            logger.info("Payment already credited", event_id=result.event_id, user_id=grant.user_id, source_id=grant.source_id)
        else:
            result.state = ReconcileState.CREDITED
            logger.info("Payment credited", event_id=result.event_id, user_id=grant.user_id, source_id=grant.source_id, delta=grant.credits)
        return result

    async def _reverse(self, result: ReconcileResult, reversal: PaymentReversal) -> ReconcileResult:
        async with self._db.new_session() as db:
            purchase = await self._ledger_dao.find_by_source(db, source_id=reversal.payment_source_id, reason=LedgerReason.PURCHASE)
        if purchase is None:
            logger.info("Refund for a payment that was never credited", event_id=result.event_id, source_id=reversal.payment_source_id)
            result.state = ReconcileState.IGNORED
            return result

        result.user_id = purchase.user_id
        result.source_id = f"refund:{reversal.charge_id}"
        to_reverse = reversal.credits_to_reverse(purchase.delta)
        if to_reverse <= 0:
            logger.info("Refund too small to take back a credit", event_id=result.event_id, source_id=result.source_id)
            result.state = ReconcileState.IGNORED
            return result

        outcome = await self._projector.reverse(purchase.user_id, to_reverse, result.source_id)
        entry = outcome.entry
        if not outcome.successful or entry is None:
            logger.warning(
                "Refund could not take back any credits",
                event_id=result.event_id,
                user_id=purchase.user_id,
                source_id=result.source_id,
                granted=purchase.delta,
            )
            result.state = ReconcileState.IGNORED
            return result

        result.credits = -entry.delta
        result.entry_id = entry.id
        result.state = ReconcileState.REVERSED
        if outcome.replayed:
            logger.info("Refund already reversed", event_id=result.event_id, user_id=purchase.user_id, source_id=result.source_id)
            return result
        if result.credits < to_reverse:
            logger.warning(
                "Refund exceeded remaining balance; the rest needs manual follow-up",
                event_id=result.event_id,
                user_id=purchase.user_id,
                source_id=result.source_id,
                granted=purchase.delta,
                requested=to_reverse,
                reversed=result.credits,
            )
        logger.info("Payment reversed", event_id=result.event_id, user_id=purchase.user_id, source_id=result.source_id, delta=entry.delta)
        return result
