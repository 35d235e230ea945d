"""StripeService encapsulates all Stripe interactions.
Reads configuration from ConfigService; the ledger only needs webhook verification.
"""

from __future__ import annotations

from typing import Any

import stripe

from common.core.app_error import Errors
from common.core.config_service import ConfigService
from common.utils.msgspec import SerializationError, decode_json
from common.utils.utils import get_logger, is_dict

logger = get_logger()


class StripeService:
    def __init__(self, config: ConfigService) -> None:
        self.config = config
        self.webhook_secret = str(self.config.stripe.webhook_secret or "")
        self.tolerance = int(self.config.stripe.webhook_tolerance_seconds)

        if self.config.stripe.api_key:
            stripe.api_key = str(self.config.stripe.api_key)
        if not self.webhook_secret:
            logger.warning("Stripe webhook secret is missing in configuration; webhooks will be rejected")

    def verify_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Checks the ``Stripe-Signature`` header and returns the decoded event.
        Anything unsigned, stale, tampered with or malformed raises ``Errors.Payments.INVALID_EVENT``.
        """
        if not self.webhook_secret:
            raise Errors.Payments.NOT_CONFIGURED.create("Stripe webhook secret is not set in config")
        if not signature:
            raise Errors.Payments.INVALID_EVENT.create("Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe webhook signature verification failed", error=str(e))
            raise Errors.Payments.INVALID_EVENT.create("Invalid signature", cause=e) from e
        except UnicodeDecodeError as e:
            raise Errors.Payments.INVALID_EVENT.create("Payload is not UTF-8", cause=e) from e

        # Decoded locally so the reconciler sees plain dicts rather than SDK objects
        try:
            event = decode_json(payload)
        except SerializationError as e:
            raise Errors.Payments.INVALID_EVENT.create("Payload is not valid JSON", cause=e) from e
        if not is_dict(event) or not event.get("id") or not event.get("type"):
            raise Errors.Payments.INVALID_EVENT.create("Payload is not a Stripe event")
        return event
