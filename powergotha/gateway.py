"""Stripe as the payment gateway.

A PaymentIntent plays the part of the gateway *order* and a Charge the part of
the *payment* made against it, so ``fetch_payment`` reports the charge's
PaymentIntent id as ``order_id``.
"""

import json
from typing import Optional

import stripe
import structlog

from . import config
from .errors import InternalError, ValidationError

logger = structlog.get_logger()


def _minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


class StripeGateway:
    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _require_key(self) -> None:
        if not self.secret_key:
            raise InternalError("Payment gateway not configured")
        stripe.api_key = self.secret_key

    def create_order(self, amount: float, currency: str, metadata: Optional[dict] = None) -> dict:
        self._require_key()
        intent = stripe.PaymentIntent.create(
            amount=_minor_units(amount),
            currency=currency.lower(),
            metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
        )
        logger.info("gateway_order_created", order_id=intent.id, amount=intent.amount, currency=intent.currency)
        return {"id": intent.id, "amount": intent.amount, "currency": intent.currency}

    def fetch_payment(self, payment_id: str) -> dict:
        self._require_key()
        try:
            charge = stripe.Charge.retrieve(payment_id)
        except stripe.InvalidRequestError:
            raise ValidationError("Payment not recognised by the gateway.")
        details = getattr(charge, "payment_method_details", None)
        return {
            "id": charge.id,
            "method": getattr(details, "type", None) if details else None,
            "status": charge.status,
            "order_id": getattr(charge, "payment_intent", None),
        }

    def parse_webhook(self, payload: bytes, signature: str) -> dict:
        """Reduce a webhook body to ``{type, payment_id, order_id}``.

        The signature is verified when a webhook secret is configured. Raises
        ``ValueError`` for a malformed body and
        ``stripe.SignatureVerificationError`` for a bad signature.
        """
        if self.webhook_secret:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        else:
            event = stripe.Event.construct_from(json.loads(payload), self.secret_key)
        obj = event.data.object
        return {
            "type": event.type,
            "payment_id": getattr(obj, "id", None),
            "order_id": getattr(obj, "payment_intent", None),
        }


def default_gateway() -> StripeGateway:
    return StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET)
