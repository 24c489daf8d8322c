"""Stripe adapter.

The only place that knows about minor units: the domain speaks decimal major
units (``29.99``), Stripe speaks integer cents (``2999``).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
import structlog

from commerce.errors import AuthenticationError, GatewayUnavailable, InvalidState
from commerce.schemas import quantize_money

logger = structlog.get_logger(component="stripe")

STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")
DEFAULT_REFUND_REASON = "requested_by_customer"


def to_minor_units(amount: Decimal) -> int:
    return int(quantize_money(amount) * 100)


def from_minor_units(amount: int) -> Decimal:
    return quantize_money(Decimal(amount) / 100)


@dataclass(frozen=True)
class GatewayIntent:
    intent_id: str
    client_secret: str

    def __repr__(self):
        return f"GatewayIntent(intent_id={self.intent_id!r})"


@dataclass(frozen=True)
class GatewayConfirmation:
    intent_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    amount: Decimal
    currency: str
    status: str


def read_field(obj, key: str, default=None):
    """Subscript read with a default; Stripe objects have no ``.get``."""
    try:
        value = obj[key]
    except KeyError:
        return default
    return default if value is None else value


def refund_from_object(obj) -> GatewayRefund:
    return GatewayRefund(
        refund_id=obj["id"],
        amount=from_minor_units(obj["amount"]),
        currency=obj["currency"],
        status=read_field(obj, "status", "succeeded"),
    )


class StripeGateway:

    def __init__(self, api_key: Optional[str]):
        self._api_key = api_key

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            logger.error("create_intent_failed", error=str(e))
            raise GatewayUnavailable("payment gateway unavailable") from e
        return GatewayIntent(intent_id=intent.id, client_secret=intent.client_secret)

    def confirm_intent(self, intent_id: str, payment_method: str) -> GatewayConfirmation:
        try:
            intent = stripe.PaymentIntent.confirm(
                intent_id,
                payment_method=payment_method,
                api_key=self._api_key,
            )
        except stripe.CardError as e:
            # a decline is an answer, not an outage
            logger.info("confirm_declined", intent_id=intent_id, code=e.code)
            return GatewayConfirmation(intent_id=intent_id, status="requires_payment_method")
        except stripe.InvalidRequestError as e:
            # the intent is no longer confirmable, e.g. it already succeeded
            logger.info("confirm_rejected", intent_id=intent_id, error=str(e))
            raise InvalidState("payment intent cannot be confirmed") from e
        except stripe.StripeError as e:
            logger.error("confirm_intent_failed", intent_id=intent_id, error=str(e))
            raise GatewayUnavailable("payment gateway unavailable") from e
        return GatewayConfirmation(intent_id=intent.id, status=intent.status)

    def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        params: Dict[str, Any] = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        reason = reason or DEFAULT_REFUND_REASON
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        else:
            params["metadata"] = {"reason": reason}

        try:
            refund = stripe.Refund.create(
                idempotency_key=idempotency_key,
                api_key=self._api_key,
                **params,
            )
        except stripe.StripeError as e:
            logger.error("create_refund_failed", intent_id=intent_id, error=str(e))
            raise GatewayUnavailable("payment gateway unavailable") from e
        return refund_from_object(refund)

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str], secret: Optional[str]):
        if not secret:
            logger.warning("webhook_secret_missing")
            raise AuthenticationError("Webhook not configured")
        if not signature:
            raise AuthenticationError("Invalid signature")
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except ValueError as e:
            raise AuthenticationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise AuthenticationError("Invalid signature") from e
