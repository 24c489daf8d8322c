from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import structlog

from commerce.stripe_service import GatewayRefund, StripeGateway, read_field, refund_from_object

logger = structlog.get_logger(component="webhooks")


class WebhookAction(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHARGE_REFUNDED = "charge_refunded"
    IGNORED = "ignored"


# Stripe event vocabulary -> what we do about it. Anything else is ignored.
EVENT_ACTIONS: Dict[str, WebhookAction] = {
    "payment_intent.succeeded": WebhookAction.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookAction.PAYMENT_FAILED,
    "charge.refunded": WebhookAction.CHARGE_REFUNDED,
}


@dataclass
class WebhookEvent:
    event_id: Optional[str]
    event_type: str
    action: WebhookAction
    intent_id: Optional[str] = None
    refunds: List[GatewayRefund] = field(default_factory=list)


class WebhookVerifier:
    """Authenticates Stripe callbacks and decodes them into ``WebhookEvent``."""

    def __init__(self, gateway: StripeGateway, secret: Optional[str]):
        self._gateway = gateway
        self._secret = secret

    def verify(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        event = self._gateway.verify_webhook_signature(payload, signature, self._secret)
        return decode_event(event)


def decode_event(event) -> WebhookEvent:
    event_type = event["type"]
    action = EVENT_ACTIONS.get(event_type, WebhookAction.IGNORED)
    obj = event["data"]["object"]

    decoded = WebhookEvent(event_id=read_field(event, "id"), event_type=event_type, action=action)
    if action in (WebhookAction.PAYMENT_SUCCEEDED, WebhookAction.PAYMENT_FAILED):
        decoded.intent_id = obj["id"]
    elif action is WebhookAction.CHARGE_REFUNDED:
        # the charge knows its intent, not our payment id
        decoded.intent_id = read_field(obj, "payment_intent")
        refunds = read_field(obj, "refunds")
        if refunds is not None:
            decoded.refunds = [refund_from_object(r) for r in read_field(refunds, "data", [])]
    else:
        logger.info("webhook_event_ignored", event_type=event_type)
    return decoded
