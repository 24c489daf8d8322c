"""Payment lifecycle: intents, confirmation, refunds and gateway webhooks.

Gateway calls are slow and happen outside any write; the local transition
that follows is a compare-and-set on the row's status and version, so a
concurrent writer can never sneak a stale transition through. Re-applying the
status a payment already has is a silent no-op: that is what makes confirm
retries and duplicate webhook deliveries safe.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from commerce.cache import Cache, payment_key
from commerce.errors import Conflict, InvalidState, InvalidTransition, ValidationError
from commerce.events import EventPublisher, EventType
from commerce.models import PaymentRecord, ProcessedEventRecord, RefundRecord, utcnow
from commerce.schemas import (
    Payment,
    PaymentIntentResponse,
    PaymentStatus,
    Refund,
    quantize_money,
)
from commerce.store import LedgerStore
from commerce.stripe_service import DEFAULT_REFUND_REASON, GatewayRefund, StripeGateway
from commerce.transitions import (
    PAYMENT_TRANSITIONS,
    can_transition,
    ensure_payment_transition,
    is_reachable,
)
from commerce.webhooks import WebhookAction, WebhookEvent, WebhookVerifier

logger = structlog.get_logger(component="payments")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

STATUS_TIMESTAMPS = {
    PaymentStatus.COMPLETED: "completed_at",
    PaymentStatus.FAILED: "failed_at",
    PaymentStatus.REFUNDED: "refunded_at",
}

STATUS_EVENTS = {
    PaymentStatus.COMPLETED: EventType.PAYMENT_COMPLETED,
    PaymentStatus.FAILED: EventType.PAYMENT_FAILED,
    PaymentStatus.REFUNDED: EventType.PAYMENT_REFUNDED,
}

WEBHOOK_TARGETS = {
    WebhookAction.PAYMENT_SUCCEEDED: PaymentStatus.COMPLETED,
    WebhookAction.PAYMENT_FAILED: PaymentStatus.FAILED,
    WebhookAction.CHARGE_REFUNDED: PaymentStatus.REFUNDED,
}


def normalize_limit(limit: int) -> int:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        return DEFAULT_PAGE_SIZE
    return limit


class PaymentLifecycleManager:

    def __init__(
        self,
        store: LedgerStore,
        cache: Cache,
        publisher: EventPublisher,
        gateway: StripeGateway,
        verifier: WebhookVerifier,
        write_retries: int = 3,
    ):
        self._store = store
        self._cache = cache
        self._publisher = publisher
        self._gateway = gateway
        self._verifier = verifier
        self._write_retries = write_retries

    def create_intent(
        self,
        amount: Decimal,
        currency: str,
        order_id: str,
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResponse:
        # validated after rounding so a sub-cent amount cannot become a zero charge
        amount = quantize_money(amount) if amount is not None else None
        if amount is None or amount <= 0:
            raise ValidationError("Invalid amount")
        if not order_id or not user_id:
            raise ValidationError("order ID and user ID are required")
        metadata = dict(metadata or {})

        intent = self._gateway.create_intent(
            amount,
            currency,
            {**metadata, "order_id": order_id, "user_id": user_id},
            idempotency_key=idempotency_key,
        )

        now = utcnow()
        try:
            row = self._store.create(PaymentRecord, {
                "id": intent.intent_id,
                "order_id": order_id,
                "user_id": user_id,
                "amount": amount,
                "currency": currency,
                "status": PaymentStatus.PENDING.value,
                "intent_id": intent.intent_id,
                "payment_metadata": metadata,
                "created_at": now,
                "updated_at": now,
                "version": 1,
            })
        except Conflict:
            # same idempotency key, the gateway handed back the intent we already stored
            logger.info("payment_intent_replayed", payment_id=intent.intent_id)
            return PaymentIntentResponse(payment_id=intent.intent_id, client_secret=intent.client_secret)

        payment = Payment.model_validate(row)
        self._cache.set_model(payment_key(payment.id), payment)
        logger.info("payment_intent_created", payment_id=payment.id, order_id=order_id,
                    amount=str(amount), currency=currency)
        self._publisher.publish(EventType.PAYMENT_INTENT_CREATED, {"payment": payment.model_dump(mode="json")})
        return PaymentIntentResponse(payment_id=payment.id, client_secret=intent.client_secret)

    def get(self, payment_id: str) -> Payment:
        cached = self._cache.get_model(payment_key(payment_id), Payment)
        if cached is not None:
            return cached
        payment = Payment.model_validate(self._store.get(PaymentRecord, payment_id))
        self._cache.set_model(payment_key(payment_id), payment)
        return payment

    def list(
        self,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Tuple[List[Payment], int]:
        filters = {}
        if user_id:
            filters["user_id"] = user_id
        if order_id:
            filters["order_id"] = order_id
        if status:
            filters["status"] = PaymentStatus(status).value
        rows, total = self._store.query(
            PaymentRecord, filters, limit=normalize_limit(limit), offset=max(offset, 0)
        )
        return [Payment.model_validate(row) for row in rows], total

    def confirm(self, payment_id: str, payment_method: str) -> Payment:
        if not payment_method:
            raise ValidationError("payment method is required")
        payment = self.get(payment_id)
        if payment.status is PaymentStatus.COMPLETED:
            return payment
        if payment.status is not PaymentStatus.PENDING:
            raise InvalidState(f"payment cannot be confirmed in status: {payment.status.value}")

        result = self._gateway.confirm_intent(payment.intent_id, payment_method)
        target = PaymentStatus.COMPLETED if result.succeeded else PaymentStatus.FAILED
        payment, _ = self._set_status(payment_id, target)
        return payment

    def refund(
        self,
        payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Refund:
        # authorise against the store, never the cache
        payment = Payment.model_validate(self._store.get(PaymentRecord, payment_id))
        if payment.status is not PaymentStatus.COMPLETED:
            raise InvalidState(f"payment cannot be refunded in status: {payment.status.value}")

        if amount is not None:
            amount = quantize_money(amount)
            if amount <= 0:
                raise ValidationError("refund amount must be greater than 0")
            if amount > payment.amount:
                raise ValidationError(
                    f"refund amount {amount} exceeds payment amount {payment.amount}"
                )
        reason = reason or DEFAULT_REFUND_REASON

        gateway_refund = self._gateway.create_refund(
            payment.intent_id, amount, reason, idempotency_key=f"refund-{payment.id}"
        )
        refund = self._record_refund(payment, gateway_refund, reason)
        self._set_status(payment_id, PaymentStatus.REFUNDED, refund=refund.model_dump(mode="json"))
        return refund

    def list_refunds(self, payment_id: str) -> List[Refund]:
        self._store.get(PaymentRecord, payment_id)
        rows, _ = self._store.query(RefundRecord, {"payment_id": payment_id})
        return [Refund.model_validate(row) for row in rows]

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        event = self._verifier.verify(payload, signature)
        logger.info("webhook_received", event_id=event.event_id, event_type=event.event_type)
        if event.action is WebhookAction.IGNORED:
            return event

        if event.event_id and self._store.exists(ProcessedEventRecord, event.event_id):
            logger.info("webhook_duplicate", event_id=event.event_id)
            return event

        self._apply_webhook(event)

        if event.event_id:
            try:
                self._store.create(ProcessedEventRecord, {
                    "id": event.event_id,
                    "event_type": event.event_type,
                })
            except Conflict:
                # a concurrent delivery of the same event got there first
                pass
        return event

    def _apply_webhook(self, event: WebhookEvent) -> None:
        row = None
        if event.intent_id:
            row = self._store.find_one(PaymentRecord, intent_id=event.intent_id)
        if row is None:
            logger.warning("webhook_payment_unknown", event_id=event.event_id,
                           intent_id=event.intent_id)
            return
        payment = Payment.model_validate(row)
        target = WEBHOOK_TARGETS[event.action]

        if (
            not can_transition(PAYMENT_TRANSITIONS, payment.status, target)
            and is_reachable(PAYMENT_TRANSITIONS, payment.status, target)
        ):
            # arrived ahead of the event it depends on; leave it unprocessed for redelivery
            logger.warning("webhook_deferred", event_id=event.event_id, payment_id=payment.id,
                           status=payment.status.value, target=target.value)
            raise Conflict(f"payment {payment.id} is {payment.status.value}, retry later")

        extra = {}
        if event.action is WebhookAction.CHARGE_REFUNDED:
            refunds = [self._record_refund(payment, r, DEFAULT_REFUND_REASON) for r in event.refunds]
            extra["refunds"] = [r.model_dump(mode="json") for r in refunds]

        try:
            self._set_status(payment.id, target, **extra)
        except InvalidTransition as e:
            # out-of-order delivery; the stored state already moved past it
            logger.warning("webhook_transition_ignored", event_id=event.event_id,
                           payment_id=payment.id, error=e.message)

    def _record_refund(self, payment: Payment, gateway_refund: GatewayRefund, reason: str) -> Refund:
        try:
            row = self._store.create(RefundRecord, {
                "id": gateway_refund.refund_id,
                "payment_id": payment.id,
                "amount": gateway_refund.amount,
                "currency": gateway_refund.currency,
                "status": gateway_refund.status,
                "reason": reason,
                "created_at": utcnow(),
            })
        except Conflict:
            row = self._store.get(RefundRecord, gateway_refund.refund_id)
        return Refund.model_validate(row)

    def _set_status(self, payment_id: str, target: PaymentStatus, **extra) -> Tuple[Payment, bool]:
        """Move a payment to ``target``; returns the payment and whether it changed."""
        for _ in range(self._write_retries):
            current = Payment.model_validate(self._store.get(PaymentRecord, payment_id))
            if current.status is target:
                return current, False
            ensure_payment_transition(current.status, target)
            try:
                row = self._store.update(
                    PaymentRecord,
                    payment_id,
                    {"status": target.value, STATUS_TIMESTAMPS[target]: utcnow()},
                    expected_status=current.status.value,
                    expected_version=current.version,
                )
            except Conflict:
                logger.info("payment_write_retry", payment_id=payment_id)
                continue

            payment = Payment.model_validate(row)
            self._cache.set_model(payment_key(payment_id), payment)
            logger.info("payment_status_changed", payment_id=payment_id,
                        old_status=current.status.value, new_status=target.value)
            self._publisher.publish(
                STATUS_EVENTS[target], {"payment": payment.model_dump(mode="json"), **extra}
            )
            return payment, True
        raise Conflict(f"payment {payment_id} is being modified concurrently, retry later")
