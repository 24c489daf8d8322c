import itertools
import json
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
import stripe

from commerce.cache import payment_key
from commerce.errors import GatewayUnavailable, InvalidState, NotFound, ValidationError
from commerce.events import EventType
from commerce.models import PaymentRecord
from commerce.schemas import PaymentStatus


def event_types(publisher):
    return [c.args[0] for c in publisher.publish.call_args_list]


@pytest.fixture
def stripe_intents(mocker):
    counter = itertools.count(1)

    def create(**kwargs):
        n = next(counter)
        intent = mocker.Mock()
        intent.id = f"pi_test_{n}"
        intent.client_secret = f"pi_test_{n}_secret_abc"
        return intent

    return mocker.patch("stripe.PaymentIntent.create", side_effect=create)


def confirm_with(mocker, status):
    intent = mocker.Mock()
    intent.id = "ignored"
    intent.status = status
    return mocker.patch("stripe.PaymentIntent.confirm", return_value=intent)


def refund_with(mocker, amount_cents, refund_id="re_test_1"):
    # a real StripeObject, which is not a dict
    refund = stripe.Refund.construct_from({
        "id": refund_id,
        "object": "refund",
        "amount": amount_cents,
        "currency": "usd",
        "status": "succeeded",
    }, "sk_test_dummy")
    return mocker.patch("stripe.Refund.create", return_value=refund)


@pytest.fixture
def completed_payment(payments, stripe_intents, mocker):
    created = payments.create_intent(Decimal("99.99"), "usd", "ORDER-1", "user-1")
    confirm_with(mocker, "succeeded")
    return payments.confirm(created.payment_id, "pm_card_visa")


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00"), Decimal("0.001")])
def test_create_intent_rejects_non_positive_amount(payments, stripe_intents, amount):
    with pytest.raises(ValidationError):
        payments.create_intent(amount, "usd", "ORDER-1", "user-1")
    stripe_intents.assert_not_called()


def test_create_intent_persists_pending_payment(payments, stripe_intents, publisher, services, fake_redis):
    created = payments.create_intent(
        Decimal("99.99"), "usd", "ORDER-1", "user-1", metadata={"channel": "web"}
    )

    assert created.payment_id == "pi_test_1"
    assert created.client_secret == "pi_test_1_secret_abc"
    kwargs = stripe_intents.call_args.kwargs
    assert kwargs["amount"] == 9999
    assert kwargs["metadata"] == {"channel": "web", "order_id": "ORDER-1", "user_id": "user-1"}

    payment = payments.get(created.payment_id)
    assert payment.status is PaymentStatus.PENDING
    assert payment.amount == Decimal("99.99")
    assert payment.intent_id == "pi_test_1"
    assert payment.metadata == {"channel": "web"}
    assert event_types(publisher) == [EventType.PAYMENT_INTENT_CREATED]

    # the client secret goes back to the caller and nowhere else
    row = services.store.get(PaymentRecord, created.payment_id)
    assert "secret" not in json.dumps(row, default=str)
    assert "secret" not in fake_redis.data[payment_key(created.payment_id)]
    assert "secret" not in json.dumps(publisher.publish.call_args.args[1])


def test_create_intent_gateway_failure_leaves_no_record(payments, services, mocker):
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.APIConnectionError("Stripe Service Unavailable"))

    with pytest.raises(GatewayUnavailable):
        payments.create_intent(Decimal("25.00"), "eur", "ORDER-FAIL-001", "user-1")

    assert services.store.find_one(PaymentRecord, order_id="ORDER-FAIL-001") is None


def test_create_intent_replayed_with_same_idempotency_key(payments, mocker):
    intent = mocker.Mock()
    intent.id = "pi_same"
    intent.client_secret = "pi_same_secret"
    stripe_create = mocker.patch("stripe.PaymentIntent.create", return_value=intent)

    first = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1", idempotency_key="k1")
    second = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1", idempotency_key="k1")

    assert first == second
    assert stripe_create.call_args.kwargs["idempotency_key"] == "k1"
    assert payments.list(order_id="ORDER-1")[1] == 1


def test_confirm_success_completes_payment(completed_payment, publisher, fake_redis):
    assert completed_payment.status is PaymentStatus.COMPLETED
    assert completed_payment.completed_at is not None
    assert event_types(publisher)[-1] is EventType.PAYMENT_COMPLETED
    cached = json.loads(fake_redis.data[payment_key(completed_payment.id)])
    assert cached["status"] == "completed"


def test_confirm_passes_payment_method_to_gateway(payments, stripe_intents, mocker):
    created = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1")
    stripe_confirm = confirm_with(mocker, "succeeded")

    payments.confirm(created.payment_id, "pm_card_visa")

    assert stripe_confirm.call_args.args == ("pi_test_1",)
    assert stripe_confirm.call_args.kwargs["payment_method"] == "pm_card_visa"


@pytest.mark.parametrize("gateway_status", ["requires_payment_method", "requires_action", "canceled"])
def test_confirm_non_success_fails_payment(payments, stripe_intents, publisher, mocker, gateway_status):
    created = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1")
    confirm_with(mocker, gateway_status)

    payment = payments.confirm(created.payment_id, "pm_card_visa")

    assert payment.status is PaymentStatus.FAILED
    assert payment.failed_at is not None
    assert payment.completed_at is None
    assert event_types(publisher)[-1] is EventType.PAYMENT_FAILED


def test_confirm_card_decline_fails_payment(payments, stripe_intents, mocker):
    created = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1")
    mocker.patch("stripe.PaymentIntent.confirm",
                 side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))

    assert payments.confirm(created.payment_id, "pm_card_chargeDeclined").status is PaymentStatus.FAILED


def test_confirm_gateway_outage_keeps_payment_pending(payments, stripe_intents, mocker):
    created = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1")
    mocker.patch("stripe.PaymentIntent.confirm", side_effect=stripe.APIConnectionError("timed out"))

    with pytest.raises(GatewayUnavailable):
        payments.confirm(created.payment_id, "pm_card_visa")

    assert payments.get(created.payment_id).status is PaymentStatus.PENDING


def test_confirm_twice_is_a_local_no_op(completed_payment, payments, publisher, mocker):
    stripe_confirm = confirm_with(mocker, "succeeded")
    publisher.reset_mock()

    again = payments.confirm(completed_payment.id, "pm_card_visa")

    stripe_confirm.assert_not_called()

    assert again.status is PaymentStatus.COMPLETED
    assert again.completed_at == completed_payment.completed_at
    assert again.version == completed_payment.version
    publisher.publish.assert_not_called()


def test_confirm_unknown_payment(payments):
    with pytest.raises(NotFound):
        payments.confirm("pi_missing", "pm_card_visa")


def test_partial_refund_scenario(completed_payment, payments, publisher, mocker):
    stripe_refund = refund_with(mocker, 2500)

    refund = payments.refund(completed_payment.id, Decimal("25.00"))

    assert refund.id == "re_test_1"
    assert refund.amount == Decimal("25.00")
    assert refund.reason == "requested_by_customer"
    assert stripe_refund.call_args.kwargs == {
        "payment_intent": completed_payment.intent_id,
        "amount": 2500,
        "reason": "requested_by_customer",
        "idempotency_key": f"refund-{completed_payment.id}",
        "api_key": "sk_test_dummy",
    }

    payment = payments.get(completed_payment.id)
    assert payment.status is PaymentStatus.REFUNDED
    assert payment.refunded_at is not None
    assert payment.amount == Decimal("99.99")
    assert payment.currency == "usd"
    assert [r.id for r in payments.list_refunds(completed_payment.id)] == ["re_test_1"]

    assert event_types(publisher)[-1] is EventType.PAYMENT_REFUNDED
    assert publisher.publish.call_args.args[1]["refund"]["amount"] == 25.0


def test_refund_defaults_to_full_amount(completed_payment, payments, mocker):
    stripe_refund = refund_with(mocker, 9999)

    refund = payments.refund(completed_payment.id)

    assert "amount" not in stripe_refund.call_args.kwargs
    assert refund.amount == Decimal("99.99")


def test_refund_free_text_reason_goes_to_metadata(completed_payment, payments, mocker):
    stripe_refund = refund_with(mocker, 9999)

    refund = payments.refund(completed_payment.id, reason="arrived damaged")

    kwargs = stripe_refund.call_args.kwargs
    assert "reason" not in kwargs
    assert kwargs["metadata"] == {"reason": "arrived damaged"}
    assert refund.reason == "arrived damaged"


def test_refund_exceeding_payment_amount_is_rejected(completed_payment, payments, mocker):
    stripe_refund = refund_with(mocker, 10000)

    with pytest.raises(ValidationError):
        payments.refund(completed_payment.id, Decimal("100.00"))

    stripe_refund.assert_not_called()
    assert payments.get(completed_payment.id).status is PaymentStatus.COMPLETED


def test_refund_requires_completed_payment(payments, stripe_intents, mocker):
    created = payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1")
    stripe_refund = refund_with(mocker, 1000)

    with pytest.raises(InvalidState):
        payments.refund(created.payment_id)
    stripe_refund.assert_not_called()


def test_refund_twice_is_rejected(completed_payment, payments, mocker):
    refund_with(mocker, 9999)
    payments.refund(completed_payment.id)

    with pytest.raises(InvalidState):
        payments.refund(completed_payment.id)
    assert len(payments.list_refunds(completed_payment.id)) == 1


def test_amount_and_currency_cannot_be_patched(completed_payment, services):
    with pytest.raises(ValidationError):
        services.store.update(PaymentRecord, completed_payment.id, {"amount": Decimal("1.00")})
    with pytest.raises(ValidationError):
        services.store.update(PaymentRecord, completed_payment.id, {"currency": "eur"})


def test_list_filters_and_orders_newest_first(payments, stripe_intents):
    payments.create_intent(Decimal("10.00"), "usd", "ORDER-1", "user-1")
    payments.create_intent(Decimal("20.00"), "usd", "ORDER-2", "user-1")
    payments.create_intent(Decimal("30.00"), "usd", "ORDER-3", "user-2")

    mine, total = payments.list(user_id="user-1")
    assert total == 2
    assert [p.order_id for p in mine] == ["ORDER-2", "ORDER-1"]

    by_order, total = payments.list(order_id="ORDER-3")
    assert total == 1 and by_order[0].user_id == "user-2"

    paged, total = payments.list(limit=1, offset=1)
    assert total == 3
    assert [p.order_id for p in paged] == ["ORDER-2"]

    assert payments.list(status=PaymentStatus.COMPLETED) == ([], 0)


def test_concurrent_intents_get_distinct_ids(payments, stripe_intents):
    def create(n):
        return payments.create_intent(Decimal("10.00"), "usd", f"ORDER-{n}", f"user-{n}")

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(create, range(10)))

    ids = {r.payment_id for r in results}
    assert len(ids) == 10
    stored, total = payments.list(limit=100)
    assert total == 10
    assert {p.id for p in stored} == ids
    for payment in stored:
        assert payment.order_id == f"ORDER-{payment.user_id.split('-')[1]}"
        assert payment.amount == Decimal("10.00")


def test_confirm_after_refund_is_rejected_without_calling_gateway(completed_payment, payments, mocker):
    refund_with(mocker, 9999)
    payments.refund(completed_payment.id)
    stripe_confirm = confirm_with(mocker, "succeeded")

    with pytest.raises(InvalidState):
        payments.confirm(completed_payment.id, "pm_card_visa")
    stripe_confirm.assert_not_called()


def test_sub_cent_amount_never_reaches_gateway(payments, stripe_intents, services):
    with pytest.raises(ValidationError, match="Invalid amount"):
        payments.create_intent(Decimal("0.004"), "usd", "ORDER-TINY", "user-1")

    stripe_intents.assert_not_called()
    assert services.store.find_one(PaymentRecord, order_id="ORDER-TINY") is None
