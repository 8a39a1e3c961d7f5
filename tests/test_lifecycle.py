import pytest

from storefront_checkout.domain.errors import InvalidTransition
from storefront_checkout.domain.lifecycle import CheckoutState, PaymentLifecycle
from storefront_checkout.domain.models import PaymentStatus


def awaiting(intent_id="pi_1") -> PaymentLifecycle:
    lifecycle = PaymentLifecycle()
    lifecycle.start_gateway(7)
    lifecycle.intent_created(intent_id)
    return lifecycle


def test_gateway_happy_path():
    lifecycle = PaymentLifecycle()
    assert lifecycle.payment_status is None
    lifecycle.start_gateway(7)
    assert lifecycle.state is CheckoutState.AWAITING_GATEWAY_INTENT
    assert lifecycle.payment_status is PaymentStatus.PENDING_PAYMENT
    lifecycle.intent_created("pi_1")
    assert lifecycle.confirm("pi_1")
    assert lifecycle.state is CheckoutState.PAID
    assert lifecycle.payment_status is PaymentStatus.PAID
    assert lifecycle.is_terminal


def test_second_confirmation_is_a_noop():
    lifecycle = awaiting()
    assert lifecycle.confirm("pi_1")
    assert not lifecycle.confirm("pi_1")
    assert lifecycle.state is CheckoutState.PAID


def test_confirming_an_unknown_intent_raises():
    with pytest.raises(InvalidTransition):
        awaiting().confirm("pi_other")


def test_failure_then_retry_issues_a_new_attempt():
    lifecycle = awaiting()
    assert lifecycle.fail("card_declined", "pi_1")
    assert lifecycle.payment_status is PaymentStatus.FAILED
    assert lifecycle.last_error == "card_declined"
    lifecycle.retry()
    assert lifecycle.state is CheckoutState.AWAITING_GATEWAY_INTENT
    assert lifecycle.attempts == 2
    assert lifecycle.order_id == 7
    lifecycle.intent_created("pi_2")
    assert lifecycle.intent_ids == ["pi_1", "pi_2"]
    assert lifecycle.current_intent_id == "pi_2"


def test_failure_of_superseded_intent_is_ignored():
    lifecycle = awaiting()
    lifecycle.fail("card_declined")
    lifecycle.retry()
    lifecycle.intent_created("pi_2")
    assert not lifecycle.fail("card_declined", "pi_1")
    assert lifecycle.state is CheckoutState.AWAITING_CONFIRMATION


def test_late_success_of_a_failed_payment_is_accepted():
    lifecycle = awaiting()
    lifecycle.fail("authentication_required")
    assert lifecycle.confirm("pi_1")
    assert lifecycle.last_error is None


def test_failure_after_paid_is_ignored():
    lifecycle = awaiting()
    lifecycle.confirm("pi_1")
    assert not lifecycle.fail("card_declined", "pi_1")
    assert lifecycle.state is CheckoutState.PAID


def test_cancel_is_idempotent():
    lifecycle = awaiting()
    assert lifecycle.cancel()
    assert not lifecycle.cancel()
    assert lifecycle.payment_status is PaymentStatus.FAILED


def test_cancelled_payment_cannot_be_paid():
    lifecycle = awaiting()
    lifecycle.cancel()
    with pytest.raises(InvalidTransition):
        lifecycle.confirm("pi_1")


def test_retry_only_from_failed():
    with pytest.raises(InvalidTransition):
        awaiting().retry()


def test_offline_settlement_is_paid_at_fulfillment():
    lifecycle = PaymentLifecycle()
    lifecycle.settle_offline(3)
    assert lifecycle.state is CheckoutState.PAID
    assert lifecycle.payment_status is PaymentStatus.PENDING
    assert lifecycle.intent_ids == []


def test_free_gateway_order_is_paid_without_intent():
    lifecycle = PaymentLifecycle()
    lifecycle.settle_free(3)
    assert lifecycle.payment_status is PaymentStatus.PAID
