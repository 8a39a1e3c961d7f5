"""
End-to-end checkout runs against Temporal's time-skipping test server.

The server binary is downloaded on first use, so these tests need network
access the first time they run; they are skipped when the server cannot be
started. The decision rules the workflow applies are covered without a
server in test_checkout_rules.py.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.service import RPCError
from temporalio.testing import WorkflowEnvironment

from storefront_checkout.client import CheckoutClient
from storefront_checkout.domain.lifecycle import CheckoutState
from storefront_checkout.domain.models import (
    MUTABLE_ORDER_FIELDS,
    CartLine,
    Coupon,
    Customer,
    DeliveryAddress,
    DiscountType,
    MenuItem,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
)
from storefront_checkout.domain.payloads import (
    CheckoutOutcome,
    CheckoutRequest,
    GatewayEvent,
    GatewayEventKind,
    ReconcileOutcome,
)
from storefront_checkout.worker import build_worker


@pytest.fixture
async def env():
    try:
        env = await WorkflowEnvironment.start_time_skipping(data_converter=pydantic_data_converter)
    except Exception as e:
        pytest.skip(f"Temporal test server unavailable: {e}")
    yield env
    await env.shutdown()


@pytest.fixture
async def checkout(env, services):
    async with build_worker(env.client, services.config.task_queue):
        yield CheckoutClient(env.client, services.config)


def request(ref, **fields) -> CheckoutRequest:
    values = {
        "order_ref": ref,
        "lines": [CartLine(item=MenuItem(id="1", name="Pizza", base_price=Decimal("20.00")))],
        "customer": Customer(name="Aino", phone="+358401234567", email="aino@example.fi"),
        "order_type": OrderType.PICKUP,
        "payment_method": PaymentMethod.ONLINE_CARD,
    }
    values.update(fields)
    return CheckoutRequest(**values)


async def wait_for_state(checkout, ref, state, payment_status=None, attempts=200):
    """Poll the status query until the lifecycle (and the stored order, if given) caught up."""
    for _ in range(attempts):
        try:
            status = await checkout.status(ref)
        except RPCError:
            # Not queryable until its first workflow task ran.
            status = None
        if status is not None and status.state is state:
            if payment_status is None or status.payment_status is payment_status:
                return status
        await asyncio.sleep(0.05)
    raise AssertionError(f"checkout {ref} never reached {state.value}")


def gateway_success(intent_id, event_id, **metadata) -> GatewayEvent:
    return GatewayEvent(kind=GatewayEventKind.SUCCEEDED, intent_id=intent_id, event_id=event_id, metadata=metadata)


async def test_cash_order_is_placed_without_gateway(checkout, services):
    await checkout.start_checkout(request("cash-1", payment_method=PaymentMethod.CASH))
    result = await checkout.result("cash-1")

    assert result.outcome is CheckoutOutcome.PLACED
    assert result.payment_status is PaymentStatus.PENDING
    assert services.gateway.intents == {}
    assert services.notification.sent == [result.order_id]


async def test_delivery_order_is_priced_with_zone_fee(checkout, services):
    req = request(
        "del-1",
        payment_method=PaymentMethod.CARD,
        order_type=OrderType.DELIVERY,
        delivery_address=services.address,
        lines=[CartLine(item=MenuItem(id="1", name="Kebab", base_price=Decimal("12.00")))],
    )
    await checkout.start_checkout(req)
    result = await checkout.result("del-1")

    assert result.outcome is CheckoutOutcome.PLACED
    assert result.delivery.fee == Decimal("7.00")
    assert result.breakdown.small_order_fee == Decimal("3.00")
    assert result.breakdown.total == Decimal("22.00")


async def test_geocoder_outage_applies_floor_fee(checkout, services):
    services.geocoder.transport_failures = 100
    req = request(
        "del-2",
        payment_method=PaymentMethod.CASH,
        order_type=OrderType.DELIVERY,
        delivery_address=services.address,
    )
    await checkout.start_checkout(req)
    result = await checkout.result("del-2")

    assert result.outcome is CheckoutOutcome.PLACED
    assert result.delivery.confirmed_manually
    assert result.delivery.fee == Decimal("0.00")


async def test_out_of_range_address_is_rejected_before_order_creation(checkout, services):
    far = DeliveryAddress(street="Hämeenkatu 1", city="Tampere")
    services.geocoder.points[far.as_query()] = services.point.model_copy(update={"lat": 61.4978, "lon": 23.761})
    await checkout.start_checkout(request("far-1", order_type=OrderType.DELIVERY, delivery_address=far))
    result = await checkout.result("far-1")

    assert result.outcome is CheckoutOutcome.REJECTED
    assert result.order_id is None
    assert len(services.orders) == 0


async def test_gateway_payment_confirmed_by_client(checkout, services):
    await checkout.start_checkout(request("pay-1"))
    status = await wait_for_state(checkout, "pay-1", CheckoutState.AWAITING_CONFIRMATION)
    assert status.client_secret == f"{status.intent_id}_secret"

    order = await services.orders.find_by_field("id", status.order_id)
    assert order.payment_status is PaymentStatus.PENDING_PAYMENT
    assert order.stripe_payment_intent_id == status.intent_id

    services.gateway.settle(status.intent_id)
    assert await checkout.confirm_from_client("pay-1", status.intent_id)
    result = await checkout.result("pay-1")

    assert result.outcome is CheckoutOutcome.PAID
    assert (await services.orders.find_by_field("id", status.order_id)).payment_status is PaymentStatus.PAID
    assert services.gateway.intents[status.intent_id].amount_minor_units == 2000


async def test_decline_then_retry_reuses_the_order(checkout, services):
    services.gateway.decline_next = True
    await checkout.start_checkout(request("retry-1"))
    failed = await wait_for_state(checkout, "retry-1", CheckoutState.FAILED, PaymentStatus.FAILED)
    assert failed.last_error == "card_declined"
    order = await services.orders.find_by_field("id", failed.order_id)
    assert order.payment_status is PaymentStatus.FAILED
    immutable = order.model_dump(exclude=set(MUTABLE_ORDER_FIELDS))

    assert await checkout.retry("retry-1")
    status = await wait_for_state(checkout, "retry-1", CheckoutState.AWAITING_CONFIRMATION)
    assert status.attempts == 2
    assert await checkout.reconcile(gateway_success(status.intent_id, "evt_retry")) is ReconcileOutcome.PAID
    result = await checkout.result("retry-1")

    assert result.outcome is CheckoutOutcome.PAID
    assert result.order_id == failed.order_id
    assert len(services.orders) == 1
    paid = await services.orders.find_by_field("id", failed.order_id)
    assert paid.model_dump(exclude=set(MUTABLE_ORDER_FIELDS)) == immutable
    assert paid.payment_status is PaymentStatus.PAID
    assert paid.stripe_payment_intent_id == status.intent_id


async def test_cancel_releases_the_coupon(checkout, services):
    services.coupons.add(
        Coupon(id="c1", code="TENOFF", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"), max_uses_total=5)
    )
    await checkout.start_checkout(request("cancel-1", coupon_code="tenoff"))
    status = await wait_for_state(checkout, "cancel-1", CheckoutState.AWAITING_CONFIRMATION)
    assert status.total == Decimal("18.00")
    assert (await services.coupons.get("c1")).current_uses == 1

    assert await checkout.cancel("cancel-1")
    result = await checkout.result("cancel-1")

    assert result.outcome is CheckoutOutcome.CANCELLED
    order = await services.orders.find_by_field("id", status.order_id)
    assert order.payment_status is PaymentStatus.FAILED
    assert order.status is OrderStatus.CANCELLED
    assert (await services.coupons.get("c1")).current_uses == 0


async def test_abandoned_payment_is_cancelled_when_the_window_closes(checkout, services):
    await checkout.start_checkout(request("abandon-1"))
    result = await checkout.result("abandon-1")

    assert result.outcome is CheckoutOutcome.CANCELLED
    order = await services.orders.find_by_field("id", result.order_id)
    assert order.last_payment_error == "payment_window_expired"


async def test_expired_coupon_rejects_the_checkout(checkout, services):
    services.coupons.add(
        Coupon(
            id="c2",
            code="SPRING",
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("3"),
            valid_until=datetime.now(timezone.utc) - timedelta(days=30),
        )
    )
    await checkout.start_checkout(request("coupon-1", coupon_code="SPRING"))
    result = await checkout.result("coupon-1")

    assert result.outcome is CheckoutOutcome.REJECTED
    assert result.rejection == "Expired"
    assert len(services.orders) == 0


async def test_free_order_is_paid_without_gateway(checkout, services):
    services.coupons.add(
        Coupon(id="c3", code="FREEPIZZA", discount_type=DiscountType.FIXED, discount_value=Decimal("50"))
    )
    await checkout.start_checkout(request("free-1", coupon_code="FREEPIZZA"))
    result = await checkout.result("free-1")

    assert result.outcome is CheckoutOutcome.PAID
    assert result.breakdown.total == Decimal("0.00")
    assert services.gateway.intents == {}


async def test_failure_without_retry_gives_the_coupon_back(checkout, services):
    services.coupons.add(
        Coupon(id="c4", code="ONCE", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10"), max_uses_total=1)
    )
    services.gateway.decline_next = True
    await checkout.start_checkout(request("lapse-1", coupon_code="ONCE"))
    result = await checkout.result("lapse-1")

    assert result.outcome is CheckoutOutcome.FAILED
    assert (await services.orders.find_by_field("id", result.order_id)).payment_status is PaymentStatus.FAILED
    assert (await services.coupons.get("c4")).current_uses == 0


async def test_processing_debit_outlives_the_payment_window(checkout, services, monkeypatch):
    checks = []

    async def retrieve_status(intent_id):
        # Still processing when the payment window closes, settled by the next check.
        checks.append(intent_id)
        return "processing" if len(checks) == 1 else "succeeded"

    monkeypatch.setattr(services.gateway, "retrieve_status", retrieve_status)
    await checkout.start_checkout(request("sepa-1", payment_method=PaymentMethod.SEPA_DEBIT))
    result = await checkout.result("sepa-1")

    assert result.outcome is CheckoutOutcome.PAID
    assert checks == result.intent_ids * 2
    order = await services.orders.find_by_field("id", result.order_id)
    assert order.payment_status is PaymentStatus.PAID
    assert order.status is OrderStatus.RECEIVED


async def test_gateway_callback_is_reconciled_by_the_worker(checkout, services):
    await checkout.start_checkout(request("pay-2"))
    status = await wait_for_state(checkout, "pay-2", CheckoutState.AWAITING_CONFIRMATION)

    event = gateway_success(status.intent_id, "evt_pay2", orderRef="pay-2")
    assert await checkout.reconcile(event) is ReconcileOutcome.PAID
    result = await checkout.result("pay-2")
    assert result.outcome is CheckoutOutcome.PAID
    assert (await services.orders.find_by_field("id", status.order_id)).payment_status is PaymentStatus.PAID

    # Stripe redelivers the same event, and a second event for the same intent arrives.
    assert await checkout.reconcile(event) is ReconcileOutcome.DUPLICATE
    again = event.model_copy(update={"event_id": "evt_pay2_again"})
    assert await checkout.reconcile(again) is ReconcileOutcome.DUPLICATE
