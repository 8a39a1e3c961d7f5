from datetime import datetime, timezone
from decimal import Decimal

import pytest
from temporalio.service import RPCError, RPCStatusCode

from storefront_checkout.domain.models import (
    CartLine,
    Customer,
    MenuItem,
    Order,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    PriceBreakdown,
)
from storefront_checkout.domain.payloads import (
    GatewayEvent,
    GatewayEventKind,
    PaymentEvent,
    PaymentEventSource,
    ReconcileOutcome,
)
from storefront_checkout.services.reconciliation import PaymentReconciler, TemporalSignaller, event_from_stripe
from storefront_checkout.services.stores import InMemoryOrderStore


class FakeSignaller:
    def __init__(self, running=True):
        self.running = running
        self.confirmed = []
        self.failed = []

    async def payment_confirmed(self, order_ref, event):
        self.confirmed.append((order_ref, event))
        return self.running

    async def payment_failed(self, order_ref, event):
        self.failed.append((order_ref, event))
        return self.running


async def stored_order(store, ref="ref-1", intent_id="pi_1", **fields) -> Order:
    order = Order(
        client_reference=ref,
        lines=[CartLine(item=MenuItem(id="1", name="Pizza", base_price=Decimal("10")))],
        breakdown=PriceBreakdown(lines=[], subtotal=Decimal("10"), total=Decimal("10")),
        customer=Customer(name="Aino", phone="+358401234567"),
        order_type=OrderType.PICKUP,
        payment_method=PaymentMethod.ONLINE_CARD,
        payment_status=PaymentStatus.PENDING_PAYMENT,
        stripe_payment_intent_id=intent_id,
        created_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        **fields,
    )
    return await store.find_by_field("id", await store.create(order))


@pytest.fixture
def store():
    return InMemoryOrderStore()


def succeeded(intent_id="pi_1", **metadata) -> GatewayEvent:
    return GatewayEvent(kind=GatewayEventKind.SUCCEEDED, intent_id=intent_id, metadata=metadata)


def test_event_from_stripe_payment_failed():
    event = event_from_stripe(
        {
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_9",
                    "metadata": {"orderId": 4, "orderRef": "ref-4"},
                    "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds"},
                }
            },
        }
    )
    assert event.kind is GatewayEventKind.FAILED
    assert event.intent_id == "pi_9"
    assert event.metadata == {"orderId": "4", "orderRef": "ref-4"}
    assert event.error_code == "insufficient_funds"


def test_event_from_stripe_refund_uses_the_charge_intent():
    event = event_from_stripe({"type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_9"}}})
    assert event.kind is GatewayEventKind.REFUNDED
    assert event.intent_id == "pi_9"


def test_event_from_stripe_ignores_other_types():
    assert event_from_stripe({"type": "customer.created", "data": {"object": {}}}) is None


async def test_success_is_handed_to_the_running_checkout(store):
    order = await stored_order(store)
    signaller = FakeSignaller()
    outcome = await PaymentReconciler(store, signaller).handle(succeeded())
    assert outcome is ReconcileOutcome.PAID
    assert signaller.confirmed[0][0] == "ref-1"
    assert signaller.confirmed[0][1].source is PaymentEventSource.WEBHOOK
    # The checkout workflow records the payment; the reconciler leaves the row alone.
    assert (await store.find_by_field("id", order.id)).payment_status is PaymentStatus.PENDING_PAYMENT


async def test_success_without_running_checkout_marks_order_paid(store):
    order = await stored_order(store, last_payment_error="card_declined")
    outcome = await PaymentReconciler(store, FakeSignaller(running=False)).handle(succeeded())
    assert outcome is ReconcileOutcome.PAID
    updated = await store.find_by_field("id", order.id)
    assert updated.payment_status is PaymentStatus.PAID
    assert updated.last_payment_error is None


async def test_duplicate_success_is_a_noop(store):
    await stored_order(store)
    signaller = FakeSignaller(running=False)
    reconciler = PaymentReconciler(store, signaller)
    await reconciler.handle(succeeded())
    assert await reconciler.handle(succeeded()) is ReconcileOutcome.DUPLICATE
    assert len(signaller.confirmed) == 1


async def test_fallback_to_client_reference_writes_back_intent(store):
    order = await stored_order(store, ref="ref-7", intent_id=None)
    outcome = await PaymentReconciler(store, FakeSignaller()).handle(succeeded("pi_7", orderRef="ref-7"))
    assert outcome is ReconcileOutcome.PAID
    updated = await store.find_by_field("id", order.id)
    assert updated.stripe_payment_intent_id == "pi_7"


async def test_unmatched_event_is_kept_for_manual_resolution(store, caplog):
    reconciler = PaymentReconciler(store, FakeSignaller())
    outcome = await reconciler.handle(succeeded("pi_ghost", orderRef="nope"))
    assert outcome is ReconcileOutcome.UNRECONCILED
    assert [e.intent_id for e in reconciler.unreconciled] == ["pi_ghost"]
    assert "manual intervention" in caplog.text


async def test_success_for_cancelled_order_is_unreconciled(store):
    order = await stored_order(store)
    await store.update(order.id, {"payment_status": PaymentStatus.FAILED, "status": OrderStatus.CANCELLED})
    reconciler = PaymentReconciler(store, FakeSignaller())
    assert await reconciler.handle(succeeded()) is ReconcileOutcome.UNRECONCILED
    assert (await store.find_by_field("id", order.id)).payment_status is PaymentStatus.FAILED


class CancellingSignaller(FakeSignaller):
    """The checkout records the payer's cancel and finishes before the success signal lands."""

    def __init__(self, store, order_id):
        super().__init__(running=False)
        self.store = store
        self.order_id = order_id

    async def payment_confirmed(self, order_ref, event):
        await self.store.update(
            self.order_id,
            {"payment_status": PaymentStatus.FAILED, "status": OrderStatus.CANCELLED, "last_payment_error": "cancelled_by_payer"},
        )
        return await super().payment_confirmed(order_ref, event)


async def test_success_racing_a_cancel_is_unreconciled(store, caplog):
    order = await stored_order(store)
    reconciler = PaymentReconciler(store, CancellingSignaller(store, order.id))

    assert await reconciler.handle(succeeded()) is ReconcileOutcome.UNRECONCILED
    assert [e.intent_id for e in reconciler.unreconciled] == ["pi_1"]
    assert "manual intervention" in caplog.text
    stored = await store.find_by_field("id", order.id)
    assert stored.payment_status is PaymentStatus.FAILED
    assert stored.status is OrderStatus.CANCELLED


async def test_failure_is_forwarded_to_running_checkout(store):
    order = await stored_order(store)
    signaller = FakeSignaller()
    event = GatewayEvent(kind=GatewayEventKind.FAILED, intent_id="pi_1", error_code="card_declined")
    assert await PaymentReconciler(store, signaller).handle(event) is ReconcileOutcome.FAILED
    assert signaller.failed[0][1].error_code == "card_declined"
    assert (await store.find_by_field("id", order.id)).payment_status is PaymentStatus.PENDING_PAYMENT


async def test_failure_without_running_checkout_updates_the_store(store):
    order = await stored_order(store)
    event = GatewayEvent(kind=GatewayEventKind.FAILED, intent_id="pi_1", error_code="expired_card")
    await PaymentReconciler(store, FakeSignaller(running=False)).handle(event)
    updated = await store.find_by_field("id", order.id)
    assert updated.payment_status is PaymentStatus.FAILED
    assert updated.last_payment_error == "expired_card"


async def test_failure_after_payment_is_ignored(store):
    order = await stored_order(store)
    await store.update(order.id, {"payment_status": PaymentStatus.PAID})
    event = GatewayEvent(kind=GatewayEventKind.FAILED, intent_id="pi_1")
    assert await PaymentReconciler(store, FakeSignaller()).handle(event) is ReconcileOutcome.IGNORED


async def test_refund(store):
    order = await stored_order(store)
    event = GatewayEvent(kind=GatewayEventKind.REFUNDED, intent_id="pi_1")
    assert await PaymentReconciler(store, FakeSignaller()).handle(event) is ReconcileOutcome.REFUNDED
    assert (await store.find_by_field("id", order.id)).payment_status is PaymentStatus.REFUNDED


def test_event_from_stripe_keeps_the_event_id():
    event = event_from_stripe(
        {"id": "evt_42", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "metadata": {}}}}
    )
    assert event.event_id == "evt_42"


class FakeHandle:
    def __init__(self, error=None):
        self.error = error
        self.signals = []

    async def signal(self, name, arg):
        if self.error is not None:
            raise self.error
        self.signals.append((name, arg.intent_id))


class FakeClient:
    def __init__(self, handle):
        self.handle = handle
        self.workflow_ids = []

    def get_workflow_handle(self, workflow_id):
        self.workflow_ids.append(workflow_id)
        return self.handle


async def test_temporal_signaller_addresses_the_checkout_workflow():
    handle = FakeHandle()
    client = FakeClient(handle)
    event = PaymentEvent(intent_id="pi_1", source=PaymentEventSource.WEBHOOK, status="succeeded")
    assert await TemporalSignaller(client).payment_confirmed("ref-1", event)
    assert await TemporalSignaller(client).payment_failed("ref-1", event)
    assert client.workflow_ids == ["checkout-ref-1", "checkout-ref-1"]
    assert handle.signals == [("payment_confirmed", "pi_1"), ("payment_failed", "pi_1")]


async def test_temporal_signaller_reports_finished_checkouts():
    handle = FakeHandle(RPCError("workflow execution already completed", RPCStatusCode.NOT_FOUND, b""))
    event = PaymentEvent(intent_id="pi_1", source=PaymentEventSource.WEBHOOK)
    assert not await TemporalSignaller(FakeClient(handle)).payment_confirmed("ref-1", event)
