"""
Payment reconciliation.

Runs inside the worker (see the `reconcile_payment` activity), next to the
order store the checkout workflows write to. Matches an asynchronous gateway
callback to the order it pays for and forwards the event to the order's
checkout workflow. The store is written directly only when no checkout
workflow is running for the order any more.

Lookup order:
  1. `stripe_payment_intent_id` on the order (primary correlation key);
  2. the `orderRef` intent metadata, i.e. the client-held order reference
     (secondary key). The intent id write-back can race with the payer's
     redirect, so an order may not carry its intent id yet.

A callback that matches no order, or that settles an order already
cancelled, is a ReconciliationMiss. It is logged at ERROR and kept in
`unreconciled` for manual resolution, never dropped.
"""

import logging
from typing import Protocol

from temporalio.client import Client
from temporalio.service import RPCError

from storefront_checkout.domain.errors import ReconciliationMiss
from storefront_checkout.domain.models import Order, OrderStatus, PaymentStatus
from storefront_checkout.domain.payloads import (
    GatewayEvent,
    GatewayEventKind,
    PaymentEvent,
    PaymentEventSource,
    ReconcileOutcome,
    checkout_workflow_id,
)
from storefront_checkout.services.stores import OrderStore

logger = logging.getLogger(__name__)


# Stripe event type -> kind. Other event types are acknowledged and ignored.
STRIPE_EVENT_KINDS = {
    "payment_intent.succeeded": GatewayEventKind.SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventKind.FAILED,
    "charge.refunded": GatewayEventKind.REFUNDED,
}


class CheckoutSignaller(Protocol):
    """Delivers payment events to running checkout workflows.

    Returns False when no running workflow can take the event.
    """

    async def payment_confirmed(self, order_ref: str, event: PaymentEvent) -> bool: ...

    async def payment_failed(self, order_ref: str, event: PaymentEvent) -> bool: ...


class TemporalSignaller:
    """Signals `checkout-<order_ref>` workflows by signal name.

    Addresses the workflow by name rather than through CheckoutWorkflow so the
    worker's activities can use it without importing the workflow module.
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    async def _signal(self, order_ref: str, name: str, event: PaymentEvent) -> bool:
        try:
            await self.client.get_workflow_handle(checkout_workflow_id(order_ref)).signal(name, event)
        except RPCError as e:
            logger.warning("Could not signal checkout %s: %s", order_ref, e)
            return False
        return True

    async def payment_confirmed(self, order_ref: str, event: PaymentEvent) -> bool:
        return await self._signal(order_ref, "payment_confirmed", event)

    async def payment_failed(self, order_ref: str, event: PaymentEvent) -> bool:
        return await self._signal(order_ref, "payment_failed", event)


def event_from_stripe(event: dict) -> GatewayEvent | None:
    """Build a GatewayEvent from a verified Stripe event; None for event types we don't handle."""
    kind = STRIPE_EVENT_KINDS.get(event.get("type", ""))
    if kind is None:
        return None
    obj = event["data"]["object"]
    if kind is GatewayEventKind.REFUNDED:
        intent_id = obj.get("payment_intent")
    else:
        intent_id = obj.get("id")
    error = obj.get("last_payment_error") or {}
    return GatewayEvent(
        kind=kind,
        intent_id=intent_id,
        event_id=event.get("id") or "",
        metadata={k: str(v) for k, v in (obj.get("metadata") or {}).items()},
        error_code=error.get("decline_code") or error.get("code"),
    )


class PaymentReconciler:
    def __init__(self, orders: OrderStore, signaller: CheckoutSignaller) -> None:
        self.orders = orders
        self.signaller = signaller
        self.unreconciled: list[GatewayEvent] = []

    async def locate(self, event: GatewayEvent) -> Order | None:
        order = await self.orders.find_by_field("stripe_payment_intent_id", event.intent_id)
        if order is not None:
            return order

        order_ref = event.metadata.get("orderRef")
        if not order_ref:
            return None
        order = await self.orders.find_by_field("client_reference", order_ref)
        if order is None:
            return None
        logger.warning("Order %s located by client reference %s for intent %s", order.id, order_ref, event.intent_id)
        if order.stripe_payment_intent_id is None:
            order = await self.orders.update(order.id, {"stripe_payment_intent_id": event.intent_id})
        return order

    def _miss(self, event: GatewayEvent, detail: str) -> ReconcileOutcome:
        miss = ReconciliationMiss(event.intent_id, detail)
        logger.error("%s (%s) - manual intervention required", miss, event.kind.value)
        self.unreconciled.append(event)
        return ReconcileOutcome.UNRECONCILED

    async def handle(self, event: GatewayEvent) -> ReconcileOutcome:
        order = await self.locate(event)
        if order is None:
            return self._miss(event, "no order matches the intent id or the client reference")

        signal = PaymentEvent(
            intent_id=event.intent_id,
            source=PaymentEventSource.WEBHOOK,
            status=event.kind.value,
            error_code=event.error_code,
            metadata=event.metadata,
        )

        if event.kind is GatewayEventKind.REFUNDED:
            await self.orders.update(order.id, {"payment_status": PaymentStatus.REFUNDED})
            logger.info("Order %s refunded", order.id)
            return ReconcileOutcome.REFUNDED

        if event.kind is GatewayEventKind.SUCCEEDED:
            if order.payment_status is PaymentStatus.PAID:
                logger.info("Order %s already paid, duplicate confirmation ignored", order.id)
                return ReconcileOutcome.DUPLICATE
            if order.status is OrderStatus.CANCELLED:
                return self._miss(event, f"order {order.id} was cancelled before the payment settled")
            if await self.signaller.payment_confirmed(order.client_reference, signal):
                # The running checkout records the payment itself.
                return ReconcileOutcome.PAID
            # No running checkout, so its last write is done: re-read before settling.
            order = await self.orders.find_by_field("id", order.id)
            if order.payment_status is PaymentStatus.PAID:
                return ReconcileOutcome.DUPLICATE
            if order.status is OrderStatus.CANCELLED:
                return self._miss(event, f"order {order.id} was cancelled while the payment settled")
            await self.orders.update(order.id, {"payment_status": PaymentStatus.PAID, "last_payment_error": None})
            logger.warning("No running checkout for order %s; marked paid from the callback", order.id)
            return ReconcileOutcome.PAID

        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            logger.info("Failure callback for settled order %s ignored", order.id)
            return ReconcileOutcome.IGNORED
        if not await self.signaller.payment_failed(order.client_reference, signal):
            await self.orders.update(
                order.id,
                {"payment_status": PaymentStatus.FAILED, "last_payment_error": event.error_code or "payment_failed"},
            )
        return ReconcileOutcome.FAILED
