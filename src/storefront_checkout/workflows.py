"""
Temporal workflows — CheckoutWorkflow and ReconcilePaymentWorkflow.

A Temporal **workflow** is a durable, fault-tolerant function that orchestrates
the execution of activities. The Temporal server persists its state at every
`await` point, so if the worker crashes the workflow automatically resumes
from the last checkpoint — no manual recovery needed.

One workflow execution owns one checkout, from submission to a terminal
payment state. Workflow id: `checkout-<order_ref>`.

Key constraints inside a workflow:
  - Must be **deterministic**: no I/O, no randomness, no system clock.
    (Use activities for side-effects; use `workflow.now()` for time.)
  - Pricing, zone resolution and the payment lifecycle are pure, so they
    run right here; everything that touches the network is an activity.
  - Use `workflow.logger` instead of the stdlib `logging` module.

The order row is always created BEFORE the gateway is contacted, so a
gateway failure can never leave a charge without a matching order.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError

# ── Sandbox-safe imports ─────────────────────────────────────────────
# Pydantic and our own modules use constructs the sandbox would flag, so we
# wrap them with `workflow.unsafe.imports_passed_through()`. The imported code
# is only used for data modelling and deterministic computation.
with workflow.unsafe.imports_passed_through():
    from storefront_checkout.activities import (
        check_coupon,
        create_order,
        geocode_address,
        reconcile_payment,
        redeem_coupon,
        release_coupon,
        request_payment_intent,
        send_order_confirmation,
        update_payment_status,
        verify_payment_intent,
    )
    from storefront_checkout.domain.errors import CouponRejected, RangeError, RejectionReason, ValidationError
    from storefront_checkout.domain.lifecycle import CheckoutState, PaymentLifecycle
    from storefront_checkout.domain.models import (
        DeliveryQuote,
        DiscountDescriptor,
        Order,
        OrderStatus,
        OrderType,
        PaymentStatus,
        PriceBreakdown,
    )
    from storefront_checkout.domain.payloads import (
        CheckoutOutcome,
        CheckoutRequest,
        CheckoutResult,
        CheckoutStatus,
        ConfirmationInput,
        CouponLookupInput,
        CouponRedemption,
        CreateOrderInput,
        GatewayEvent,
        GeocodeInput,
        IntentRequest,
        PaymentEvent,
        PaymentEventSource,
        PaymentIntent,
        PaymentStatusUpdate,
        ReconcileOutcome,
        VerifyIntentInput,
    )
    from storefront_checkout.domain.pricing import PricingStrategy, StandardPricingStrategy
    from storefront_checkout.domain.zones import resolve_delivery

CONFIRMED = "confirmed"
FAILED = "failed"


def failure_type(error: ActivityError) -> str | None:
    """The ApplicationError type behind an activity failure (the domain error class name)."""
    cause = error.cause
    return cause.type if isinstance(cause, ApplicationError) else None


def failure_detail(error: ActivityError) -> str | None:
    cause = error.cause
    if isinstance(cause, ApplicationError) and cause.details:
        return str(cause.details[0])
    return None


def intent_failure_reason(kind: str | None, detail: str | None) -> str:
    """Payment error recorded on the order when no intent could be created."""
    if kind == "GatewayDeclineError":
        return detail or "declined"
    if kind == "ValidationError":
        return "invalid_payment_request"
    return "gateway_unreachable"


def initial_payment_status(via_gateway: bool, nothing_to_charge: bool) -> PaymentStatus:
    if not via_gateway:
        return PaymentStatus.PENDING
    if nothing_to_charge:
        return PaymentStatus.PAID
    return PaymentStatus.PENDING_PAYMENT


# What happens when the payment window closes, decided by the intent's gateway status.
SETTLE = "settle"
EXTEND = "extend"
EXPIRE = "expire"


def window_expiry_action(gateway_status: str | None) -> str:
    """`succeeded` settles (the callback went missing), `processing` waits longer."""
    if gateway_status == "succeeded":
        return SETTLE
    if gateway_status == "processing":
        return EXTEND
    return EXPIRE


def late_settlements(events: list[tuple[str, PaymentEvent]], intent_ids: list[str]) -> list[str]:
    """Intents of this checkout with a pending gateway-signed success."""
    return [
        event.intent_id
        for kind, event in events
        if kind == CONFIRMED and event.source is PaymentEventSource.WEBHOOK and event.intent_id in intent_ids
    ]


@workflow.defn
class CheckoutWorkflow:
    """Orchestrates pricing, order creation and the payment lifecycle.

    Execution flow:
        1. Geocode + zone resolution (delivery only; floor fee if the geocoder is down)
        2. Coupon lookup and validation
        3. Price (deterministic, in-workflow)
        4. create_order activity        → order row, before any gateway call
        5. redeem_coupon activity       → compare-and-increment, per order id
        6a. cash/card: placed, settled at fulfillment
        6b. gateway: request_payment_intent → wait for confirmation signals

    Supports:
        - **Signals** `payment_confirmed`, `payment_failed`, `cancel_payment`
          and `retry_payment`.
        - **Query** `get_status`.
    """

    def __init__(self) -> None:
        self.lifecycle = PaymentLifecycle()
        self.request: CheckoutRequest | None = None
        self.pricing: PricingStrategy | None = None
        self.breakdown: PriceBreakdown | None = None
        self.delivery: DeliveryQuote | None = None
        self.discount: DiscountDescriptor | None = None
        self.order: Order | None = None
        self.intent: PaymentIntent | None = None
        self.events: list[tuple[str, PaymentEvent]] = []
        self.cancel_requested = False
        self.retry_requested = False
        self.late_settlements: list[str] = []
        self.activity_opts: dict = {}

    # ── Signals ──────────────────────────────────────────────────

    @workflow.signal
    def payment_confirmed(self, event: PaymentEvent) -> None:
        self.events.append((CONFIRMED, event))

    @workflow.signal
    def payment_failed(self, event: PaymentEvent) -> None:
        self.events.append((FAILED, event))

    @workflow.signal
    def cancel_payment(self) -> None:
        self.cancel_requested = True

    @workflow.signal
    def retry_payment(self) -> None:
        self.retry_requested = True

    # ── Query ────────────────────────────────────────────────────

    @workflow.query
    def get_status(self) -> CheckoutStatus:
        return CheckoutStatus(
            order_ref=self.request.order_ref if self.request else "",
            state=self.lifecycle.state,
            order_id=self.order.id if self.order else None,
            order_number=self.order.order_number if self.order else None,
            payment_status=self.order.payment_status if self.order else None,
            intent_id=self.lifecycle.current_intent_id,
            client_secret=self.intent.client_secret if self.intent else None,
            total=self.order.breakdown.total if self.order else None,
            attempts=self.lifecycle.attempts,
            last_error=self.lifecycle.last_error,
        )

    # ── Helpers ──────────────────────────────────────────────────

    def _result(
        self, outcome: CheckoutOutcome, rejection: str | None = None, payment_status: PaymentStatus | None = None
    ) -> CheckoutResult:
        return CheckoutResult(
            order_ref=self.request.order_ref if self.request else "",
            outcome=outcome,
            state=self.lifecycle.state,
            order_id=self.order.id if self.order else None,
            order_number=self.order.order_number if self.order else None,
            payment_status=payment_status or (self.order.payment_status if self.order else None),
            breakdown=self.breakdown.rounded() if self.breakdown else None,
            delivery=self.delivery,
            rejection=rejection,
            intent_ids=list(self.lifecycle.intent_ids),
            attempts=self.lifecycle.attempts,
            late_settlements=list(self.late_settlements),
        )

    async def _quote_delivery(self, req: CheckoutRequest) -> DeliveryQuote | None:
        if req.order_type is not OrderType.DELIVERY:
            return None
        if req.delivery_address is None or not req.delivery_address.is_complete():
            raise ValidationError("A complete delivery address is required for delivery orders")
        try:
            point = await workflow.execute_activity(
                geocode_address,
                GeocodeInput(address=req.delivery_address, country=req.delivery.country.code),
                **self.activity_opts,
            )
        except ActivityError:
            workflow.logger.warning("Geocoder unavailable for %s, applying the floor delivery fee", req.order_ref)
            point = None
        origin = req.branch.location if req.branch else req.delivery.origin
        return resolve_delivery(origin, point, req.delivery)

    async def _check_coupon(self, req: CheckoutRequest, subtotal: Decimal) -> DiscountDescriptor | None:
        if not req.coupon_code:
            return None
        check = await workflow.execute_activity(
            check_coupon,
            CouponLookupInput(
                code=req.coupon_code,
                now=workflow.now(),
                subtotal=subtotal,
                order_type=req.order_type,
                branch_id=req.branch.id if req.branch else None,
            ),
            **self.activity_opts,
        )
        if check.rejection is not None:
            raise CouponRejected(check.rejection, req.coupon_code)
        return check.discount

    def _price(self, req: CheckoutRequest) -> PriceBreakdown:
        return self.pricing.price_order(
            req.lines,
            order_type=req.order_type,
            delivery=self.delivery,
            discount=self.discount,
            payment_method=req.payment_method,
        )

    async def _update(
        self, payment_status: PaymentStatus, status: OrderStatus | None = None, error: str | None = None
    ) -> None:
        self.order = await workflow.execute_activity(
            update_payment_status,
            PaymentStatusUpdate(
                order_id=self.order.id, payment_status=payment_status, status=status, last_payment_error=error
            ),
            **self.activity_opts,
        )

    async def _mark_failed(self, reason: str, intent_id: str | None = None) -> None:
        if self.lifecycle.fail(reason, intent_id):
            workflow.logger.info("Payment for order %s failed: %s", self.order.id, reason)
            await self._update(PaymentStatus.FAILED, error=reason)

    async def _release_coupon(self) -> None:
        """Give the coupon use back; the order will never be paid."""
        if self.discount is None:
            return
        await workflow.execute_activity(
            release_coupon,
            CouponRedemption(coupon_id=self.discount.coupon_id, order_id=self.order.id),
            **self.activity_opts,
        )

    async def _mark_cancelled(self, reason: str) -> None:
        if not self.lifecycle.cancel():
            return
        workflow.logger.info("Payment for order %s cancelled: %s", self.order.id, reason)
        await self._update(PaymentStatus.FAILED, status=OrderStatus.CANCELLED, error=reason)
        await self._release_coupon()

    async def _flag_late_settlements(self) -> None:
        # A success signalled while the cancel was being recorded: the money moved anyway.
        self.late_settlements = late_settlements(self.events, self.lifecycle.intent_ids)
        self.events.clear()
        if not self.late_settlements:
            return
        workflow.logger.error(
            "Order %s was cancelled but intents %s settled - manual intervention required",
            self.order.id,
            ", ".join(self.late_settlements),
        )
        await self._update(PaymentStatus.FAILED, status=OrderStatus.CANCELLED, error="settled_after_cancel")

    async def _send_confirmation(self) -> None:
        # Best-effort: a lost e-mail never changes the order outcome.
        try:
            await workflow.execute_activity(
                send_order_confirmation,
                ConfirmationInput(order_id=self.order.id),
                start_to_close_timeout=timedelta(seconds=30),
                retry_policy=RetryPolicy(maximum_attempts=3),
            )
        except ActivityError:
            workflow.logger.warning("Confirmation e-mail for order %s could not be sent", self.order.id)

    async def _gateway_status(self, intent_id: str) -> str | None:
        """The intent's status at the gateway; None when the gateway can't be asked."""
        try:
            return await workflow.execute_activity(
                verify_payment_intent, VerifyIntentInput(intent_id=intent_id), **self.activity_opts
            )
        except ActivityError:
            workflow.logger.warning("Could not verify intent %s with the gateway", intent_id)
            return None

    # ── Payment steps ────────────────────────────────────────────

    async def _request_intent(self) -> None:
        """awaiting_gateway_intent → awaiting_confirmation, or → failed."""
        req = self.request
        try:
            self.intent = await workflow.execute_activity(
                request_payment_intent,
                IntentRequest(
                    order_id=self.order.id,
                    order_ref=req.order_ref,
                    order_number=self.order.order_number,
                    order_type=req.order_type,
                    amount_minor_units=self.order.breakdown.amount_minor_units(),
                    currency=req.payment.currency,
                    attempt=self.lifecycle.attempts,
                    customer_email=req.customer.email,
                ),
                **self.activity_opts,
            )
        except ActivityError as e:
            await self._mark_failed(intent_failure_reason(failure_type(e), failure_detail(e)))
            return
        self.lifecycle.intent_created(self.intent.intent_id)
        self.retry_requested = False

    async def _process_event(self, kind: str, event: PaymentEvent) -> None:
        if event.intent_id not in self.lifecycle.intent_ids:
            workflow.logger.warning("Ignoring %s event for unknown intent %s", kind, event.intent_id)
            return

        if kind == FAILED:
            await self._mark_failed(event.error_code or "payment_failed", event.intent_id)
            return

        if self.lifecycle.state is CheckoutState.PAID:
            workflow.logger.info("Duplicate confirmation for order %s ignored", self.order.id)
            return
        if event.source is PaymentEventSource.CLIENT:
            # The browser's word is verified with the gateway; the webhook is authoritative.
            status = await self._gateway_status(event.intent_id)
            if status != "succeeded":
                workflow.logger.info("Intent %s reported by client is %s, not settled", event.intent_id, status)
                return
        if self.lifecycle.confirm(event.intent_id):
            await self._update(PaymentStatus.PAID)

    async def _window_closed(self, settlement_window: timedelta) -> timedelta | None:
        """Ask the gateway before giving up on the payment. Returns an extension, if any."""
        intent_id = self.lifecycle.current_intent_id
        action = window_expiry_action(await self._gateway_status(intent_id))
        if action == EXTEND:
            workflow.logger.info("Intent %s is still processing, extending the payment window", intent_id)
            return settlement_window
        if action == SETTLE:
            workflow.logger.warning("Intent %s settled without a callback, marking order %s paid", intent_id, self.order.id)
            if self.lifecycle.confirm(intent_id):
                await self._update(PaymentStatus.PAID)
        else:
            # Abandoned payment page; a late settlement is caught by reconciliation.
            await self._mark_cancelled("payment_window_expired")
        return None

    async def _await_confirmation(self, window: timedelta, settlement_window: timedelta) -> None:
        """Stay in awaiting_confirmation until paid, failed or cancelled."""
        deadline = workflow.now() + window
        while self.lifecycle.state is CheckoutState.AWAITING_CONFIRMATION:
            remaining = deadline - workflow.now()
            expired = remaining <= timedelta(0)
            if not expired:
                try:
                    await workflow.wait_condition(lambda: bool(self.events) or self.cancel_requested, timeout=remaining)
                except asyncio.TimeoutError:
                    expired = True
            # Payment events win over a cancel that raced with them.
            if self.events:
                await self._process_event(*self.events.pop(0))
            elif self.cancel_requested:
                self.cancel_requested = False
                await self._mark_cancelled("cancelled_by_payer")
            elif expired:
                extension = await self._window_closed(settlement_window)
                if extension is not None:
                    deadline = workflow.now() + extension

    async def _await_retry(self, window: timedelta) -> bool:
        """In failed: wait for retry, cancel or a late confirmation. False when the window ran out."""
        while self.lifecycle.state is CheckoutState.FAILED:
            try:
                await workflow.wait_condition(
                    lambda: bool(self.events) or self.cancel_requested or self.retry_requested, timeout=window
                )
            except asyncio.TimeoutError:
                return False
            if self.events:
                await self._process_event(*self.events.pop(0))
            elif self.cancel_requested:
                self.cancel_requested = False
                await self._mark_cancelled("cancelled_by_payer")
            elif self.retry_requested:
                self.retry_requested = False
                self.lifecycle.retry()
                workflow.logger.info("Retrying payment for order %s (attempt %d)", self.order.id, self.lifecycle.attempts)
                await self._update(PaymentStatus.PENDING_PAYMENT)
        return True

    # ── Run (main workflow logic) ────────────────────────────────

    @workflow.run
    async def run(self, req: CheckoutRequest) -> CheckoutResult:
        self.request = req
        self.pricing = StandardPricingStrategy(req.pricing)
        policy = req.payment

        # Transport failures retry with capped exponential backoff; domain
        # errors arrive as non-retryable ApplicationErrors and fail at once.
        self.activity_opts = {
            "start_to_close_timeout": timedelta(seconds=30),
            "retry_policy": RetryPolicy(
                maximum_attempts=policy.max_attempts,
                initial_interval=timedelta(seconds=policy.initial_backoff_seconds),
                backoff_coefficient=policy.backoff_coefficient,
                maximum_interval=timedelta(seconds=policy.max_backoff_seconds),
            ),
        }

        workflow.logger.info("Starting checkout %s (%s, %s)", req.order_ref, req.order_type.value, req.payment_method.value)

        try:
            self.delivery = await self._quote_delivery(req)
            self.breakdown = self._price(req)
            self.discount = await self._check_coupon(req, self.breakdown.subtotal)
            if self.discount is not None:
                self.breakdown = self._price(req)
        except CouponRejected as e:
            return self._result(CheckoutOutcome.REJECTED, rejection=e.reason.value)
        except (ValidationError, RangeError) as e:
            workflow.logger.info("Checkout %s rejected: %s", req.order_ref, e)
            return self._result(CheckoutOutcome.REJECTED, rejection=str(e))

        via_gateway = req.pricing.is_gateway_method(req.payment_method)
        nothing_to_charge = self.breakdown.rounded().amount_minor_units() == 0

        self.order = await workflow.execute_activity(
            create_order,
            CreateOrderInput(
                order=Order(
                    client_reference=req.order_ref,
                    lines=req.lines,
                    breakdown=self.breakdown.rounded(),
                    customer=req.customer,
                    order_type=req.order_type,
                    branch_id=req.branch.id if req.branch else None,
                    delivery_address=req.delivery_address if req.order_type is OrderType.DELIVERY else None,
                    coupon_id=self.discount.coupon_id if self.discount else None,
                    payment_method=req.payment_method,
                    payment_status=initial_payment_status(via_gateway, nothing_to_charge),
                    created_at=workflow.now(),
                )
            ),
            **self.activity_opts,
        )

        if self.discount is not None:
            try:
                await workflow.execute_activity(
                    redeem_coupon,
                    CouponRedemption(coupon_id=self.discount.coupon_id, order_id=self.order.id),
                    **self.activity_opts,
                )
            except ActivityError as e:
                if failure_type(e) != "CouponRejected":
                    raise
                # Lost the race for the last use; the fresh order is void.
                await self._update(
                    PaymentStatus.FAILED, status=OrderStatus.CANCELLED, error="coupon_usage_exhausted"
                )
                return self._result(CheckoutOutcome.REJECTED, rejection=RejectionReason.USAGE_EXHAUSTED.value)

        if not via_gateway:
            self.lifecycle.settle_offline(self.order.id)
            await self._send_confirmation()
            return self._result(CheckoutOutcome.PLACED)
        if nothing_to_charge:
            self.lifecycle.settle_free(self.order.id)
            await self._send_confirmation()
            return self._result(CheckoutOutcome.PAID)

        payment_window = timedelta(seconds=policy.payment_window_seconds)
        settlement_window = timedelta(seconds=policy.settlement_window_seconds)
        retry_window = timedelta(seconds=policy.retry_window_seconds)
        self.lifecycle.start_gateway(self.order.id)
        while True:
            if self.lifecycle.state is CheckoutState.AWAITING_GATEWAY_INTENT:
                await self._request_intent()
            if self.lifecycle.state is CheckoutState.AWAITING_CONFIRMATION:
                await self._await_confirmation(payment_window, settlement_window)

            if self.lifecycle.state is CheckoutState.PAID:
                workflow.logger.info("Order %s paid", self.order.id)
                await self._send_confirmation()
                return self._result(CheckoutOutcome.PAID)
            if self.lifecycle.state is CheckoutState.CANCELLED:
                await self._flag_late_settlements()
                return self._result(CheckoutOutcome.CANCELLED)

            if not await self._await_retry(retry_window):
                workflow.logger.info("No retry for order %s within the retry window", self.order.id)
                await self._release_coupon()
                return self._result(CheckoutOutcome.FAILED)


@workflow.defn
class ReconcilePaymentWorkflow:
    """Runs one gateway callback through reconciliation on a worker.

    The worker holds the order store the checkouts write to, so the lookup
    and any direct store update happen there. Workflow id
    `reconcile-<gateway event id>`: a redelivered callback is not
    reconciled twice.
    """

    @workflow.run
    async def run(self, event: GatewayEvent) -> ReconcileOutcome:
        return await workflow.execute_activity(
            reconcile_payment,
            event,
            start_to_close_timeout=timedelta(seconds=30),
            retry_policy=RetryPolicy(maximum_attempts=5, maximum_interval=timedelta(seconds=10)),
        )
