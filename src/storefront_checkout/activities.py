"""
Temporal activities — thin wrappers delegating to the service layer.

An **activity** is a single unit of work in a Temporal workflow. Activities are
where side-effects happen: geocoding, store reads and writes, gateway calls,
e-mail.

Key points:
  - Decorated with `@activity.defn` so Temporal can discover and invoke them.
  - TransportError propagates unchanged, so the workflow's RetryPolicy
    retries it with backoff.
  - Every other checkout error is re-raised as a non-retryable
    ApplicationError whose `type` is the error class name; the workflow
    inspects that type to decide what happened.
  - Each activity accepts a single Pydantic model as input, serialized by
    pydantic_data_converter.
"""

import logging
from contextlib import contextmanager

from temporalio import activity
from temporalio.exceptions import ApplicationError

from storefront_checkout.domain.coupons import validate_coupon
from storefront_checkout.domain.errors import CheckoutError, CouponRejected, GatewayDeclineError, ValidationError
from storefront_checkout.domain.models import GeoPoint, Order
from storefront_checkout.domain.payloads import (
    ConfirmationInput,
    CouponCheck,
    CouponLookupInput,
    CouponRedemption,
    CreateOrderInput,
    GatewayEvent,
    GeocodeInput,
    IntentRequest,
    PaymentIntent,
    PaymentStatusUpdate,
    ReconcileOutcome,
    VerifyIntentInput,
)
from storefront_checkout.services.factory import ServiceFactory

logger = logging.getLogger(__name__)


@contextmanager
def domain_errors():
    """Let retryable errors through; make everything else non-retryable."""
    try:
        yield
    except CheckoutError as e:
        if e.retryable:
            raise
        details = []
        if isinstance(e, CouponRejected):
            details = [e.reason.value]
        elif isinstance(e, GatewayDeclineError):
            details = [e.code or "declined"]
        raise ApplicationError(str(e), *details, type=type(e).__name__, non_retryable=True) from e


@activity.defn
async def geocode_address(input: GeocodeInput) -> GeoPoint | None:
    """Look up the delivery address. None means no match (floor fee applies)."""
    logger.info("Activity geocode_address started for %r", input.address.as_query())
    with domain_errors():
        return await ServiceFactory.get_geocoder().geocode(input.address, input.country)


@activity.defn
async def check_coupon(input: CouponLookupInput) -> CouponCheck:
    """Fetch the coupon and run the validation checks against the order context."""
    coupon = await ServiceFactory.get_coupon_store().find_by_code(input.code)
    try:
        discount = validate_coupon(
            coupon,
            input.code,
            now=input.now,
            subtotal=input.subtotal,
            order_type=input.order_type,
            branch_id=input.branch_id,
        )
    except CouponRejected as e:
        logger.info("Coupon %r rejected: %s", input.code, e.reason.value)
        return CouponCheck(rejection=e.reason)
    return CouponCheck(discount=discount)


@activity.defn
async def create_order(input: CreateOrderInput) -> Order:
    """Persist the order row. Always runs before any gateway call.

    One row per checkout: a retried attempt whose first write landed gets
    the row it already created.
    """
    store = ServiceFactory.get_order_store()
    with domain_errors():
        existing = await store.find_by_field("client_reference", input.order.client_reference)
        if existing is not None:
            logger.info("Activity create_order found order %s for ref %s", existing.id, existing.client_reference)
            return existing
        order_id = await store.create(input.order)
        order = await store.find_by_field("id", order_id)
    logger.info("Activity create_order stored order %s for ref %s", order_id, input.order.client_reference)
    return order


@activity.defn
async def redeem_coupon(input: CouponRedemption) -> bool:
    """Count one coupon use for the order (idempotent per order id)."""
    with domain_errors():
        return await ServiceFactory.get_coupon_store().increment_usage(input.coupon_id, input.order_id)


@activity.defn
async def release_coupon(input: CouponRedemption) -> bool:
    with domain_errors():
        return await ServiceFactory.get_coupon_store().release_usage(input.coupon_id, input.order_id)


@activity.defn
async def request_payment_intent(input: IntentRequest) -> PaymentIntent:
    """Create a gateway intent and link it to the order straight away.

    Writing the intent id back immediately lets the webhook find the order by
    its primary correlation key.
    """
    logger.info("Activity request_payment_intent started for order %s (attempt %d)", input.order_id, input.attempt)
    with domain_errors():
        intent = await ServiceFactory.get_payment_gateway().create_intent(input)
        await ServiceFactory.get_order_store().update(input.order_id, {"stripe_payment_intent_id": intent.intent_id})
    logger.info("Activity request_payment_intent linked intent %s to order %s", intent.intent_id, input.order_id)
    return intent


@activity.defn
async def verify_payment_intent(input: VerifyIntentInput) -> str:
    """Ask the gateway for the intent's status (client-side confirmations are not trusted blindly)."""
    with domain_errors():
        return await ServiceFactory.get_payment_gateway().retrieve_status(input.intent_id)


@activity.defn
async def update_payment_status(input: PaymentStatusUpdate) -> Order:
    fields = {"payment_status": input.payment_status}
    if input.status is not None:
        fields["status"] = input.status
    if input.last_payment_error is not None:
        fields["last_payment_error"] = input.last_payment_error
    logger.info("Activity update_payment_status: order %s -> %s", input.order_id, input.payment_status.value)
    with domain_errors():
        return await ServiceFactory.get_order_store().update(input.order_id, fields)


@activity.defn
async def send_order_confirmation(input: ConfirmationInput) -> bool:
    """Send the confirmation e-mail. Best-effort; the workflow ignores failures."""
    with domain_errors():
        order = await ServiceFactory.get_order_store().find_by_field("id", input.order_id)
        if order is None:
            raise ValidationError(f"Order {input.order_id} does not exist")
        return await ServiceFactory.get_notification_service().send_order_confirmation(order)


@activity.defn
async def reconcile_payment(input: GatewayEvent) -> ReconcileOutcome:
    """Match a gateway callback to its order and hand it to the checkout workflow."""
    logger.info("Activity reconcile_payment started for %s event on intent %s", input.kind.value, input.intent_id)
    with domain_errors():
        return await ServiceFactory.get_reconciler().handle(input)
