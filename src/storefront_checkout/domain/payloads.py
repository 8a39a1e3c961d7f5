"""
Workflow, signal and activity payloads.

Each activity takes a single Pydantic model as input. This keeps the
activity interface clean and ensures payloads are validated on both
the sending (workflow) and receiving (activity) side.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from storefront_checkout.config import DeliveryConfig, PaymentPolicy, PricingConfig
from storefront_checkout.domain.errors import RejectionReason
from storefront_checkout.domain.lifecycle import CheckoutState
from storefront_checkout.domain.models import (
    Branch,
    CartLine,
    Customer,
    DeliveryAddress,
    DeliveryQuote,
    DiscountDescriptor,
    Order,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    PriceBreakdown,
)


class CheckoutOutcome(str, Enum):
    """Terminal result of a checkout workflow."""

    PLACED = "placed"        # Non-gateway payment, settled at fulfillment
    PAID = "paid"            # Gateway confirmed the payment
    FAILED = "failed"        # Payment failed and no retry came within the retry window
    CANCELLED = "cancelled"  # Payer aborted or abandoned the payment
    REJECTED = "rejected"    # Validation/range problem, no order was kept


class PaymentEventSource(str, Enum):
    CLIENT = "client"    # Browser-side confirmation, verified against the gateway
    WEBHOOK = "webhook"  # Signed gateway callback, authoritative


# ── Workflow input / output ──────────────────────────────────────────


class CheckoutRequest(BaseModel):
    """Input to the checkout workflow.

    Carries the configuration sections the checkout needs, so a replayed
    workflow never reads ambient settings.
    """

    order_ref: str = Field(..., min_length=1)  # Client-held reference; also the workflow id suffix
    lines: list[CartLine]
    customer: Customer
    order_type: OrderType
    payment_method: PaymentMethod
    branch: Branch | None = None
    delivery_address: DeliveryAddress | None = None
    coupon_code: str | None = None
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    payment: PaymentPolicy = Field(default_factory=PaymentPolicy)


class CheckoutResult(BaseModel):
    order_ref: str
    outcome: CheckoutOutcome
    state: CheckoutState
    order_id: int | None = None
    order_number: str | None = None
    payment_status: PaymentStatus | None = None
    breakdown: PriceBreakdown | None = None
    delivery: DeliveryQuote | None = None
    rejection: str | None = None
    intent_ids: list[str] = Field(default_factory=list)
    attempts: int = 0
    # Intents the gateway settled after the checkout was already cancelled.
    late_settlements: list[str] = Field(default_factory=list)


class CheckoutStatus(BaseModel):
    """Answer to the `get_status` query."""

    order_ref: str
    state: CheckoutState
    order_id: int | None = None
    order_number: str | None = None
    payment_status: PaymentStatus | None = None
    intent_id: str | None = None
    client_secret: str | None = None
    total: Decimal | None = None
    attempts: int = 0
    last_error: str | None = None


class PaymentEvent(BaseModel):
    """Signal payload for payment confirmations and failures."""

    intent_id: str
    source: PaymentEventSource
    status: str = ""
    error_code: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


# ── Activity payload models ──────────────────────────────────────────


class GeocodeInput(BaseModel):
    address: DeliveryAddress
    country: str


class CouponLookupInput(BaseModel):
    code: str
    now: datetime
    subtotal: Decimal
    order_type: OrderType
    branch_id: int | None = None


class CouponCheck(BaseModel):
    """Either a discount descriptor or the reason the code was refused."""

    discount: DiscountDescriptor | None = None
    rejection: RejectionReason | None = None


class CouponRedemption(BaseModel):
    coupon_id: str
    order_id: int


class CreateOrderInput(BaseModel):
    order: Order


class IntentRequest(BaseModel):
    order_id: int
    order_ref: str
    order_number: str
    order_type: OrderType
    amount_minor_units: int = Field(..., gt=0)
    currency: str
    attempt: int = Field(default=1, ge=1)  # Payment attempt number; a retry gets a fresh intent
    customer_email: str | None = None


class PaymentIntent(BaseModel):
    intent_id: str
    client_secret: str


class VerifyIntentInput(BaseModel):
    intent_id: str


class PaymentStatusUpdate(BaseModel):
    order_id: int
    payment_status: PaymentStatus
    status: OrderStatus | None = None
    last_payment_error: str | None = None


class ConfirmationInput(BaseModel):
    order_id: int


# ── Gateway callbacks ────────────────────────────────────────────────


class GatewayEventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class GatewayEvent(BaseModel):
    """A verified gateway callback, input to the reconcile workflow."""

    kind: GatewayEventKind
    intent_id: str
    event_id: str = ""  # Gateway's own event id; redeliveries share it
    metadata: dict[str, str] = Field(default_factory=dict)
    error_code: str | None = None


class ReconcileOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRECONCILED = "unreconciled"


def checkout_workflow_id(order_ref: str) -> str:
    # One workflow per client reference; starting the same checkout twice is rejected.
    return f"checkout-{order_ref}"


def reconcile_workflow_id(event: GatewayEvent) -> str:
    return f"reconcile-{event.event_id or f'{event.intent_id}-{event.kind.value}'}"
