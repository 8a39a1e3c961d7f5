"""
Domain models for the storefront checkout core.

All models use Pydantic v2 BaseModel for automatic validation, serialization,
and deserialization. Temporal transmits workflow/activity inputs and outputs as
JSON payloads — Pydantic models serialize cleanly via the pydantic_data_converter
configured on both the client and the worker.

Money is always `Decimal`. Amounts stay unrounded through every pricing step
and are quantized to cents only by `PriceBreakdown.rounded()`.

Enums inherit from (str, Enum) so they serialize as plain strings in JSON
(e.g. "pending_payment" instead of {"value": "pending_payment"}).
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> Decimal:
    """Quantize to two decimals, half-up. Only used at display/persistence boundaries."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethod(str, Enum):
    """Payment methods offered at checkout.

    `cash` and `card` are settled at fulfillment (card terminal at the door or
    counter); the rest are mediated by the online payment gateway.
    """

    CASH = "cash"
    CARD = "card"
    ONLINE_CARD = "online_card"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    STRIPE_LINK = "stripe_link"
    KLARNA = "klarna"
    IDEAL = "ideal"
    SEPA_DEBIT = "sepa_debit"


class PaymentStatus(str, Enum):
    """Persisted payment status. Values are stored verbatim in the order store."""

    PENDING_PAYMENT = "pending_payment"  # Waiting on the gateway
    PENDING = "pending"                  # To be settled at fulfillment
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    RECEIVED = "received"
    CANCELLED = "cancelled"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE_DELIVERY = "free_delivery"


class OrderTypeRestriction(str, Enum):
    NONE = "none"
    PICKUP_ONLY = "pickup_only"
    DELIVERY_ONLY = "delivery_only"

    def allows(self, order_type: OrderType) -> bool:
        if self is OrderTypeRestriction.PICKUP_ONLY:
            return order_type is OrderType.PICKUP
        if self is OrderTypeRestriction.DELIVERY_ONLY:
            return order_type is OrderType.DELIVERY
        return True


class SelectionMode(str, Enum):
    EXCLUSIVE = "exclusive"  # Exactly one option
    MULTI = "multi"          # Between min and max options, inclusive


# ── Geography ────────────────────────────────────────────────────────


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class Branch(BaseModel):
    """A restaurant location. Its coordinates are the delivery origin."""

    id: int
    name: str
    location: GeoPoint


class DeliveryAddress(BaseModel):
    street: str = ""
    postal_code: str = ""
    city: str = ""

    def is_complete(self) -> bool:
        return bool(self.street.strip() and self.city.strip())

    def as_query(self) -> str:
        """Free-text form sent to the geocoder."""
        parts = [self.street.strip(), f"{self.postal_code.strip()} {self.city.strip()}".strip()]
        return ", ".join(p for p in parts if p)


class DeliveryZone(BaseModel):
    """A distance bracket with a flat fee. Zone lists are sorted ascending."""

    max_distance_km: Decimal = Field(..., gt=0)
    fee: Decimal = Field(..., ge=0)
    minimum_order: Decimal | None = Field(default=None, ge=0)


class DeliveryQuote(BaseModel):
    """Result of zone resolution for one address."""

    distance_km: Decimal | None  # None when the address could not be geocoded
    fee: Decimal
    zone_index: int | None
    label: str
    confirmed_manually: bool = False
    minimum_order: Decimal | None = None


# ── Menu & cart ──────────────────────────────────────────────────────


class Topping(BaseModel):
    id: str
    name: str
    price: Decimal = Field(..., ge=0)


class ToppingGroup(BaseModel):
    id: str
    name: str
    mode: SelectionMode
    required: bool = True
    min_selections: int = Field(default=0, ge=0)
    max_selections: int | None = Field(default=None, ge=1)
    options: list[Topping] = Field(default_factory=list)

    def option(self, topping_id: str) -> Topping | None:
        return next((o for o in self.options if o.id == topping_id), None)


class MenuItem(BaseModel):
    id: str
    name: str
    base_price: Decimal = Field(..., ge=0)
    offer_price: Decimal | None = Field(default=None, ge=0)
    has_conditional_pricing: bool = False
    included_toppings_count: int = Field(default=0, ge=0)
    topping_groups: list[ToppingGroup] = Field(default_factory=list)

    @property
    def unit_base(self) -> Decimal:
        return self.offer_price if self.offer_price is not None else self.base_price


class CartLine(BaseModel):
    """One cart entry. `toppings` is kept in the order the customer picked them."""

    item: MenuItem
    quantity: int = Field(default=1, gt=0)
    size: str = "normal"
    toppings: list[Topping] = Field(default_factory=list)
    group_selections: dict[str, list[str]] = Field(default_factory=dict)
    note: str = ""


class Customer(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str | None = None


# ── Coupons ──────────────────────────────────────────────────────────


class Coupon(BaseModel):
    id: str
    code: str
    discount_type: DiscountType
    discount_value: Decimal = Field(..., ge=0)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_uses_total: int | None = Field(default=None, ge=0)
    current_uses: int = Field(default=0, ge=0)
    min_order_amount: Decimal | None = None
    order_type_restriction: OrderTypeRestriction = OrderTypeRestriction.NONE
    is_active: bool = True
    max_discount_amount: Decimal | None = None  # Caps percentage discounts
    allowed_branch_ids: list[int] | None = None


class DiscountDescriptor(BaseModel):
    """A validated coupon. The amount is resolved later by the price engine."""

    coupon_id: str
    code: str
    type: DiscountType
    value: Decimal
    max_discount_amount: Decimal | None = None


# ── Price breakdown ──────────────────────────────────────────────────


class ToppingCharge(BaseModel):
    topping_id: str
    name: str
    price: Decimal
    included: bool = False  # True when the topping is free under a free-topping rule


class LineBreakdown(BaseModel):
    item_id: str
    name: str
    quantity: int
    size: str
    unit_base: Decimal
    size_upcharge: Decimal
    toppings: list[ToppingCharge]
    group_total: Decimal
    unit_price: Decimal
    line_total: Decimal


class PriceBreakdown(BaseModel):
    lines: list[LineBreakdown]
    subtotal: Decimal
    delivery_fee: Decimal = Decimal("0")
    small_order_fee: Decimal = Decimal("0")
    service_fee: Decimal = Decimal("0")
    coupon_discount: Decimal = Decimal("0")
    total: Decimal

    def rounded(self) -> "PriceBreakdown":
        """Copy with every amount quantized to cents, for display and persistence."""
        lines = [
            line.model_copy(
                update={
                    "unit_base": to_cents(line.unit_base),
                    "size_upcharge": to_cents(line.size_upcharge),
                    "group_total": to_cents(line.group_total),
                    "unit_price": to_cents(line.unit_price),
                    "line_total": to_cents(line.line_total),
                    "toppings": [t.model_copy(update={"price": to_cents(t.price)}) for t in line.toppings],
                }
            )
            for line in self.lines
        ]
        return self.model_copy(
            update={
                "lines": lines,
                "subtotal": to_cents(self.subtotal),
                "delivery_fee": to_cents(self.delivery_fee),
                "small_order_fee": to_cents(self.small_order_fee),
                "service_fee": to_cents(self.service_fee),
                "coupon_discount": to_cents(self.coupon_discount),
                "total": to_cents(self.total),
            }
        )

    def amount_minor_units(self) -> int:
        """Total in cents, as the payment gateway expects it."""
        return int(to_cents(self.total) * 100)


# ── Orders ───────────────────────────────────────────────────────────

# Fields that may change after an order row is created. Everything else is
# the immutable audit snapshot.
MUTABLE_ORDER_FIELDS = frozenset(
    {"payment_status", "status", "stripe_payment_intent_id", "last_payment_error", "updated_at"}
)


class Order(BaseModel):
    """An order row as stored in the order store."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    order_number: str = ""
    client_reference: str  # Client-held reference, the secondary correlation key
    lines: list[CartLine]
    breakdown: PriceBreakdown
    customer: Customer
    order_type: OrderType
    branch_id: int | None = None
    delivery_address: DeliveryAddress | None = None
    coupon_id: str | None = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    status: OrderStatus = OrderStatus.RECEIVED
    stripe_payment_intent_id: str | None = None
    last_payment_error: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
