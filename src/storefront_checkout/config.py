"""
Checkout configuration.

The restaurant location, zone table, fee schedule and size table are passed
explicitly into the price engine and zone resolver. The workflow receives the
`pricing`, `delivery` and `payment` sections as part of its input, so a replay
always sees the configuration the checkout started with.

Values can come from a JSON file named by `STOREFRONT_CONFIG`; secrets and
endpoints are overlaid from the environment.
"""

import os
from decimal import Decimal
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from storefront_checkout.domain.models import DeliveryZone, GeoPoint, PaymentMethod


class ServiceFeeMode(str, Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"


class ServiceFeeConfig(BaseModel):
    """Fee added to gateway-mediated payments.

    `percentage` applies to subtotal + delivery fee + small-order fee.
    """

    mode: ServiceFeeMode = ServiceFeeMode.FLAT
    amount: Decimal = Field(default=Decimal("0"), ge=0)


class SizeOption(BaseModel):
    """A size tier and its effect on the item and topping prices.

    Topping repricing is piecewise: multiply first, then if the result equals
    `topping_override_from` exactly, bill `topping_override_to` instead.
    """

    code: str
    upcharge: Decimal = Field(default=Decimal("0"), ge=0)
    topping_multiplier: Decimal = Field(default=Decimal("1"), gt=0)
    topping_override_from: Decimal | None = None
    topping_override_to: Decimal | None = None


DEFAULT_SIZES = [
    SizeOption(code="normal"),
    SizeOption(code="perhe", upcharge=Decimal("8.00"), topping_multiplier=Decimal("2")),
    SizeOption(code="family", upcharge=Decimal("8.00"), topping_multiplier=Decimal("2")),
    SizeOption(code="large", topping_override_from=Decimal("1.00"), topping_override_to=Decimal("2.00")),
    SizeOption(code="0.33L"),
    SizeOption(code="0.5L", upcharge=Decimal("0.60")),
    SizeOption(code="1.5L", upcharge=Decimal("2.10")),
]

GATEWAY_METHODS = [
    PaymentMethod.ONLINE_CARD,
    PaymentMethod.APPLE_PAY,
    PaymentMethod.GOOGLE_PAY,
    PaymentMethod.STRIPE_LINK,
    PaymentMethod.KLARNA,
    PaymentMethod.IDEAL,
    PaymentMethod.SEPA_DEBIT,
]


class PricingConfig(BaseModel):
    minimum_delivery_order: Decimal = Field(default=Decimal("15.00"), ge=0)
    service_fee: ServiceFeeConfig = Field(default_factory=ServiceFeeConfig)
    sizes: list[SizeOption] = Field(default_factory=lambda: list(DEFAULT_SIZES))
    gateway_methods: list[PaymentMethod] = Field(default_factory=lambda: list(GATEWAY_METHODS))
    # Product id -> number of free toppings, for items without conditional pricing.
    legacy_free_toppings: dict[str, int] = Field(default_factory=lambda: {"93": 4})

    def size(self, code: str) -> SizeOption | None:
        return next((s for s in self.sizes if s.code == code), None)

    def is_gateway_method(self, method: PaymentMethod) -> bool:
        return method in self.gateway_methods


class CountryBounds(BaseModel):
    """Bounding box of the serviced country (Finland by default)."""

    code: str = "fi"
    min_lat: float = 59.5
    max_lat: float = 70.1
    min_lon: float = 19.0
    max_lon: float = 31.6

    def contains(self, point: GeoPoint) -> bool:
        return self.min_lat <= point.lat <= self.max_lat and self.min_lon <= point.lon <= self.max_lon


class DeliveryConfig(BaseModel):
    origin: GeoPoint = Field(default_factory=lambda: GeoPoint(lat=60.9832, lon=25.6608))
    zones: list[DeliveryZone] = Field(
        default_factory=lambda: [
            DeliveryZone(max_distance_km=Decimal("4"), fee=Decimal("0.00")),
            DeliveryZone(max_distance_km=Decimal("5"), fee=Decimal("4.00")),
            DeliveryZone(max_distance_km=Decimal("8"), fee=Decimal("7.00")),
            DeliveryZone(max_distance_km=Decimal("10"), fee=Decimal("10.00")),
        ]
    )
    country: CountryBounds = Field(default_factory=CountryBounds)

    @field_validator("zones")
    @classmethod
    def _zones_sorted(cls, zones: list[DeliveryZone]) -> list[DeliveryZone]:
        if not zones:
            raise ValueError("at least one delivery zone is required")
        bounds = [z.max_distance_km for z in zones]
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("delivery zones must be sorted by strictly ascending max_distance_km")
        return zones


class PaymentPolicy(BaseModel):
    """Gateway retry and timeout settings."""

    currency: str = "eur"
    max_attempts: int = Field(default=4, ge=1)
    initial_backoff_seconds: float = Field(default=1.0, gt=0)
    backoff_coefficient: float = Field(default=2.0, ge=1)
    max_backoff_seconds: float = Field(default=10.0, gt=0)
    payment_window_seconds: float = Field(default=1800.0, gt=0)  # Awaiting confirmation
    retry_window_seconds: float = Field(default=3600.0, gt=0)    # Failed, awaiting retry
    # Extension granted each time the payment window closes on an intent the
    # gateway still reports as `processing` (SEPA debit, Klarna, iDEAL).
    settlement_window_seconds: float = Field(default=1209600.0, gt=0)


class CheckoutConfig(BaseModel):
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    payment: PaymentPolicy = Field(default_factory=PaymentPolicy)
    temporal_address: str = "localhost:7233"
    task_queue: str = "checkout-orders"
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    geocoder_url: str = "https://nominatim.openstreetmap.org/search"
    geocoder_user_agent: str = "storefront-checkout/0.1"
    email_api_url: str | None = None


# Environment variable -> CheckoutConfig field.
ENV_OVERRIDES = {
    "TEMPORAL_ADDRESS": "temporal_address",
    "CHECKOUT_TASK_QUEUE": "task_queue",
    "STRIPE_SECRET_KEY": "stripe_secret_key",
    "STRIPE_WEBHOOK_SECRET": "stripe_webhook_secret",
    "GEOCODER_URL": "geocoder_url",
    "EMAIL_API_URL": "email_api_url",
}


def load_config(path: str | None = None, environ: dict[str, str] | None = None) -> CheckoutConfig:
    env = os.environ if environ is None else environ
    path = path or env.get("STOREFRONT_CONFIG")
    config = CheckoutConfig.model_validate_json(Path(path).read_text()) if path else CheckoutConfig()
    overrides = {field: env[var] for var, field in ENV_OVERRIDES.items() if env.get(var)}
    return config.model_copy(update=overrides) if overrides else config
