"""
Pricing strategies (Strategy pattern).

The Strategy pattern allows swapping pricing logic without changing the
workflow. The workflow holds a reference to `PricingStrategy` (a Protocol)
and calls `price_order()`. The service fee is a strategy of its own, picked
from configuration (flat amount or percentage).

IMPORTANT: Pricing runs directly inside the workflow (not in an activity),
so it MUST be deterministic — no I/O, no randomness, no system clock.
Amounts are never rounded here; see `PriceBreakdown.rounded()`.
"""

from decimal import Decimal
from typing import Protocol

from storefront_checkout.config import PricingConfig, ServiceFeeConfig, ServiceFeeMode, SizeOption
from storefront_checkout.domain.errors import ValidationError
from storefront_checkout.domain.models import (
    CartLine,
    DeliveryQuote,
    DiscountDescriptor,
    DiscountType,
    LineBreakdown,
    MenuItem,
    OrderType,
    PaymentMethod,
    PriceBreakdown,
    SelectionMode,
    Topping,
    ToppingCharge,
    ToppingGroup,
)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class PricingStrategy(Protocol):
    """Interface for computing the itemized price of an order."""

    def price_order(
        self,
        lines: list[CartLine],
        *,
        order_type: OrderType,
        delivery: DeliveryQuote | None,
        discount: DiscountDescriptor | None,
        payment_method: PaymentMethod,
    ) -> PriceBreakdown: ...


class ServiceFeeStrategy(Protocol):
    def fee(self, base: Decimal) -> Decimal: ...


class FlatServiceFee:
    def __init__(self, amount: Decimal) -> None:
        self.amount = amount

    def fee(self, base: Decimal) -> Decimal:
        return self.amount


class PercentageServiceFee:
    def __init__(self, percent: Decimal) -> None:
        self.percent = percent

    def fee(self, base: Decimal) -> Decimal:
        return base * self.percent / HUNDRED


def service_fee_strategy(config: ServiceFeeConfig) -> ServiceFeeStrategy:
    if config.mode is ServiceFeeMode.PERCENTAGE:
        return PercentageServiceFee(config.amount)
    return FlatServiceFee(config.amount)


def reprice_topping(price: Decimal, size: SizeOption) -> Decimal:
    """Size-tier topping repricing: multiplier first, then the fixed override check."""
    repriced = price * size.topping_multiplier
    if size.topping_override_from is not None and repriced == size.topping_override_from:
        repriced = size.topping_override_to
    return repriced


def coupon_discount(discount: DiscountDescriptor | None, subtotal: Decimal, delivery_fee: Decimal) -> Decimal:
    """Resolve a validated coupon against the order. Never exceeds what it discounts."""
    if discount is None:
        return ZERO
    if discount.type is DiscountType.PERCENTAGE:
        amount = subtotal * discount.value / HUNDRED
        if discount.max_discount_amount is not None:
            amount = min(amount, discount.max_discount_amount)
        return min(amount, subtotal)
    if discount.type is DiscountType.FIXED:
        return min(discount.value, subtotal)
    return delivery_fee


class StandardPricingStrategy:
    """Default pricing for the storefront menu.

    Line total = (unit base + size upcharge + toppings + group options) x quantity.

    Examples (default size table):
        - Pizza 10.00, family size, 2 included toppings, picks
          [cheese 1.00, olive 1.00, onion 1.00]: cheese and olive are free,
          onion is doubled to 2.00 → 10.00 + 8.00 + 2.00 = 20.00
        - Same pizza, large size, no included toppings: every 1.00 topping
          is billed 2.00
    """

    def __init__(self, config: PricingConfig | None = None) -> None:
        self.config = config or PricingConfig()
        self.service_fee = service_fee_strategy(self.config.service_fee)

    # ── Line level ───────────────────────────────────────────────

    def free_topping_count(self, item: MenuItem) -> int:
        # Conditional pricing and the legacy per-product rule never stack.
        if item.has_conditional_pricing:
            return item.included_toppings_count
        return self.config.legacy_free_toppings.get(item.id, 0)

    def topping_charges(self, line: CartLine, size: SizeOption) -> list[ToppingCharge]:
        ids = [t.id for t in line.toppings]
        if len(ids) != len(set(ids)):
            raise ValidationError(f"Duplicate topping on {line.item.name!r}")

        free = self.free_topping_count(line.item)
        charges = []
        # Selection order matters: the first `free` picks are the included ones.
        for index, topping in enumerate(line.toppings):
            if index < free:
                charges.append(ToppingCharge(topping_id=topping.id, name=topping.name, price=ZERO, included=True))
            else:
                charges.append(
                    ToppingCharge(topping_id=topping.id, name=topping.name, price=reprice_topping(topping.price, size))
                )
        return charges

    def group_total(self, line: CartLine) -> Decimal:
        groups = {g.id: g for g in line.item.topping_groups}
        unknown = set(line.group_selections) - set(groups)
        if unknown:
            raise ValidationError(f"Unknown topping group(s) {sorted(unknown)} on {line.item.name!r}")

        total = ZERO
        for group in line.item.topping_groups:
            for option in self._selected_options(group, line.group_selections.get(group.id, [])):
                total += option.price
        return total

    @staticmethod
    def _selected_options(group: ToppingGroup, chosen: list[str]) -> list[Topping]:
        if len(chosen) != len(set(chosen)):
            raise ValidationError(f"Duplicate selection in group {group.name!r}")
        if group.mode is SelectionMode.EXCLUSIVE:
            if len(chosen) > 1 or (group.required and not chosen):
                raise ValidationError(f"Group {group.name!r} needs exactly one selection")
        else:
            if len(chosen) < group.min_selections:
                raise ValidationError(f"Group {group.name!r} needs at least {group.min_selections} selections")
            if group.max_selections is not None and len(chosen) > group.max_selections:
                raise ValidationError(f"Group {group.name!r} allows at most {group.max_selections} selections")

        options = []
        for topping_id in chosen:
            option = group.option(topping_id)
            if option is None:
                raise ValidationError(f"Option {topping_id!r} is not part of group {group.name!r}")
            options.append(option)
        return options

    def price_line(self, line: CartLine) -> LineBreakdown:
        size = self.config.size(line.size)
        if size is None:
            raise ValidationError(f"Unknown size {line.size!r} for {line.item.name!r}")

        unit_base = line.item.unit_base
        toppings = self.topping_charges(line, size)
        group_total = self.group_total(line)
        unit_price = unit_base + size.upcharge + sum((t.price for t in toppings), ZERO) + group_total
        return LineBreakdown(
            item_id=line.item.id,
            name=line.item.name,
            quantity=line.quantity,
            size=size.code,
            unit_base=unit_base,
            size_upcharge=size.upcharge,
            toppings=toppings,
            group_total=group_total,
            unit_price=unit_price,
            line_total=unit_price * line.quantity,
        )

    # ── Order level ──────────────────────────────────────────────

    def price_order(
        self,
        lines: list[CartLine],
        *,
        order_type: OrderType,
        delivery: DeliveryQuote | None,
        discount: DiscountDescriptor | None,
        payment_method: PaymentMethod,
    ) -> PriceBreakdown:
        if not lines:
            raise ValidationError("Cart is empty")

        priced = [self.price_line(line) for line in lines]
        subtotal = sum((line.line_total for line in priced), ZERO)

        delivery_fee = small_order_fee = ZERO
        if order_type is OrderType.DELIVERY:
            if delivery is None:
                raise ValidationError("Delivery orders need a delivery quote")
            if delivery.minimum_order is not None and subtotal < delivery.minimum_order:
                raise ValidationError(f"BelowZoneMinimum: minimum order for this area is {delivery.minimum_order}")
            delivery_fee = delivery.fee
            small_order_fee = max(ZERO, self.config.minimum_delivery_order - subtotal)

        service_fee = ZERO
        if self.config.is_gateway_method(payment_method):
            service_fee = self.service_fee.fee(subtotal + delivery_fee + small_order_fee)

        discount_amount = coupon_discount(discount, subtotal, delivery_fee)
        total = max(ZERO, subtotal + delivery_fee + small_order_fee + service_fee - discount_amount)
        return PriceBreakdown(
            lines=priced,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            small_order_fee=small_order_fee,
            service_fee=service_fee,
            coupon_discount=discount_amount,
            total=total,
        )
