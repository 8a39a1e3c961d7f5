"""
Coupon validation.

`validate_coupon` runs the checks in a fixed order and raises CouponRejected
with the reason of the first one that fails. It does not compute an amount:
a `free_delivery` coupon depends on a delivery fee the validator never sees,
so the discount is resolved later by the price engine.
"""

from datetime import datetime, timezone
from decimal import Decimal

from storefront_checkout.domain.errors import CouponRejected, RejectionReason
from storefront_checkout.domain.models import Coupon, DiscountDescriptor, OrderType


def normalize_code(code: str) -> str:
    """Codes are case-insensitive; the store keeps them uppercased."""
    return code.strip().upper()


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def validate_coupon(
    coupon: Coupon | None,
    code: str,
    *,
    now: datetime,
    subtotal: Decimal,
    order_type: OrderType,
    branch_id: int | None = None,
) -> DiscountDescriptor:
    code = normalize_code(code)
    if coupon is None or not coupon.is_active or normalize_code(coupon.code) != code:
        raise CouponRejected(RejectionReason.INVALID_CODE, code)

    now = _aware(now)
    if coupon.valid_from is not None and _aware(coupon.valid_from) > now:
        raise CouponRejected(RejectionReason.NOT_YET_VALID, code)
    if coupon.valid_until is not None and _aware(coupon.valid_until) < now:
        raise CouponRejected(RejectionReason.EXPIRED, code)
    if coupon.max_uses_total is not None and coupon.current_uses >= coupon.max_uses_total:
        raise CouponRejected(RejectionReason.USAGE_EXHAUSTED, code)
    if coupon.min_order_amount is not None and subtotal < coupon.min_order_amount:
        raise CouponRejected(RejectionReason.BELOW_MINIMUM, code)
    if not coupon.order_type_restriction.allows(order_type):
        raise CouponRejected(RejectionReason.WRONG_ORDER_TYPE, code)
    if coupon.allowed_branch_ids and branch_id not in coupon.allowed_branch_ids:
        raise CouponRejected(RejectionReason.WRONG_BRANCH, code)

    return DiscountDescriptor(
        coupon_id=coupon.id,
        code=code,
        type=coupon.discount_type,
        value=coupon.discount_value,
        max_discount_amount=coupon.max_discount_amount,
    )
