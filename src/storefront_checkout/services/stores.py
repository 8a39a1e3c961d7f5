"""
Order and coupon stores.

The hosted data store is an external collaborator; the core only depends on
the two Protocols below. The in-memory implementations back the demo worker
and the test suite. Both serialize writes through an asyncio.Lock so that the
coupon counter is a compare-and-increment, never a read-modify-write race.
"""

import asyncio
import itertools
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Protocol

from storefront_checkout.domain.coupons import normalize_code
from storefront_checkout.domain.errors import CouponRejected, RejectionReason, ValidationError
from storefront_checkout.domain.models import MUTABLE_ORDER_FIELDS, Coupon, Order

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    async def create(self, order: Order) -> int: ...

    async def update(self, order_id: int, fields: dict[str, Any]) -> Order: ...

    async def find_by_field(self, field: str, value: Any) -> Order | None: ...


class CouponStore(Protocol):
    async def find_by_code(self, code: str) -> Coupon | None: ...

    async def increment_usage(self, coupon_id: str, order_id: int) -> bool: ...

    async def release_usage(self, coupon_id: str, order_id: int) -> bool: ...


class InMemoryOrderStore:
    """Orders are never deleted; only the mutable payment fields change."""

    def __init__(self) -> None:
        self._orders: dict[int, Order] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> int:
        async with self._lock:
            order_id = next(self._ids)
            self._orders[order_id] = order.model_copy(
                update={"id": order_id, "order_number": order.order_number or f"ORD-{order_id:05d}"}
            )
        logger.info("Created order %s (%s)", order_id, order.payment_status.value)
        return order_id

    async def update(self, order_id: int, fields: dict[str, Any]) -> Order:
        frozen = set(fields) - MUTABLE_ORDER_FIELDS
        if frozen:
            raise ValidationError(f"Order fields {sorted(frozen)} cannot change after creation")
        async with self._lock:
            if order_id not in self._orders:
                raise ValidationError(f"Order {order_id} does not exist")
            updated = self._orders[order_id].model_copy(
                update={**fields, "updated_at": fields.get("updated_at") or datetime.now(timezone.utc)}
            )
            self._orders[order_id] = updated
        return updated

    async def find_by_field(self, field: str, value: Any) -> Order | None:
        if field not in Order.model_fields:
            raise ValidationError(f"Orders have no field {field!r}")
        return next((o for o in self._orders.values() if getattr(o, field) == value), None)

    def __len__(self) -> int:
        return len(self._orders)


class InMemoryCouponStore:
    def __init__(self, coupons: Iterable[Coupon] = ()) -> None:
        self._coupons: dict[str, Coupon] = {c.id: c for c in coupons}
        self._redemptions: dict[str, set[int]] = {}
        self._lock = asyncio.Lock()

    def add(self, coupon: Coupon) -> None:
        self._coupons[coupon.id] = coupon

    async def find_by_code(self, code: str) -> Coupon | None:
        code = normalize_code(code)
        return next((c for c in self._coupons.values() if normalize_code(c.code) == code), None)

    async def get(self, coupon_id: str) -> Coupon | None:
        return self._coupons.get(coupon_id)

    async def increment_usage(self, coupon_id: str, order_id: int) -> bool:
        """Count one use for `order_id`. Returns False if that order already counted."""
        async with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                raise ValidationError(f"Coupon {coupon_id} does not exist")
            redeemed = self._redemptions.setdefault(coupon_id, set())
            if order_id in redeemed:
                return False
            if coupon.max_uses_total is not None and coupon.current_uses >= coupon.max_uses_total:
                raise CouponRejected(RejectionReason.USAGE_EXHAUSTED, coupon.code)
            self._coupons[coupon_id] = coupon.model_copy(update={"current_uses": coupon.current_uses + 1})
            redeemed.add(order_id)
        logger.info("Coupon %s redeemed by order %s", coupon.code, order_id)
        return True

    async def release_usage(self, coupon_id: str, order_id: int) -> bool:
        """Give back the use counted for `order_id`, if any."""
        async with self._lock:
            redeemed = self._redemptions.get(coupon_id, set())
            if order_id not in redeemed:
                return False
            redeemed.discard(order_id)
            coupon = self._coupons[coupon_id]
            self._coupons[coupon_id] = coupon.model_copy(update={"current_uses": max(0, coupon.current_uses - 1)})
        logger.info("Coupon %s released by order %s", coupon_id, order_id)
        return True
