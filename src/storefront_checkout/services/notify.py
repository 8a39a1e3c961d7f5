"""
Notification service facade.

Sends the order confirmation e-mail through the restaurant's e-mail API.
Best-effort: the workflow logs a failure here and moves on, the order is
placed either way. Without an API URL the confirmation is only logged.
"""

import asyncio
import logging

import requests

from storefront_checkout.domain.errors import TransportError
from storefront_checkout.domain.models import Order

logger = logging.getLogger(__name__)


def confirmation_payload(order: Order) -> dict:
    breakdown = order.breakdown.rounded()
    return {
        "customerName": order.customer.name,
        "customerEmail": order.customer.email,
        "orderNumber": order.order_number,
        "orderItems": [
            {"name": line.name, "quantity": line.quantity, "price": str(line.line_total)} for line in breakdown.lines
        ],
        "subtotal": str(breakdown.subtotal),
        "deliveryFee": str(breakdown.delivery_fee),
        "smallOrderFee": str(breakdown.small_order_fee),
        "serviceFee": str(breakdown.service_fee),
        "discount": str(breakdown.coupon_discount),
        "totalAmount": str(breakdown.total),
        "orderType": order.order_type.value,
        "deliveryAddress": order.delivery_address.as_query() if order.delivery_address else None,
        "paymentMethod": order.payment_method.value,
    }


class NotificationService:
    """Sends order confirmations to the customer."""

    def __init__(self, email_api_url: str | None = None, timeout: float = 10.0) -> None:
        self.email_api_url = email_api_url
        self.timeout = timeout
        self.sent: list[int] = []

    async def send_order_confirmation(self, order: Order) -> bool:
        if not order.customer.email:
            logger.info("Order %s has no e-mail address, skipping confirmation", order.id)
            return False
        if self.email_api_url:
            await asyncio.to_thread(self._post, confirmation_payload(order))
        else:
            logger.info("Confirmation for order %s to %s (no e-mail API configured)", order.id, order.customer.email)
        self.sent.append(order.id)
        return True

    def _post(self, payload: dict) -> None:
        try:
            response = requests.post(
                f"{self.email_api_url}/api/send-order-confirmation", json=payload, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"E-mail API failed: {e}") from e
