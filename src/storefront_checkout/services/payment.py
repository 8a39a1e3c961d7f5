"""
Payment gateway facade.

Part of the **service layer** that encapsulates external operations behind
clean interfaces. `StripeGateway` talks to Stripe; `SimulatedGateway` keeps
intents in memory for the demo worker and the tests.

Gateway errors are translated into the checkout error taxonomy here:
connection problems become TransportError (retried by the activity retry
policy), card declines become GatewayDeclineError and malformed requests
become ValidationError (neither is retried).

Activities delegate to services (not the other way around), keeping the
Temporal-specific code separate from business logic.
"""

import asyncio
import itertools
import logging
from typing import Protocol

import stripe

from storefront_checkout.domain.errors import GatewayDeclineError, TransportError, ValidationError
from storefront_checkout.domain.payloads import IntentRequest, PaymentIntent

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def create_intent(self, request: IntentRequest) -> PaymentIntent: ...

    async def retrieve_status(self, intent_id: str) -> str: ...


def intent_metadata(request: IntentRequest) -> dict[str, str]:
    """Metadata attached to every intent, used to correlate callbacks with orders."""
    metadata = {
        "orderId": str(request.order_id),
        "orderRef": request.order_ref,
        "orderNumber": request.order_number,
        "orderType": request.order_type.value,
    }
    if request.customer_email:
        metadata["customerEmail"] = request.customer_email
    return metadata


class StripeGateway:
    """Stripe PaymentIntents. The blocking SDK calls run in a worker thread."""

    def __init__(self, secret_key: str) -> None:
        self.secret_key = secret_key

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        return await asyncio.to_thread(self._create_intent, request)

    async def retrieve_status(self, intent_id: str) -> str:
        return await asyncio.to_thread(self._retrieve_status, intent_id)

    def _create_intent(self, request: IntentRequest) -> PaymentIntent:
        logger.info("Creating payment intent for order %s (%d minor units)", request.order_id, request.amount_minor_units)
        try:
            intent = stripe.PaymentIntent.create(
                amount=request.amount_minor_units,
                currency=request.currency,
                metadata=intent_metadata(request),
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                # Same attempt → same intent, even when the activity is retried.
                idempotency_key=f"checkout-{request.order_id}-{request.attempt}",
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            raise _translate(e) from e
        return PaymentIntent(intent_id=intent.id, client_secret=intent.client_secret)

    def _retrieve_status(self, intent_id: str) -> str:
        try:
            return stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key).status
        except stripe.StripeError as e:
            raise _translate(e) from e


def _translate(error: stripe.StripeError) -> Exception:
    if isinstance(error, stripe.CardError):
        return GatewayDeclineError(error.user_message or str(error), error.code)
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransportError(str(error))
    if error.http_status is not None and error.http_status >= 500:
        return TransportError(str(error))
    return ValidationError(str(error))


class SimulatedGateway:
    """In-memory gateway.

    `transport_failures` makes the next N calls raise TransportError;
    `decline_next` makes the next intent creation raise a decline.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.intents: dict[str, IntentRequest] = {}
        self.statuses: dict[str, str] = {}
        self.transport_failures = 0
        self.decline_next = False
        self._ids = itertools.count(1)
        self._idempotency: dict[str, str] = {}

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        await self._call()
        if self.decline_next:
            self.decline_next = False
            raise GatewayDeclineError("Your card was declined.", "card_declined")
        key = f"checkout-{request.order_id}-{request.attempt}"
        intent_id = self._idempotency.get(key)
        if intent_id is None:
            intent_id = f"pi_sim_{next(self._ids)}"
            self._idempotency[key] = intent_id
            self.intents[intent_id] = request
            self.statuses[intent_id] = "requires_payment_method"
            logger.info("Simulated intent %s for order %s", intent_id, request.order_id)
        return PaymentIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    async def retrieve_status(self, intent_id: str) -> str:
        await self._call()
        if intent_id not in self.statuses:
            raise ValidationError(f"No such payment intent: {intent_id}")
        return self.statuses[intent_id]

    def settle(self, intent_id: str, status: str = "succeeded") -> None:
        self.statuses[intent_id] = status

    async def _call(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)  # Simulate network latency
        if self.transport_failures > 0:
            self.transport_failures -= 1
            raise TransportError("Simulated gateway connection reset")
