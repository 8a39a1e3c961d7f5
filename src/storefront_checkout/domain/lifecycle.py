"""
Payment lifecycle state machine.

    idle ──► awaiting_gateway_intent ──► awaiting_confirmation ──► paid
      │              ▲        │                    │    │
      │              │        └──────► failed ◄────┘    └──► cancelled
      │              └───── retry ─────┘  │
      └──► paid (settled at fulfillment)  └──► cancelled

The machine is pure and deterministic so the checkout workflow can drive it
directly. Duplicate events (a second confirmation, a second cancel) are
reported as no-ops by returning False; events that make no sense in the
current state raise InvalidTransition.
"""

from enum import Enum

from pydantic import BaseModel, Field

from storefront_checkout.domain.errors import InvalidTransition
from storefront_checkout.domain.models import PaymentStatus


class CheckoutState(str, Enum):
    IDLE = "idle"
    AWAITING_GATEWAY_INTENT = "awaiting_gateway_intent"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS: dict[CheckoutState, frozenset[CheckoutState]] = {
    CheckoutState.IDLE: frozenset({CheckoutState.AWAITING_GATEWAY_INTENT, CheckoutState.PAID}),
    CheckoutState.AWAITING_GATEWAY_INTENT: frozenset(
        {CheckoutState.AWAITING_CONFIRMATION, CheckoutState.FAILED, CheckoutState.CANCELLED}
    ),
    CheckoutState.AWAITING_CONFIRMATION: frozenset(
        {CheckoutState.PAID, CheckoutState.FAILED, CheckoutState.CANCELLED}
    ),
    # A failed order can still turn out paid when an earlier intent settles late.
    CheckoutState.FAILED: frozenset(
        {CheckoutState.AWAITING_GATEWAY_INTENT, CheckoutState.PAID, CheckoutState.CANCELLED}
    ),
    CheckoutState.PAID: frozenset(),
    CheckoutState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({CheckoutState.PAID, CheckoutState.CANCELLED})


class PaymentLifecycle(BaseModel):
    state: CheckoutState = CheckoutState.IDLE
    order_id: int | None = None
    pay_on_fulfillment: bool = False
    intent_ids: list[str] = Field(default_factory=list)  # Every intent issued for this order
    attempts: int = 0
    last_error: str | None = None

    @property
    def current_intent_id(self) -> str | None:
        return self.intent_ids[-1] if self.intent_ids else None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def payment_status(self) -> PaymentStatus | None:
        """The persisted payment status matching the current state."""
        if self.state is CheckoutState.IDLE:
            return None
        if self.state is CheckoutState.PAID:
            return PaymentStatus.PENDING if self.pay_on_fulfillment else PaymentStatus.PAID
        if self.state in (CheckoutState.FAILED, CheckoutState.CANCELLED):
            return PaymentStatus.FAILED
        return PaymentStatus.PENDING_PAYMENT

    def _move(self, target: CheckoutState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot go from {self.state.value} to {target.value}")
        self.state = target

    # ── Events ───────────────────────────────────────────────────

    def start_gateway(self, order_id: int) -> None:
        self._move(CheckoutState.AWAITING_GATEWAY_INTENT)
        self.order_id = order_id
        self.attempts += 1

    def settle_offline(self, order_id: int) -> None:
        """Non-gateway payment: the order is placed and paid at fulfillment."""
        self._move(CheckoutState.PAID)
        self.order_id = order_id
        self.pay_on_fulfillment = True

    def settle_free(self, order_id: int) -> None:
        """Gateway method but nothing to charge (discounts brought the total to zero)."""
        self._move(CheckoutState.PAID)
        self.order_id = order_id

    def intent_created(self, intent_id: str) -> None:
        self._move(CheckoutState.AWAITING_CONFIRMATION)
        self.intent_ids.append(intent_id)

    def confirm(self, intent_id: str) -> bool:
        if self.state is CheckoutState.PAID:
            return False
        if intent_id not in self.intent_ids:
            raise InvalidTransition(f"Intent {intent_id} was never issued for order {self.order_id}")
        self._move(CheckoutState.PAID)
        self.last_error = None
        return True

    def fail(self, reason: str, intent_id: str | None = None) -> bool:
        if self.state is CheckoutState.FAILED or self.is_terminal:
            return False
        if intent_id is not None and intent_id != self.current_intent_id:
            # Failure of a superseded intent; the current attempt is unaffected.
            return False
        self._move(CheckoutState.FAILED)
        self.last_error = reason
        return True

    def cancel(self) -> bool:
        if self.state is CheckoutState.CANCELLED:
            return False
        self._move(CheckoutState.CANCELLED)
        return True

    def retry(self) -> None:
        if self.state is not CheckoutState.FAILED:
            raise InvalidTransition(f"Only failed payments can be retried (state is {self.state.value})")
        self._move(CheckoutState.AWAITING_GATEWAY_INTENT)
        self.attempts += 1
