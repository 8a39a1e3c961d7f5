"""
Error taxonomy for the checkout core.

Every error carries a `retryable` flag. Activities use it to decide whether
an exception may bubble up to Temporal's retry policy (transport problems)
or must be converted into a non-retryable `ApplicationError` (everything the
payer or operator has to act on).
"""

from enum import Enum


class CheckoutError(Exception):
    """Base class for all checkout errors."""

    retryable: bool = False


class ValidationError(CheckoutError):
    """Bad input: empty cart, missing address fields, bad amount, etc."""


class RejectionReason(str, Enum):
    """Why a coupon code was refused. First failing check wins."""

    INVALID_CODE = "InvalidCode"
    NOT_YET_VALID = "NotYetValid"
    EXPIRED = "Expired"
    USAGE_EXHAUSTED = "UsageExhausted"
    BELOW_MINIMUM = "BelowMinimum"
    WRONG_ORDER_TYPE = "WrongOrderType"
    WRONG_BRANCH = "WrongBranch"


class CouponRejected(ValidationError):
    def __init__(self, reason: RejectionReason, code: str = "") -> None:
        super().__init__(f"Coupon {code!r} rejected: {reason.value}")
        self.reason = reason
        self.code = code


class InvalidTransition(ValidationError):
    """A payment lifecycle event arrived in a state that cannot accept it."""


class RangeError(CheckoutError):
    """The delivery address cannot be served."""


class OutOfRange(RangeError):
    def __init__(self, distance_km) -> None:
        super().__init__(f"Address is {distance_km} km away, outside every delivery zone")
        self.distance_km = distance_km


class OutOfCountry(RangeError):
    def __init__(self, lat: float, lon: float) -> None:
        super().__init__(f"Address ({lat}, {lon}) is outside the serviced country")
        self.lat = lat
        self.lon = lon


class TransportError(CheckoutError):
    """Gateway or geocoder unreachable. Retried with backoff."""

    retryable = True


class GatewayDeclineError(CheckoutError):
    """Terminal decision from the payment gateway."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ReconciliationMiss(CheckoutError):
    """A gateway confirmation that cannot be matched to a live order."""

    def __init__(self, intent_id: str, detail: str) -> None:
        super().__init__(f"Unreconciled payment {intent_id}: {detail}")
        self.intent_id = intent_id
        self.detail = detail
