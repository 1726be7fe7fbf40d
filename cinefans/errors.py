"""Error kinds surfaced by the reservation and checkout flow.

Every error carries a stable ``code`` and a ``reason`` that is safe to show
to the buyer. The HTTP layer maps ``kind`` to a status code; nothing here
knows about HTTP.
"""

from enum import Enum


class ErrorKind(Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID = "invalid"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    UPSTREAM_FAILURE = "upstream_failure"
    UPSTREAM_TIMEOUT = "upstream_timeout"


class DomainError(Exception):
    """Base error with kind, code and user-safe reason."""

    kind: ErrorKind = ErrorKind.INVALID
    code: str = "INVALID"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.code}: {self.reason}"


# --- generic kinds ---

class NotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"


class Conflict(DomainError):
    kind = ErrorKind.CONFLICT
    code = "CONFLICT"


class Invalid(DomainError):
    kind = ErrorKind.INVALID
    code = "INVALID"


class Unauthorized(DomainError):
    kind = ErrorKind.UNAUTHORIZED
    code = "UNAUTHORIZED"

    def __init__(self, reason: str = "Authentication required") -> None:
        super().__init__(reason)


class Forbidden(DomainError):
    kind = ErrorKind.FORBIDDEN
    code = "FORBIDDEN"


class UpstreamFailure(DomainError):
    kind = ErrorKind.UPSTREAM_FAILURE
    code = "UPSTREAM_FAILURE"


class UpstreamTimeout(DomainError):
    kind = ErrorKind.UPSTREAM_TIMEOUT
    code = "UPSTREAM_TIMEOUT"


# --- reservation ---

class SeatUnavailable(Conflict):
    code = "SEAT_UNAVAILABLE"

    def __init__(self, seat_number: str) -> None:
        super().__init__(f"Seat {seat_number} is already held or reserved")
        self.seat_number = seat_number


class HoldExpired(Conflict):
    code = "HOLD_EXPIRED"


class TierNotAllowed(Forbidden):
    code = "TIER_NOT_ALLOWED"

    def __init__(self, membership: str, seat_tier: str,
                 seat_numbers: tuple = ()) -> None:
        reason = (
            f"Your {membership} membership does not allow {seat_tier} seats"
        )
        if seat_numbers:
            reason += ": " + ", ".join(seat_numbers)
        super().__init__(reason)
        self.seat_numbers = tuple(seat_numbers)


# --- orders ---

class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"

    def __init__(self, reason: str = "Order not found") -> None:
        super().__init__(reason)


class OrderClosed(Conflict):
    code = "ORDER_CLOSED"

    def __init__(self, status: str) -> None:
        super().__init__(f"Order is {status} and can no longer change")


class InsufficientStock(Invalid):
    code = "INSUFFICIENT_STOCK"


# --- discounts ---

class DiscountError(DomainError):
    pass


class DiscountNotFound(DiscountError, NotFound):
    code = "DISCOUNT_NOT_FOUND"

    def __init__(self) -> None:
        super().__init__("Invalid discount code")


class DiscountNotYetActive(DiscountError, Invalid):
    code = "DISCOUNT_NOT_YET_ACTIVE"

    def __init__(self) -> None:
        super().__init__("This discount code is not active yet")


class DiscountExpired(DiscountError, Invalid):
    code = "DISCOUNT_EXPIRED"

    def __init__(self) -> None:
        super().__init__("This discount code has expired")


class DiscountWrongTier(DiscountError, Invalid):
    code = "DISCOUNT_WRONG_TIER"

    def __init__(self, tier_name: str | None) -> None:
        super().__init__(
            f"This code is exclusive to {tier_name or 'another'} members"
        )


# --- payments ---

class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str) -> None:
        super().__init__("Payment not found")
        self.payment_id = payment_id
