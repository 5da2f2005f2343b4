"""
Exceptions raised by the coupon engine.

Validation failures are not exceptions: they come back as data on
``ValidationResult`` / ``ApplyResult``. The classes below cover the cases
where an operation cannot produce a result at all.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from apps.common.types import BusinessError, IntegrationError

if TYPE_CHECKING:
    from .validation import ReasonCode


class CouponError(BusinessError):
    """Base exception for coupon engine errors"""


class CouponNotFound(CouponError):
    """No coupon with the given business identifier"""

    def __init__(self, coupon_id: str) -> None:
        self.coupon_id = coupon_id
        super().__init__(f"Coupon {coupon_id} not found")


class RedemptionNotFound(CouponError):
    """No redemption recorded for the given order"""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"No coupon redemption recorded for order {order_id}")


class CouponStateError(CouponError):
    """Operation not allowed in the coupon's current lifecycle state"""


class GenerationExhausted(CouponError):
    """Bulk generation could not reach the requested number of unique codes"""

    def __init__(self, requested: int, generated: int, attempts: int) -> None:
        self.requested = requested
        self.generated = generated
        self.attempts = attempts
        super().__init__(
            f"Generated only {generated} of {requested} unique codes after {attempts} attempts; "
            f"batch discarded. Use a longer code length or a different prefix."
        )


class InsufficientCodes(CouponError):
    """Fewer unassigned codes remain than customers requested"""

    def __init__(self, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(f"Requested {requested} codes but only {available} unassigned codes remain")


class InvalidRefundAmount(CouponError):
    """Refund amount outside 0..discount_amount"""


class DependencyUnavailable(IntegrationError):
    """An external collaborator could not answer"""

    def __init__(self, dependency: str, detail: str = "") -> None:
        self.dependency = dependency
        self.detail = detail
        message = f"{dependency} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UsageLimitConflict(CouponError):
    """
    A conditional usage increment matched no row.

    Raised inside the apply transaction so it rolls back, then reported to
    the caller as the matching limit-exceeded reason.
    """

    def __init__(self, reason: ReasonCode) -> None:
        self.reason = reason
        super().__init__(f"Usage limit reached: {reason}")
