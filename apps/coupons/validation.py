"""
Coupon eligibility pipeline.

Checks run in a fixed order and the first failure is reported, so callers
always get one specific reason. The pipeline never writes anything: usage
counts and order history come through an ``EligibilityFacts`` reader.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import StrEnum
from typing import Protocol
from zoneinfo import ZoneInfo

from django.utils import timezone

from .cart import Cart, CartLine, RedemptionContext
from .conf import coupon_setting
from .models import CodeStatus, CounterScope, CouponStatus
from .policy import CodeState, CouponPolicy

logger = logging.getLogger(__name__)


class ReasonCode(StrEnum):
    # 1. code
    INVALID_CODE = "INVALID_CODE"
    CODE_REVOKED = "CODE_REVOKED"
    CODE_ALREADY_REDEEMED = "CODE_ALREADY_REDEEMED"
    CODE_EXPIRED = "CODE_EXPIRED"
    CODE_USAGE_EXCEEDED = "CODE_USAGE_EXCEEDED"
    CODE_ASSIGNED_TO_OTHER_CUSTOMER = "CODE_ASSIGNED_TO_OTHER_CUSTOMER"
    # 2. coupon
    COUPON_INACTIVE = "COUPON_INACTIVE"
    GLOBAL_LIMIT_EXCEEDED = "GLOBAL_LIMIT_EXCEEDED"
    # 3. time
    COUPON_NOT_YET_VALID = "COUPON_NOT_YET_VALID"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    OUTSIDE_ALLOWED_TIME = "OUTSIDE_ALLOWED_TIME"
    # 4-5. channel and store
    INVALID_CHANNEL = "INVALID_CHANNEL"
    INVALID_STORE = "INVALID_STORE"
    STORE_DAILY_CAP_EXCEEDED = "STORE_DAILY_CAP_EXCEEDED"
    # 6. customer
    CUSTOMER_REQUIRED = "CUSTOMER_REQUIRED"
    NOT_FIRST_ORDER = "NOT_FIRST_ORDER"
    CUSTOMER_LIMIT_EXCEEDED = "CUSTOMER_LIMIT_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    # 7. cart
    MIN_CART_VALUE_NOT_MET = "MIN_CART_VALUE_NOT_MET"
    MIN_QUANTITY_NOT_MET = "MIN_QUANTITY_NOT_MET"
    TARGET_PRODUCT_NOT_IN_CART = "TARGET_PRODUCT_NOT_IN_CART"
    TARGET_CATEGORY_NOT_IN_CART = "TARGET_CATEGORY_NOT_IN_CART"
    TARGET_COLLECTION_NOT_IN_CART = "TARGET_COLLECTION_NOT_IN_CART"
    EXCLUDED_PRODUCT_IN_CART = "EXCLUDED_PRODUCT_IN_CART"
    INVALID_PAYMENT_METHOD = "INVALID_PAYMENT_METHOD"
    NO_ELIGIBLE_ITEMS = "NO_ELIGIBLE_ITEMS"
    # apply only
    ORDER_ALREADY_REDEEMED = "ORDER_ALREADY_REDEEMED"


REASON_MESSAGES: dict[ReasonCode, str] = {
    ReasonCode.INVALID_CODE: "Coupon code not found",
    ReasonCode.CODE_REVOKED: "This coupon code has been revoked",
    ReasonCode.CODE_ALREADY_REDEEMED: "This coupon code has already been redeemed",
    ReasonCode.CODE_EXPIRED: "This coupon code has expired",
    ReasonCode.CODE_USAGE_EXCEEDED: "This coupon code has reached its usage limit",
    ReasonCode.CODE_ASSIGNED_TO_OTHER_CUSTOMER: "This coupon code is assigned to a different customer",
    ReasonCode.COUPON_INACTIVE: "This coupon is not active",
    ReasonCode.GLOBAL_LIMIT_EXCEEDED: "This coupon has reached its redemption limit",
    ReasonCode.COUPON_NOT_YET_VALID: "This coupon is not yet valid",
    ReasonCode.COUPON_EXPIRED: "This coupon has expired",
    ReasonCode.OUTSIDE_ALLOWED_TIME: "This coupon cannot be used at this day or time",
    ReasonCode.INVALID_CHANNEL: "This coupon cannot be used on this channel",
    ReasonCode.INVALID_STORE: "This coupon cannot be used at this store",
    ReasonCode.STORE_DAILY_CAP_EXCEEDED: "This coupon has reached today's limit for this store",
    ReasonCode.CUSTOMER_REQUIRED: "A customer account is required for this coupon",
    ReasonCode.NOT_FIRST_ORDER: "This coupon is only valid on a first order",
    ReasonCode.CUSTOMER_LIMIT_EXCEEDED: "You have already used this coupon the maximum number of times",
    ReasonCode.DAILY_LIMIT_EXCEEDED: "You have reached today's limit for this coupon",
    ReasonCode.MIN_CART_VALUE_NOT_MET: "Cart value is below the minimum required",
    ReasonCode.MIN_QUANTITY_NOT_MET: "Cart has fewer items than required",
    ReasonCode.TARGET_PRODUCT_NOT_IN_CART: "Cart does not contain a product this coupon applies to",
    ReasonCode.TARGET_CATEGORY_NOT_IN_CART: "Cart does not contain a category this coupon applies to",
    ReasonCode.TARGET_COLLECTION_NOT_IN_CART: "Cart does not contain a collection this coupon applies to",
    ReasonCode.EXCLUDED_PRODUCT_IN_CART: "Cart contains a product excluded from this coupon",
    ReasonCode.INVALID_PAYMENT_METHOD: "This coupon is not valid for the selected payment method",
    ReasonCode.NO_ELIGIBLE_ITEMS: "No items in the cart are eligible for this coupon",
    ReasonCode.ORDER_ALREADY_REDEEMED: "A coupon has already been applied to this order",
}


def usage_period(now: datetime) -> str:
    """Local calendar date (ISO) that daily limits are charged to."""
    return timezone.localdate(now, ZoneInfo(coupon_setting("TIME_ZONE"))).isoformat()


class EligibilityFacts(Protocol):
    """Read-only answers the pipeline needs from the outside world."""

    def prior_order_count(self, customer_id: str) -> int: ...

    def usage(self, coupon_pk: int, scope: CounterScope, subject: str = "", period: str = "") -> int: ...

    def is_known_store(self, store_id: str) -> bool: ...

    def is_enabled_channel(self, channel: str) -> bool: ...


@dataclass(frozen=True)
class ValidationRequest:
    code: CodeState | None
    policy: CouponPolicy | None
    customer_id: str
    store_id: str
    channel: str
    cart: Cart
    context: RedemptionContext
    now: datetime

    @property
    def period(self) -> str:
        return usage_period(self.now)


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    reason: ReasonCode | None = None
    warnings: tuple[str, ...] = ()
    eligible_lines: tuple[CartLine, ...] = field(default=())

    @property
    def message(self) -> str:
        return REASON_MESSAGES[self.reason] if self.reason else ""

    @classmethod
    def failure(cls, reason: ReasonCode) -> ValidationOutcome:
        return cls(valid=False, reason=reason)


Check = Callable[[ValidationRequest], ReasonCode | None]


class ValidationPipeline:
    """
    Ordered eligibility checks:

    1. code exists, is ISSUED, not exhausted/expired, assigned to this customer
    2. coupon ACTIVE and global limit not reached
    3. validity window, weekdays and local hours
    4. channel
    5. store and per-store daily cap
    6. customer: first order, total limit, daily limit
    7. cart: value, quantity, targets, exclusions, payment method, eligible lines
    """

    def __init__(self, facts: EligibilityFacts) -> None:
        self.facts = facts
        self.checks: tuple[Check, ...] = (
            self.check_code,
            self.check_coupon,
            self.check_time,
            self.check_channel,
            self.check_store,
            self.check_customer,
            self.check_cart,
        )

    def run(self, request: ValidationRequest) -> ValidationOutcome:
        for check in self.checks:
            reason = check(request)
            if reason is not None:
                logger.debug("Coupon check %s failed: %s", check.__name__, reason)
                return ValidationOutcome.failure(reason)

        assert request.policy is not None
        eligible = tuple(line for line in request.cart.lines if request.policy.target.matches(line))
        return ValidationOutcome(valid=True, warnings=self._warnings(request), eligible_lines=eligible)

    # ---- 1. code ---------------------------------------------------------

    def check_code(self, request: ValidationRequest) -> ReasonCode | None:
        code = request.code
        if code is None:
            return ReasonCode.INVALID_CODE
        if code.status == CodeStatus.REVOKED:
            return ReasonCode.CODE_REVOKED
        if code.status == CodeStatus.REDEEMED:
            return ReasonCode.CODE_ALREADY_REDEEMED
        if code.status == CodeStatus.EXPIRED:
            return ReasonCode.CODE_EXPIRED
        if code.status != CodeStatus.ISSUED:
            return ReasonCode.INVALID_CODE
        if code.expires_at is not None and request.now >= code.expires_at:
            return ReasonCode.CODE_EXPIRED
        if code.is_exhausted:
            return ReasonCode.CODE_USAGE_EXCEEDED
        if code.assigned_customer_id and code.assigned_customer_id != request.customer_id:
            return ReasonCode.CODE_ASSIGNED_TO_OTHER_CUSTOMER
        return None

    # ---- 2. coupon -------------------------------------------------------

    def check_coupon(self, request: ValidationRequest) -> ReasonCode | None:
        policy = request.policy
        if policy is None or policy.status != CouponStatus.ACTIVE:
            return ReasonCode.COUPON_INACTIVE
        limit = policy.limits.global_total
        if limit is not None and self.facts.usage(policy.pk, CounterScope.GLOBAL) >= limit:
            return ReasonCode.GLOBAL_LIMIT_EXCEEDED
        return None

    # ---- 3. time ---------------------------------------------------------

    def check_time(self, request: ValidationRequest) -> ReasonCode | None:
        policy = request.policy
        assert policy is not None
        if policy.valid_from is not None and request.now < policy.valid_from:
            return ReasonCode.COUPON_NOT_YET_VALID
        if policy.valid_until is not None and request.now > policy.valid_until:
            return ReasonCode.COUPON_EXPIRED

        local_now = timezone.localtime(request.now, ZoneInfo(coupon_setting("TIME_ZONE")))
        if policy.weekdays and local_now.isoweekday() not in policy.weekdays:
            return ReasonCode.OUTSIDE_ALLOWED_TIME
        if policy.hours_start is not None and policy.hours_end is not None:
            if not within_hours(local_now.time(), policy.hours_start, policy.hours_end):
                return ReasonCode.OUTSIDE_ALLOWED_TIME
        return None

    # ---- 4. channel ------------------------------------------------------

    def check_channel(self, request: ValidationRequest) -> ReasonCode | None:
        policy = request.policy
        assert policy is not None
        channel = request.channel.upper()
        if policy.channels and channel not in policy.channels:
            return ReasonCode.INVALID_CHANNEL
        if not self.facts.is_enabled_channel(channel):
            return ReasonCode.INVALID_CHANNEL
        return None

    # ---- 5. store --------------------------------------------------------

    def check_store(self, request: ValidationRequest) -> ReasonCode | None:
        policy = request.policy
        assert policy is not None
        if policy.stores and request.store_id not in policy.stores:
            return ReasonCode.INVALID_STORE
        if not self.facts.is_known_store(request.store_id):
            return ReasonCode.INVALID_STORE
        cap = policy.limits.per_store_daily
        if cap is not None:
            used = self.facts.usage(policy.pk, CounterScope.STORE_DAILY, request.store_id, request.period)
            if used >= cap:
                return ReasonCode.STORE_DAILY_CAP_EXCEEDED
        return None

    # ---- 6. customer -----------------------------------------------------

    def check_customer(self, request: ValidationRequest) -> ReasonCode | None:
        policy = request.policy
        assert policy is not None
        limits = policy.limits
        needs_customer = (
            policy.target.first_order_only
            or limits.per_customer_total is not None
            or limits.per_customer_daily is not None
        )
        if not needs_customer:
            return None
        if not request.customer_id:
            return ReasonCode.CUSTOMER_REQUIRED

        if policy.target.first_order_only and self.facts.prior_order_count(request.customer_id) > 0:
            return ReasonCode.NOT_FIRST_ORDER
        if limits.per_customer_total is not None:
            used = self.facts.usage(policy.pk, CounterScope.CUSTOMER_TOTAL, request.customer_id)
            if used >= limits.per_customer_total:
                return ReasonCode.CUSTOMER_LIMIT_EXCEEDED
        if limits.per_customer_daily is not None:
            used = self.facts.usage(policy.pk, CounterScope.CUSTOMER_DAILY, request.customer_id, request.period)
            if used >= limits.per_customer_daily:
                return ReasonCode.DAILY_LIMIT_EXCEEDED
        return None

    # ---- 7. cart ---------------------------------------------------------

    def check_cart(self, request: ValidationRequest) -> ReasonCode | None:  # noqa: PLR0911
        policy = request.policy
        assert policy is not None
        target = policy.target
        cart = request.cart

        if target.min_cart_value is not None and cart.subtotal < target.min_cart_value:
            return ReasonCode.MIN_CART_VALUE_NOT_MET
        if target.min_qty is not None and cart.total_qty < target.min_qty:
            return ReasonCode.MIN_QUANTITY_NOT_MET
        if target.products and not (target.products & cart.skus):
            return ReasonCode.TARGET_PRODUCT_NOT_IN_CART
        if target.categories and not (target.categories & cart.categories):
            return ReasonCode.TARGET_CATEGORY_NOT_IN_CART
        if target.collections and not (target.collections & cart.collections):
            return ReasonCode.TARGET_COLLECTION_NOT_IN_CART
        if target.excluded_products & cart.skus:
            return ReasonCode.EXCLUDED_PRODUCT_IN_CART
        payment_method = request.context.payment_method
        if target.payment_methods and payment_method and payment_method not in target.payment_methods:
            return ReasonCode.INVALID_PAYMENT_METHOD
        if policy.is_line_based and not any(target.matches(line) for line in cart.lines):
            return ReasonCode.NO_ELIGIBLE_ITEMS
        return None

    # ---- warnings --------------------------------------------------------

    def _warnings(self, request: ValidationRequest) -> tuple[str, ...]:
        policy = request.policy
        assert policy is not None
        if policy.valid_until is None:
            return ()
        remaining = policy.valid_until - request.now
        warning_days = coupon_setting("EXPIRY_WARNING_DAYS")
        if remaining.days < warning_days:
            days = remaining.days
            if days <= 0:
                return ("Coupon expires today",)
            return (f"Coupon expires in {days} day{'s' if days != 1 else ''}",)
        return ()


def within_hours(moment: time, start: time, end: time) -> bool:
    """Inclusive local-hour window. ``start > end`` wraps past midnight."""
    if start <= end:
        return start <= moment <= end
    return moment >= start or moment <= end
