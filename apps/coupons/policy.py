"""
Immutable snapshots of coupon and code configuration.

Validation and calculation work on these snapshots rather than on model
instances, so they can be cached and shared between threads. The discount
rule is a closed union of dataclasses, one per discount type.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, assert_never

from apps.common.types import Amount, Sku

from .cart import ZERO, CartLine
from .models import BogoReward, DiscountType, YopoPayable

if TYPE_CHECKING:
    from .models import Coupon, CouponCode

# ===============================================================================
# DISCOUNT RULES
# ===============================================================================


@dataclass(frozen=True)
class PercentOff:
    percent: Decimal


@dataclass(frozen=True)
class AmountOff:
    amount: Amount


@dataclass(frozen=True)
class BuyXGetY:
    buy: int
    get: int
    reward: BogoReward
    value: Decimal


@dataclass(frozen=True)
class GroupPay:
    group_size: int
    payable: YopoPayable


@dataclass(frozen=True)
class FreeItem:
    sku: Sku


@dataclass(frozen=True)
class ShippingOff:
    cap: Amount | None


DiscountRule = PercentOff | AmountOff | BuyXGetY | GroupPay | FreeItem | ShippingOff

# Rules that discount cart lines (and so need at least one eligible line)
LINE_RULES = (PercentOff, AmountOff, BuyXGetY, GroupPay)


def build_rule(coupon: Coupon) -> DiscountRule:
    """Translate the coupon's type-specific columns into its rule variant."""
    discount_type = DiscountType(coupon.discount_type)
    match discount_type:
        case DiscountType.PERCENT:
            return PercentOff(percent=coupon.percent_off or ZERO)
        case DiscountType.AMOUNT:
            return AmountOff(amount=coupon.amount_off or ZERO)
        case DiscountType.BOGO:
            return BuyXGetY(
                buy=coupon.bogo_x or 0,
                get=coupon.bogo_y or 0,
                reward=BogoReward(coupon.bogo_reward),
                value=coupon.bogo_value or ZERO,
            )
        case DiscountType.YOPO:
            return GroupPay(group_size=coupon.yopo_group_size or 0, payable=YopoPayable(coupon.yopo_payable))
        case DiscountType.FREE_ITEM:
            return FreeItem(sku=coupon.free_item_sku)
        case DiscountType.SHIPPING_OFF:
            return ShippingOff(cap=coupon.amount_off)
        case _:
            assert_never(discount_type)


# ===============================================================================
# SNAPSHOTS
# ===============================================================================


@dataclass(frozen=True)
class TargetScope:
    """Cart targeting. Empty sets mean "no restriction"."""

    products: frozenset[Sku] = frozenset()
    categories: frozenset[str] = frozenset()
    collections: frozenset[str] = frozenset()
    excluded_products: frozenset[Sku] = frozenset()
    payment_methods: frozenset[str] = frozenset()
    min_cart_value: Amount | None = None
    min_qty: int | None = None
    first_order_only: bool = False

    def matches(self, line: CartLine) -> bool:
        """Whether a cart line is eligible for a line-based discount."""
        if line.sku in self.excluded_products:
            return False
        if self.products and line.sku not in self.products:
            return False
        if self.categories and line.category not in self.categories:
            return False
        return not (self.collections and line.collection not in self.collections)


@dataclass(frozen=True)
class UsageLimits:
    per_customer_total: int | None = None
    per_customer_daily: int | None = None
    global_total: int | None = None
    per_store_daily: int | None = None


@dataclass(frozen=True)
class CouponPolicy:
    """Read-only view of one coupon used by validation and calculation."""

    pk: int
    coupon_id: str
    name: str
    status: str
    discount_type: DiscountType
    rule: DiscountRule
    target: TargetScope
    limits: UsageLimits
    max_discount_value: Amount | None
    valid_from: datetime | None
    valid_until: datetime | None
    channels: frozenset[str]
    stores: frozenset[str]
    weekdays: frozenset[int]
    hours_start: time | None
    hours_end: time | None
    stack_with_loyalty: bool
    stack_with_wallet: bool

    @property
    def stackability(self) -> dict[str, bool]:
        return {"loyalty": self.stack_with_loyalty, "wallet": self.stack_with_wallet}

    @property
    def is_line_based(self) -> bool:
        return isinstance(self.rule, LINE_RULES)

    @classmethod
    def from_model(cls, coupon: Coupon) -> CouponPolicy:
        return cls(
            pk=coupon.pk,
            coupon_id=coupon.coupon_id,
            name=coupon.name,
            status=coupon.status,
            discount_type=DiscountType(coupon.discount_type),
            rule=build_rule(coupon),
            target=TargetScope(
                products=frozenset(coupon.target_products or ()),
                categories=frozenset(coupon.target_categories or ()),
                collections=frozenset(coupon.target_collections or ()),
                excluded_products=frozenset(coupon.exclude_products or ()),
                payment_methods=frozenset(coupon.payment_methods or ()),
                min_cart_value=coupon.min_cart_value,
                min_qty=coupon.min_qty,
                first_order_only=coupon.first_order_only,
            ),
            limits=UsageLimits(
                per_customer_total=coupon.per_customer_limit_total,
                per_customer_daily=coupon.per_customer_limit_daily,
                global_total=coupon.global_redemption_limit,
                per_store_daily=coupon.per_store_daily_cap,
            ),
            max_discount_value=coupon.max_discount_value,
            valid_from=coupon.valid_from,
            valid_until=coupon.valid_until,
            channels=frozenset(coupon.channels or ()),
            stores=frozenset(str(store) for store in coupon.stores or ()),
            weekdays=frozenset(int(day) for day in coupon.weekdays or ()),
            hours_start=coupon.hours_start,
            hours_end=coupon.hours_end,
            stack_with_loyalty=coupon.stack_with_loyalty,
            stack_with_wallet=coupon.stack_with_wallet,
        )


@dataclass(frozen=True)
class CodeState:
    """Read-only view of one code."""

    pk: str
    code: str
    coupon_pk: int
    status: str
    usage_count: int
    max_uses: int
    assigned_customer_id: str | None
    expires_at: datetime | None

    @property
    def is_exhausted(self) -> bool:
        return self.usage_count >= self.max_uses

    @classmethod
    def from_model(cls, code: CouponCode) -> CodeState:
        return cls(
            pk=str(code.pk),
            code=code.code,
            coupon_pk=code.coupon_id,
            status=code.status,
            usage_count=code.usage_count,
            max_uses=code.max_uses,
            assigned_customer_id=code.assigned_customer_id or None,
            expires_at=code.expires_at,
        )
