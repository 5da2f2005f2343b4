"""
Discount calculation per discount type.

Pure functions over a ``CouponPolicy`` and a ``Cart``. The only outside call
is the catalog price lookup for FREE_ITEM coupons.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol, assert_never

from apps.common.types import Amount, Sku

from .cart import CENT, ZERO, Cart, CartLine
from .conf import coupon_setting
from .exceptions import DependencyUnavailable
from .models import BogoReward, YopoPayable
from .policy import AmountOff, BuyXGetY, CouponPolicy, FreeItem, GroupPay, PercentOff, ShippingOff

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
SHIPPING_SKU = "SHIPPING"


class PriceCatalog(Protocol):
    def get_price(self, sku: Sku) -> Amount | None: ...


def quantize(amount: Decimal) -> Amount:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineDiscount:
    """Breakdown for one line. Prices are per unit; ``discount_applied`` is for the line."""

    sku: Sku
    qty: int
    original_price: Amount
    discounted_price: Amount
    discount_applied: Amount
    category: str = ""
    collection: str = ""
    kind: str = "item"  # item | bonus | shipping

    def as_dict(self) -> dict[str, Any]:
        return {
            "sku": self.sku,
            "qty": self.qty,
            "original_price": self.original_price,
            "discounted_price": self.discounted_price,
            "discount_applied": self.discount_applied,
            "category": self.category,
            "collection": self.collection,
            "kind": self.kind,
        }


@dataclass(frozen=True)
class DiscountComputation:
    total_discount: Amount
    pre_discount_amount: Amount
    lines: tuple[LineDiscount, ...]
    warnings: tuple[str, ...] = ()

    @property
    def affected_items(self) -> list[dict[str, Any]]:
        return [line.as_dict() for line in self.lines]


@dataclass
class _LineWork:
    """Mutable per-line accumulator used while computing."""

    line: CartLine
    discount: Decimal = ZERO
    affected_qty: int = 0


class DiscountCalculator:
    """Computes discounts for validated coupons."""

    def __init__(self, catalog: PriceCatalog) -> None:
        self.catalog = catalog

    def calculate(self, policy: CouponPolicy, cart: Cart) -> DiscountComputation:
        work = [_LineWork(line=line) for line in cart.lines]
        eligible = [item for item in work if policy.target.matches(item.line)]
        extra_lines: list[LineDiscount] = []
        pre_discount = cart.subtotal + cart.shipping

        rule = policy.rule
        match rule:
            case PercentOff():
                self._percent(eligible, rule)
            case AmountOff():
                self._amount(eligible, rule)
            case BuyXGetY():
                self._bogo(eligible, rule)
            case GroupPay():
                self._yopo(eligible, rule)
            case FreeItem():
                bonus = self._free_item(rule)
                pre_discount += bonus.original_price
                extra_lines.append(bonus)
            case ShippingOff():
                extra_lines.extend(self._shipping(cart, rule))
            case _:
                assert_never(rule)

        for item in work:
            item.discount = quantize(min(item.discount, item.line.line_total))

        warnings: list[str] = []
        cap = policy.max_discount_value
        total = sum((item.discount for item in work), ZERO) + sum((line.discount_applied for line in extra_lines), ZERO)
        if cap and total > cap:
            self._clamp(work, extra_lines, cap)
            total = cap
            warnings.append(f"Discount capped at {coupon_setting('CURRENCY_SYMBOL')}{cap}")
            logger.debug("Coupon %s discount clamped to %s", policy.coupon_id, cap)

        lines = tuple(self._line_result(item) for item in work) + tuple(extra_lines)
        return DiscountComputation(
            total_discount=quantize(total),
            pre_discount_amount=quantize(pre_discount),
            lines=lines,
            warnings=tuple(warnings),
        )

    # ---- strategies ------------------------------------------------------

    def _percent(self, eligible: list[_LineWork], rule: PercentOff) -> None:
        for item in eligible:
            item.discount = quantize(item.line.line_total * rule.percent / HUNDRED)
            item.affected_qty = item.line.qty

    def _amount(self, eligible: list[_LineWork], rule: AmountOff) -> None:
        remaining = rule.amount
        for item in eligible:
            if remaining <= 0:
                break
            take = min(remaining, item.line.line_total)
            item.discount = take
            item.affected_qty = item.line.qty
            remaining -= take

    def _bogo(self, eligible: list[_LineWork], rule: BuyXGetY) -> None:
        if rule.buy <= rule.get or rule.get < 1:
            return
        for item in eligible:
            line = item.line
            reward_qty = min(line.qty // rule.buy * rule.get, line.qty)
            if reward_qty == 0:
                continue
            match rule.reward:
                case BogoReward.FREE:
                    per_unit = line.unit_price
                case BogoReward.PERCENTAGE_OFF:
                    per_unit = line.unit_price * rule.value / HUNDRED
                case BogoReward.FIXED_PRICE:
                    per_unit = max(line.unit_price - rule.value, ZERO)
                case _:
                    assert_never(rule.reward)
            item.discount = quantize(per_unit * reward_qty)
            item.affected_qty = reward_qty

    def _yopo(self, eligible: list[_LineWork], rule: GroupPay) -> None:
        if rule.group_size < 2:  # noqa: PLR2004
            return
        units = [item for item in eligible for _ in range(item.line.qty)]
        complete = len(units) - len(units) % rule.group_size
        for start in range(0, complete, rule.group_size):
            group = sorted(
                units[start : start + rule.group_size],
                key=lambda item: item.line.unit_price,
                reverse=rule.payable == YopoPayable.HIGHEST,
            )
            for free_unit in group[1:]:
                free_unit.discount += free_unit.line.unit_price
                free_unit.affected_qty += 1

    def _free_item(self, rule: FreeItem) -> LineDiscount:
        try:
            price = self.catalog.get_price(rule.sku)
        except DependencyUnavailable:
            raise
        except Exception as e:
            logger.error("Catalog lookup failed for free item %s: %s", rule.sku, e)
            raise DependencyUnavailable("catalog", str(e)) from e
        if price is None:
            logger.error("Catalog has no price for free item %s", rule.sku)
            raise DependencyUnavailable("catalog", f"no price for {rule.sku}")
        price = quantize(Decimal(price))
        return LineDiscount(
            sku=rule.sku,
            qty=1,
            original_price=price,
            discounted_price=ZERO,
            discount_applied=price,
            kind="bonus",
        )

    def _shipping(self, cart: Cart, rule: ShippingOff) -> list[LineDiscount]:
        if cart.shipping <= 0:
            return []
        discount = cart.shipping if rule.cap is None else min(cart.shipping, rule.cap)
        return [
            LineDiscount(
                sku=SHIPPING_SKU,
                qty=1,
                original_price=cart.shipping,
                discounted_price=cart.shipping - discount,
                discount_applied=discount,
                kind="shipping",
            )
        ]

    # ---- helpers ---------------------------------------------------------

    def _clamp(self, work: list[_LineWork], extra_lines: list[LineDiscount], cap: Amount) -> None:
        """Reallocate the capped total across discounted lines in cart order."""
        remaining = cap
        for item in work:
            item.discount = min(item.discount, remaining)
            remaining -= item.discount
        for index, line in enumerate(extra_lines):
            applied = min(line.discount_applied, remaining)
            remaining -= applied
            extra_lines[index] = LineDiscount(
                sku=line.sku,
                qty=line.qty,
                original_price=line.original_price,
                discounted_price=line.original_price - applied,
                discount_applied=applied,
                kind=line.kind,
            )

    def _line_result(self, item: _LineWork) -> LineDiscount:
        line = item.line
        if item.discount <= 0:
            return LineDiscount(
                sku=line.sku,
                qty=line.qty,
                original_price=line.unit_price,
                discounted_price=line.unit_price,
                discount_applied=ZERO,
                category=line.category,
                collection=line.collection,
            )
        qty = item.affected_qty or line.qty
        return LineDiscount(
            sku=line.sku,
            qty=qty,
            original_price=line.unit_price,
            discounted_price=quantize(max(line.unit_price - item.discount / qty, ZERO)),
            discount_applied=item.discount,
            category=line.category,
            collection=line.collection,
        )
