"""
Cart and request context passed in by callers.

Carts are ephemeral: the engine never persists them. They are built from
plain dicts (as received from the order service) into frozen dataclasses
with ``Decimal`` money.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from apps.common.types import Amount, Sku

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Amount:
    """Convert to a 2-decimal ``Decimal``, rounding half up."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid money amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CartLine:
    """One cart line. ``unit_price`` is the price of a single unit."""

    sku: Sku
    qty: int
    unit_price: Amount
    category: str = ""
    collection: str = ""

    def __post_init__(self) -> None:
        if not self.sku:
            raise ValueError("Cart line requires a sku")
        if self.qty < 1:
            raise ValueError(f"Cart line {self.sku} has non-positive quantity {self.qty}")
        if self.unit_price < 0:
            raise ValueError(f"Cart line {self.sku} has negative price {self.unit_price}")

    @property
    def line_total(self) -> Amount:
        return self.unit_price * self.qty

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CartLine:
        price = data.get("unit_price", data.get("price"))
        if price is None:
            raise ValueError(f"Cart line {data.get('sku')!r} has no price")
        return cls(
            sku=str(data.get("sku") or "").strip(),
            qty=int(data.get("qty", data.get("quantity", 1))),
            unit_price=to_money(price),
            category=str(data.get("category") or ""),
            collection=str(data.get("collection") or ""),
        )


@dataclass(frozen=True)
class Cart:
    """Read-only cart. Totals are computed from the lines."""

    lines: tuple[CartLine, ...]
    shipping: Amount = ZERO

    def __post_init__(self) -> None:
        if self.shipping < 0:
            raise ValueError(f"Negative shipping amount {self.shipping}")

    @property
    def subtotal(self) -> Amount:
        return sum((line.line_total for line in self.lines), ZERO)

    @property
    def total_qty(self) -> int:
        return sum(line.qty for line in self.lines)

    @property
    def skus(self) -> frozenset[Sku]:
        return frozenset(line.sku for line in self.lines)

    @property
    def categories(self) -> frozenset[str]:
        return frozenset(line.category for line in self.lines if line.category)

    @property
    def collections(self) -> frozenset[str]:
        return frozenset(line.collection for line in self.lines if line.collection)

    @classmethod
    def build(cls, lines: Iterable[CartLine], shipping: Any = ZERO) -> Cart:
        return cls(lines=tuple(lines), shipping=to_money(shipping))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Cart:
        """
        Build a cart from the order service payload::

            {"items": [{"sku": ..., "qty": ..., "price": ..., "category": ...}],
             "totals": {"shipping": ...}}
        """
        totals = data.get("totals") or {}
        shipping = totals.get("shipping", data.get("shipping", ZERO))
        return cls.build((CartLine.from_dict(item) for item in data.get("items", [])), shipping=shipping)


@dataclass(frozen=True)
class RedemptionContext:
    """Request metadata recorded on redemptions."""

    payment_method: str = ""
    ip_address: str | None = None
    user_agent: str = ""
    device_id: str = ""
    session_id: str = ""
    city: str = ""
    state: str = ""
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RedemptionContext:
        if not data:
            return cls()
        known = {
            "payment_method",
            "ip_address",
            "user_agent",
            "device_id",
            "session_id",
            "city",
            "state",
        }
        values = {key: data[key] for key in known if data.get(key) is not None}
        values["extra"] = {key: value for key, value in data.items() if key not in known}
        return cls(**values)
