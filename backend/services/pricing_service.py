"""
Pricing service: subtotal, shipping fee and total for a cart.

price() is a pure function and the only place order money is computed:
live quotes (quote_price) and authoritative order pricing
(order_service.place_order) both go through it, so a buyer is always
charged what they were quoted for the same cart and shipping rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Product, ShippingOption
from domain.errors import (
    EmptyCartError,
    InvalidLineItemError,
    NotFoundError,
    ShippingOptionRequiredError,
    ValidationError,
)

_CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a number to a 2dp Decimal (via str, never via float arithmetic)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class PricedLine:
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    size: str | None = None
    color: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True, slots=True)
class ShippingRule:
    option_id: str
    name: str
    base_price: Decimal
    free_shipping_threshold: Decimal | None = None
    discount_threshold: Decimal | None = None
    discount_amount: Decimal | None = None

    @classmethod
    def from_record(cls, option: ShippingOption) -> "ShippingRule":
        def _opt(value):
            return to_money(value) if value is not None else None

        return cls(
            option_id=option.id,
            name=option.name,
            base_price=to_money(option.base_price),
            free_shipping_threshold=_opt(option.free_shipping_threshold),
            discount_threshold=_opt(option.discount_threshold),
            discount_amount=_opt(option.discount_amount),
        )


@dataclass(frozen=True, slots=True)
class PriceQuote:
    subtotal: Decimal
    shipping_fee: Decimal
    total: Decimal
    free_shipping_applied: bool = False
    shipping_discount_applied: bool = False

    def as_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "shipping_fee": str(self.shipping_fee),
            "total": str(self.total),
            "free_shipping_applied": self.free_shipping_applied,
            "shipping_discount_applied": self.shipping_discount_applied,
        }


def shipping_fee_for(subtotal: Decimal, rule: ShippingRule) -> tuple[Decimal, bool, bool]:
    """
    Apply a shipping rule to a subtotal.

    Free shipping is checked first and wins over the discount rule when
    both thresholds are met. Thresholds are inclusive. The fee never goes
    below zero.

    Returns:
        (fee, free_shipping_applied, shipping_discount_applied)
    """
    if rule.free_shipping_threshold is not None and subtotal >= rule.free_shipping_threshold:
        return Decimal("0.00"), True, False

    if (
        rule.discount_threshold is not None
        and rule.discount_amount is not None
        and subtotal >= rule.discount_threshold
    ):
        fee = max(Decimal("0.00"), rule.base_price - rule.discount_amount)
        return to_money(fee), False, True

    return max(Decimal("0.00"), rule.base_price), False, False


def price(line_items: list[PricedLine], shipping_rule: ShippingRule | None) -> PriceQuote:
    """Pure pricing: same inputs always give the same quote."""
    if shipping_rule is None:
        raise ShippingOptionRequiredError()
    if not line_items:
        raise EmptyCartError()

    subtotal = Decimal("0.00")
    for line in line_items:
        if line.quantity < 1:
            raise InvalidLineItemError(
                f"Quantity must be at least 1 for {line.product_name}", field="quantity"
            )
        if line.unit_price < 0:
            raise InvalidLineItemError(
                f"Unit price cannot be negative for {line.product_name}", field="unit_price"
            )
        subtotal += line.line_total

    subtotal = to_money(subtotal)
    fee, free_applied, discount_applied = shipping_fee_for(subtotal, shipping_rule)

    return PriceQuote(
        subtotal=subtotal,
        shipping_fee=fee,
        total=subtotal + fee,
        free_shipping_applied=free_applied,
        shipping_discount_applied=discount_applied,
    )


# ════════════════════════════════════════════════════════════════════
# Store-backed helpers
# ════════════════════════════════════════════════════════════════════


async def load_shipping_rule(db: AsyncSession, shipping_option_id: str | None) -> ShippingRule:
    if not shipping_option_id:
        raise ShippingOptionRequiredError()
    option = await db.get(ShippingOption, shipping_option_id)
    if option is None or not option.enabled:
        raise ShippingOptionRequiredError(f"Shipping option '{shipping_option_id}' is not available")
    return ShippingRule.from_record(option)


async def resolve_line_items(db: AsyncSession, items: list[dict]) -> list[PricedLine]:
    """
    Snapshot current catalog prices for cart items.

    items: [{product_id:int, quantity:int, size?:str, color?:str}]
    Client-sent prices are never read.
    """
    if not items:
        raise EmptyCartError()

    for i in items:
        if int(i.get("quantity", 0)) < 1:
            raise InvalidLineItemError("Quantity must be at least 1", field="quantity")

    product_ids = {int(i["product_id"]) for i in items}
    res = await db.execute(select(Product).where(Product.id.in_(product_ids)))
    products = {p.id: p for p in res.scalars().all()}

    lines: list[PricedLine] = []
    for i in items:
        pid = int(i["product_id"])
        p = products.get(pid)
        if p is None:
            raise NotFoundError("Product", str(pid))
        if not p.active:
            raise ValidationError(f"Product {p.name} is no longer available", field="product_id")
        lines.append(
            PricedLine(
                product_id=p.id,
                product_name=p.name,
                unit_price=to_money(p.price),
                quantity=int(i["quantity"]),
                size=i.get("size"),
                color=i.get("color"),
            )
        )
    return lines


async def quote_price(db: AsyncSession, *, items: list[dict], shipping_option_id: str | None) -> PriceQuote:
    """Live checkout quote from current catalog prices and shipping rules."""
    lines = await resolve_line_items(db, items)
    rule = await load_shipping_rule(db, shipping_option_id)
    return price(lines, rule)
