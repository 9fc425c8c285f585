"""Pricing calculator for carts.

Pure functions only: nothing here reads or writes ledger state. Rounding is
applied exactly twice, to the tax amount and to the final total, and never to
the intermediate sums. Cash closures reconcile against totals produced here,
so the rounding order must not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable

from . import log
from .constants import CENT, ZERO

if TYPE_CHECKING:
    from .models import LineItem


@dataclass(frozen=True)
class PriceDetail:
    """Totals breakdown of a cart at a given discount and tax rate."""

    subtotal: Decimal
    item_discounts: Decimal
    base: Decimal
    tax_amount: Decimal
    total: Decimal


def round2(value: Decimal) -> Decimal:
    """Round half-up to cents."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_subtotal(cart: Iterable["LineItem"]) -> Decimal:
    return sum((item.unit_price * item.quantity for item in cart), ZERO)


def compute_item_discounts(cart: Iterable["LineItem"]) -> Decimal:
    return sum((item.item_discount for item in cart), ZERO)


def compute_detail(cart: Iterable["LineItem"], global_discount: Decimal, tax_rate: Decimal) -> PriceDetail:
    """Compute the totals breakdown for ``cart``.

    Args:
        cart (Iterable[LineItem]): Cart lines in display order. May be empty.
        global_discount (Decimal): Absolute discount applied after tax.
        tax_rate (Decimal): Fraction applied to the discounted base.

    Returns:
        PriceDetail: ``subtotal`` and ``item_discounts`` as raw sums, ``base``
            as their difference, ``tax_amount`` rounded from ``base * rate``
            and ``total`` rounded from ``base + tax_amount - global_discount``.
            The total is not clamped, so an oversized discount yields a
            negative value that callers must reject.
    """
    items = tuple(cart)
    subtotal = compute_subtotal(items)
    item_discounts = compute_item_discounts(items)
    base = subtotal - item_discounts
    tax_amount = round2(base * Decimal(tax_rate))
    total = round2(base + tax_amount - Decimal(global_discount))
    log.debug(
        "Computed cart detail: lines=%d subtotal=%s base=%s tax=%s total=%s",
        len(items),
        subtotal,
        base,
        tax_amount,
        total,
    )
    return PriceDetail(
        subtotal=subtotal,
        item_discounts=item_discounts,
        base=base,
        tax_amount=tax_amount,
        total=total,
    )


def compute_profit(cart: Iterable["LineItem"]) -> Decimal:
    """Return ``sum((price - cost) * quantity)``; rounding is left to display."""

    return sum(((item.unit_price - item.unit_cost) * item.quantity for item in cart), ZERO)


def compute_change(paid: Decimal, total: Decimal) -> Decimal:
    """Change owed for a cash tender, never negative."""

    return max(ZERO, Decimal(paid) - Decimal(total))
