"""Read-only projections over the ledger state.

Nothing in this module changes a :class:`~cashdesk.models.LedgerState`. The
functions feed the CLI listings and the CSV exports handed to accounting and
to providers.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .constants import ZERO, MovementKind, PaymentMethod, SaleType
from .models import CashClosure, LedgerState, Sale
from .pricing import round2


TOP_PRODUCT_COUNT = 5

RESTOCK_HEADERS = ("Code", "Product", "Sold", "Stock", "Suggested")
CLOSURE_HEADERS = (
    "OpenedAt",
    "ClosedAt",
    "OpeningAmount",
    "Cash",
    "Transfer",
    "Mixed",
    "Card",
    "Credit",
    "Account",
    "CashFromMixed",
    "ManualNet",
    "Expected",
    "Current",
    "Difference",
    "SaleCount",
    "Total",
    "Profit",
)
SALES_HEADERS = (
    "SaleID",
    "Timestamp",
    "Type",
    "Document",
    "Training",
    "Customer",
    "Method",
    "Subtotal",
    "ItemDiscounts",
    "Discount",
    "Tax",
    "Total",
    "Paid",
    "Change",
    "Profit",
)


@dataclass(frozen=True)
class ProductSales:
    product_id: str
    name: str
    quantity: Decimal
    revenue: Decimal


@dataclass(frozen=True)
class SalesSummary:
    """Aggregates over the non-quote sales of a date range."""

    revenue: Decimal
    profit: Decimal
    sale_count: int
    average_ticket: Decimal
    margin_percentage: Decimal
    top_products: Tuple[ProductSales, ...]


@dataclass(frozen=True)
class RestockLine:
    provider_id: str
    provider_name: str
    product_id: str
    code: str
    name: str
    sold: Decimal
    stock: Decimal
    suggested: Decimal


def _in_range(sale: Sale, start: Optional[date], end: Optional[date]) -> bool:
    sold_on = sale.timestamp.date()
    if start is not None and sold_on < start:
        return False
    if end is not None and sold_on > end:
        return False
    return True


def filter_sales(
    sales: Iterable[Sale],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    include_quotes: bool = False,
) -> List[Sale]:
    """Return the sales inside ``[start, end]`` (both days inclusive)."""

    return [
        sale
        for sale in sales
        if (include_quotes or sale.sale_type is not SaleType.QUOTE) and _in_range(sale, start, end)
    ]


def sales_summary(
    sales: Iterable[Sale],
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> SalesSummary:
    """Summarise revenue and profit for non-quote sales.

    Args:
        sales (Iterable[Sale]): The sales log, in any order.
        start (date | None): First day included.
        end (date | None): Last day included.

    Returns:
        SalesSummary: Totals plus the five products with the most revenue,
        where a line's revenue is ``price * quantity - item_discount``.
    """
    selected = filter_sales(sales, start=start, end=end)
    revenue = sum((sale.total for sale in selected), ZERO)
    profit = sum((sale.profit for sale in selected), ZERO)
    count = len(selected)
    average = round2(revenue / count) if count else ZERO
    margin = round2(profit / revenue * 100) if revenue > ZERO else ZERO

    by_product: Dict[str, ProductSales] = {}
    for sale in selected:
        for item in sale.items:
            current = by_product.get(item.product_id)
            quantity = item.quantity + (current.quantity if current else ZERO)
            line_revenue = item.gross - item.item_discount + (current.revenue if current else ZERO)
            by_product[item.product_id] = ProductSales(item.product_id, item.product_name, quantity, line_revenue)
    top = sorted(by_product.values(), key=lambda entry: entry.revenue, reverse=True)[:TOP_PRODUCT_COUNT]

    log.debug("Summarised %d sales between %s and %s", count, start, end)
    return SalesSummary(
        revenue=revenue,
        profit=profit,
        sale_count=count,
        average_ticket=average,
        margin_percentage=margin,
        top_products=tuple(top),
    )


def restock_suggestions(state: LedgerState, provider_id: Optional[str] = None) -> List[RestockLine]:
    """List what to reorder from each provider.

    ``suggested`` is ``max(0, min_stock + sold - stock)``. Accumulators that
    point at a deleted provider or product are skipped.
    """

    providers = {provider.provider_id: provider for provider in state.providers}
    products = {product.product_id: product for product in state.products}
    lines: List[RestockLine] = []
    for owner_id, bucket in state.provider_restock.items():
        if provider_id is not None and owner_id != provider_id:
            continue
        provider = providers.get(owner_id)
        if provider is None:
            continue
        for product_id, sold in bucket.items():
            product = products.get(product_id)
            if product is None:
                continue
            lines.append(
                RestockLine(
                    provider_id=owner_id,
                    provider_name=provider.name,
                    product_id=product_id,
                    code=product.code,
                    name=product.name,
                    sold=sold,
                    stock=product.stock,
                    suggested=max(ZERO, product.min_stock + sold - product.stock),
                )
            )
    return lines


def _write_csv(destination: Path, headers: Sequence[str], rows: Iterable[Sequence[object]]) -> Path:
    dest = Path(destination).expanduser()
    dest.parent.mkdir(parents=True, exist_ok=True)
    # utf-8-sig so spreadsheet tools pick up the accents in product names.
    with dest.open("w", newline="", encoding="utf-8-sig") as handle:
        writer = csv.writer(handle)
        writer.writerow(headers)
        count = 0
        for row in rows:
            writer.writerow(row)
            count += 1
    log.info("Exported %d rows to '%s'", count, dest)
    return dest


def export_restock_csv(lines: Iterable[RestockLine], destination: Path) -> Path:
    return _write_csv(
        destination,
        RESTOCK_HEADERS,
        ((line.code, line.name, line.sold, line.stock, line.suggested) for line in lines),
    )


def _closure_row(closure: CashClosure) -> List[object]:
    by_method = closure.sales_by_method
    return [
        closure.opened_at.isoformat(),
        closure.closed_at.isoformat(),
        closure.opening_amount,
        by_method.get(PaymentMethod.CASH, ZERO),
        by_method.get(PaymentMethod.TRANSFER, ZERO),
        by_method.get(PaymentMethod.MIXED, ZERO),
        by_method.get(PaymentMethod.CARD, ZERO),
        by_method.get(PaymentMethod.CREDIT, ZERO),
        by_method.get(PaymentMethod.ACCOUNT, ZERO),
        closure.cash_from_mixed,
        closure.manual_net,
        closure.expected_amount,
        closure.current_amount,
        closure.difference,
        closure.turn.sale_count,
        closure.turn.total,
        closure.turn.profit,
    ]


def export_closures_csv(closures: Iterable[CashClosure], destination: Path) -> Path:
    return _write_csv(destination, CLOSURE_HEADERS, (_closure_row(closure) for closure in closures))


def _sale_row(sale: Sale) -> List[object]:
    return [
        sale.sale_id,
        sale.timestamp.isoformat(),
        sale.sale_type.value,
        sale.document_number,
        "yes" if sale.training else "no",
        sale.customer.name if sale.customer else "",
        sale.payment.method.value,
        sale.subtotal,
        sale.item_discounts,
        sale.discount,
        sale.tax_amount,
        sale.total,
        sale.payment.amount_paid,
        sale.payment.change,
        sale.profit,
    ]


def export_sales_csv(sales: Iterable[Sale], destination: Path) -> Path:
    return _write_csv(destination, SALES_HEADERS, (_sale_row(sale) for sale in sales))


def format_closure_report(closure: CashClosure, *, currency: str = "ARS") -> str:
    """Render a closure as the plain-text report printed at the end of a shift."""

    def money(amount: Decimal) -> str:
        return f"{currency} {amount:,.2f}"

    lines = [
        "CASH CLOSURE",
        f"Opened:   {closure.opened_at:%Y-%m-%d %H:%M}",
        f"Closed:   {closure.closed_at:%Y-%m-%d %H:%M}",
        "",
        f"Opening amount:      {money(closure.opening_amount)}",
    ]
    for method in PaymentMethod:
        amount = closure.sales_by_method.get(method, ZERO)
        if amount:
            lines.append(f"Sales {method.value + ':':<14}{money(amount)}")
    lines.extend(
        [
            f"Cash from mixed:     {money(closure.cash_from_mixed)}",
            f"Manual movements:    {money(closure.manual_net)}",
            f"Expected in drawer:  {money(closure.expected_amount)}",
            f"Counted in drawer:   {money(closure.current_amount)}",
            f"Difference:          {money(closure.difference)}",
            "",
            f"Sales: {closure.turn.sale_count}  Total: {money(closure.turn.total)}  Profit: {money(closure.turn.profit)}",
        ]
    )
    manual = [movement for movement in closure.movements if movement.is_manual]
    if manual:
        lines.append("")
        lines.append("Manual movements:")
        for movement in manual:
            sign = "+" if movement.kind is MovementKind.INCOME else "-"
            lines.append(f"  {movement.timestamp:%H:%M} {sign}{money(movement.amount)} {movement.concept}")
    return "\n".join(lines)
