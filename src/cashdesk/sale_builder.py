"""Sale builder: turns a checked-out cart into an immutable :class:`Sale`.

Checkout validation never raises. A cart that cannot be committed produces a
:class:`SaleRejection` value which the caller surfaces to the operator; no
ledger state is touched in that case. The only asynchronous step is the
optional request to the invoicing service, which is bounded by the configured
timeout and degrades to a temporary training document on any failure.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Union

from . import log
from .constants import INVOICED_SALE_TYPES, ZERO, PaymentMethod, RejectionReason, SaleType
from .invoicing import Invoicer
from .models import Customer, FiscalDocument, LineItem, Payment, Sale, Settings, generate_id, to_decimal
from .pricing import PriceDetail, compute_change, compute_detail, compute_profit


@dataclass(frozen=True)
class SaleRejection:
    """Typed reason a checkout was refused."""

    reason: RejectionReason
    message: str


BuildResult = Union[Sale, SaleRejection]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def validate_checkout(
    cart: Iterable[LineItem],
    detail: PriceDetail,
    *,
    sale_type: SaleType,
    payment_method: PaymentMethod,
    payment_amount: Decimal,
    customer: Optional[Customer],
) -> Optional[SaleRejection]:
    """Return the first rejection that applies to the checkout, if any.

    Args:
        cart (Iterable[LineItem]): Lines about to be committed.
        detail (PriceDetail): Totals computed for ``cart``.
        sale_type (SaleType): Requested document type.
        payment_method (PaymentMethod): Selected tender.
        payment_amount (Decimal): Amount handed over by the customer.
        customer (Customer | None): Selected account holder.

    Returns:
        SaleRejection | None: ``EMPTY_CART`` when nothing is being sold,
            ``NEGATIVE_TOTAL`` when the global discount exceeds the taxed base,
            ``INSUFFICIENT_PAYMENT`` for an underpaid cash sale and
            ``CUSTOMER_REQUIRED`` for a credit sale without a customer.
    """
    if not tuple(cart):
        return SaleRejection(RejectionReason.EMPTY_CART, "The cart is empty")
    if detail.total < ZERO:
        return SaleRejection(
            RejectionReason.NEGATIVE_TOTAL,
            f"Discount leaves a negative total ({detail.total})",
        )
    if (
        sale_type is SaleType.SALE
        and payment_method is PaymentMethod.CASH
        and payment_amount < detail.total
    ):
        return SaleRejection(
            RejectionReason.INSUFFICIENT_PAYMENT,
            f"Paid {payment_amount} does not cover total {detail.total}",
        )
    if sale_type is SaleType.CREDIT and customer is None:
        return SaleRejection(
            RejectionReason.CUSTOMER_REQUIRED,
            "A customer must be selected for a credit sale",
        )
    return None


def build_payload(
    sale_id: str,
    sale_type: SaleType,
    items: Iterable[LineItem],
    detail: PriceDetail,
    customer: Optional[Customer],
) -> Dict[str, Any]:
    """Snapshot handed to the invoicing service."""

    return {
        "sale_id": sale_id,
        "type": sale_type.value,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.product_name,
                "quantity": str(item.quantity),
                "price": str(item.unit_price),
                "discount": str(item.item_discount),
            }
            for item in items
        ],
        "subtotal": str(detail.subtotal),
        "tax": str(detail.tax_amount),
        "total": str(detail.total),
        "customer": None
        if customer is None
        else {"id": customer.customer_id, "name": customer.name, "tax_id": customer.tax_id},
    }


async def issue_document(
    invoicer: Optional[Invoicer],
    *,
    sale_id: str,
    sale_type: SaleType,
    payload: Dict[str, Any],
    settings: Settings,
) -> FiscalDocument:
    """Request a fiscal document, falling back to a temporary one.

    The request is only made when invoicing is enabled, an invoicer is wired
    and ``sale_type`` is fiscally relevant. Failures and timeouts are logged
    and never propagated: the sale must commit regardless.
    """
    if not settings.invoicing_enabled or invoicer is None or sale_type not in INVOICED_SALE_TYPES:
        return FiscalDocument.temporary(sale_id)

    try:
        document = await asyncio.wait_for(
            invoicer.issue(sale_type, payload, settings),
            timeout=settings.invoicing_timeout,
        )
    except asyncio.TimeoutError:
        log.warning(
            "Invoicing timed out after %ss for sale '%s'; using temporary document",
            settings.invoicing_timeout,
            sale_id,
        )
        return FiscalDocument.temporary(sale_id)
    except Exception as exc:
        log.warning("Invoicing failed for sale '%s': %s; using temporary document", sale_id, exc)
        return FiscalDocument.temporary(sale_id)

    log.info("Issued fiscal document '%s' for sale '%s'", document.number, sale_id)
    return document


async def build_sale(
    cart: Iterable[LineItem],
    settings: Settings,
    *,
    sale_type: SaleType = SaleType.SALE,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    payment_amount: Decimal = ZERO,
    customer: Optional[Customer] = None,
    discount: Decimal = ZERO,
    notes: str = "",
    invoicer: Optional[Invoicer] = None,
    timestamp: Optional[datetime] = None,
    source_quote_id: Optional[str] = None,
) -> BuildResult:
    """Validate a checkout and assemble the resulting sale.

    Args:
        cart (Iterable[LineItem]): Cart snapshot; copied into the sale.
        settings (Settings): Tax rate and invoicing configuration.
        sale_type (SaleType): Document type being produced.
        payment_method (PaymentMethod): Tender used by the customer.
        payment_amount (Decimal): Amount handed over now.
        customer (Customer | None): Account holder snapshot.
        discount (Decimal): Global discount applied after tax.
        notes (str): Free text stored on the sale.
        invoicer (Invoicer | None): Fiscal document service.
        timestamp (datetime | None): Commit moment; defaults to now (UTC).
        source_quote_id (str | None): Quote this sale was converted from.

    Returns:
        Sale | SaleRejection: The immutable sale, or the reason it was refused.
    """
    items = tuple(cart)
    sale_type = SaleType(sale_type)
    payment_method = PaymentMethod(payment_method)
    payment_amount = to_decimal(payment_amount)
    discount = to_decimal(discount)

    detail = compute_detail(items, discount, settings.tax_rate)
    rejection = validate_checkout(
        items,
        detail,
        sale_type=sale_type,
        payment_method=payment_method,
        payment_amount=payment_amount,
        customer=customer,
    )
    if rejection is not None:
        log.warning("Checkout rejected (%s): %s", rejection.reason.value, rejection.message)
        return rejection

    timestamp = _resolve_timestamp(timestamp)
    sale_id = generate_id("S", timestamp)
    change = compute_change(payment_amount, detail.total) if payment_method is PaymentMethod.CASH else ZERO

    payload = build_payload(sale_id, sale_type, items, detail, customer)
    document = await issue_document(
        invoicer,
        sale_id=sale_id,
        sale_type=sale_type,
        payload=payload,
        settings=settings,
    )

    sale = Sale(
        sale_id=sale_id,
        timestamp=timestamp,
        sale_type=sale_type,
        items=items,
        subtotal=detail.subtotal,
        item_discounts=detail.item_discounts,
        discount=discount,
        tax_amount=detail.tax_amount,
        total=detail.total,
        profit=compute_profit(items),
        payment=Payment(method=payment_method, amount_paid=payment_amount, change=change),
        document=document,
        customer=customer,
        notes=notes,
        source_quote_id=source_quote_id,
    )
    log.debug("Built %s '%s' total=%s document=%s", sale_type.value, sale_id, sale.total, document.number)
    return sale


async def convert_quote(
    quote: Sale,
    settings: Settings,
    *,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    payment_amount: Optional[Decimal] = None,
    customer: Optional[Customer] = None,
    invoicer: Optional[Invoicer] = None,
    timestamp: Optional[datetime] = None,
) -> BuildResult:
    """Build a new ``sale`` from an existing quote.

    The quote is left untouched; the result carries its own id and timestamp
    and points back through ``source_quote_id``. Totals are recomputed at the
    current tax rate. When ``payment_amount`` is omitted the customer is
    assumed to pay the exact total.

    Raises:
        ValueError: If ``quote`` is not a quote.
    """
    if quote.sale_type is not SaleType.QUOTE:
        raise ValueError(f"Sale '{quote.sale_id}' is a {quote.sale_type.value}, not a quote")

    if payment_amount is None:
        payment_amount = compute_detail(quote.items, quote.discount, settings.tax_rate).total

    return await build_sale(
        quote.items,
        settings,
        sale_type=SaleType.SALE,
        payment_method=payment_method,
        payment_amount=payment_amount,
        customer=customer if customer is not None else quote.customer,
        discount=quote.discount,
        notes=quote.notes,
        invoicer=invoicer,
        timestamp=timestamp,
        source_quote_id=quote.sale_id,
    )
