"""Enumerations shared across the cashdesk modules.

Centralises the identifiers used by the ledger, the cash session manager, the
state store and the CLI so every layer agrees on a single spelling.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Schema version written into, and expected from, the state workbook.
EXPECTED_SCHEMA_VERSION = "1.0.0"

ZERO = Decimal("0")
CENT = Decimal("0.01")

# Products measured in this unit only accept whole quantities.
WHOLE_UNIT = "unit"

TEMP_DOCUMENT_PREFIX = "TEMP"


class PaymentMethod(str, Enum):
    """Enumerate the tenders a sale can be settled with."""

    CASH = "cash"
    TRANSFER = "transfer"
    MIXED = "mixed"
    CREDIT = "credit"
    CARD = "card"
    ACCOUNT = "account"


class SaleType(str, Enum):
    """Enumerate the document types a checkout can produce."""

    SALE = "sale"
    QUOTE = "quote"
    REMIT = "remit"
    CREDIT = "credit"


class MovementKind(str, Enum):
    """Enumerate the entries of a cash session's movement log."""

    OPENING = "opening"
    INCOME = "income"
    EXPENSE = "expense"
    CLOSING = "closing"
    INFO = "info"


class RejectionReason(str, Enum):
    """Enumerate the checkout validations that stop a sale from committing."""

    EMPTY_CART = "EmptyCart"
    INSUFFICIENT_PAYMENT = "InsufficientPayment"
    CUSTOMER_REQUIRED = "CustomerRequired"
    NEGATIVE_TOTAL = "NegativeTotal"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the state store."""

    META = "Meta"
    LEDGER_STATE = "LedgerState"


# Document number prefixes used by the placeholder invoicer.
DOCUMENT_PREFIXES = {
    SaleType.SALE: "F",
    SaleType.REMIT: "R",
    SaleType.QUOTE: "P",
    SaleType.CREDIT: "NC",
}

# Sale types whose fiscal document is requested from the invoicing service.
INVOICED_SALE_TYPES = frozenset({SaleType.SALE, SaleType.CREDIT})


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ZERO",
    "CENT",
    "WHOLE_UNIT",
    "TEMP_DOCUMENT_PREFIX",
    "PaymentMethod",
    "SaleType",
    "MovementKind",
    "RejectionReason",
    "SheetName",
    "DOCUMENT_PREFIXES",
    "INVOICED_SALE_TYPES",
]
