"""Immutable value types shared by the pricing, sale and ledger layers.

Every record is a frozen dataclass. Constructors normalise numeric inputs to
:class:`~decimal.Decimal` and reject values that would break the ledger's
accounting (negative prices, negative quantities, sales whose total does not
match their own breakdown), so invalid records never reach the state engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from . import log
from .pricing import round2
from .constants import (
    TEMP_DOCUMENT_PREFIX,
    WHOLE_UNIT,
    ZERO,
    MovementKind,
    PaymentMethod,
    SaleType,
)


def to_decimal(value: object) -> Decimal:
    """Coerce ints, floats and strings into ``Decimal`` via their text form."""

    if isinstance(value, Decimal):
        return value
    if value is None:
        return ZERO
    return Decimal(str(value))


def require_nonnegative(name: str, amount: Decimal) -> None:
    """Raise ``ValueError`` when ``amount`` is below zero."""

    if amount < ZERO:
        log.error("Validation failed: %s must be zero or positive (got %s)", name, amount)
        raise ValueError(f"{name} must be zero or positive")


def require_text(name: str, value: Optional[str]) -> None:
    """Raise ``ValueError`` when a required text field is blank."""

    if value is None or not str(value).strip():
        log.error("Validation failed: %s is required", name)
        raise ValueError(f"{name} is required")


def generate_id(prefix: str, when: datetime, *, suffix: Optional[object] = None) -> str:
    """Build a sortable identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    An optional ``suffix`` disambiguates records created inside the same
    transition, such as the movements appended for one cash sale.
    """

    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    return base if suffix is None else f"{base}-{suffix}"


def empty_accumulators() -> Dict[PaymentMethod, Decimal]:
    """Return a zeroed per-payment-method accumulator mapping."""

    return {method: ZERO for method in PaymentMethod}


def _set(instance: object, name: str, value: object) -> None:
    object.__setattr__(instance, name, value)


@dataclass(frozen=True)
class Settings:
    """Store, tax and invoicing settings consumed by the engine."""

    tax_rate: Decimal = Decimal("0.21")
    currency: str = "ARS"
    company_name: str = "Ferreteria El Tornillo"
    company_address: str = ""
    company_phone: str = ""
    invoicing_enabled: bool = False
    invoicing_timeout: float = 5.0

    def __post_init__(self) -> None:
        _set(self, "tax_rate", to_decimal(self.tax_rate))
        if not ZERO <= self.tax_rate <= Decimal("1"):
            raise ValueError("tax_rate must lie between 0 and 1")
        if self.invoicing_timeout <= 0:
            raise ValueError("invoicing_timeout must be positive")


@dataclass(frozen=True)
class Provider:
    provider_id: str
    name: str
    contact_person: str = ""
    phone: str = ""
    email: str = ""

    def __post_init__(self) -> None:
        require_text("provider_id", self.provider_id)
        require_text("provider name", self.name)


@dataclass(frozen=True)
class Product:
    """Catalog entry; ``stock`` is the authoritative on-hand quantity."""

    product_id: str
    name: str
    price: Decimal
    cost: Decimal = ZERO
    stock: Decimal = ZERO
    code: str = ""
    unit: str = WHOLE_UNIT
    category: str = ""
    provider_id: Optional[str] = None
    min_stock: Decimal = ZERO

    def __post_init__(self) -> None:
        require_text("product_id", self.product_id)
        require_text("product name", self.name)
        for name in ("price", "cost", "stock", "min_stock"):
            value = to_decimal(getattr(self, name))
            require_nonnegative(name, value)
            _set(self, name, value)

    @property
    def whole_units_only(self) -> bool:
        return self.unit == WHOLE_UNIT


@dataclass(frozen=True)
class Customer:
    """Account holder; a negative ``balance`` is debt owed to the store."""

    customer_id: str
    name: str
    phone: str = ""
    email: str = ""
    address: str = ""
    tax_id: str = ""
    balance: Decimal = ZERO
    credit_limit: Decimal = ZERO

    def __post_init__(self) -> None:
        require_text("customer_id", self.customer_id)
        require_text("customer name", self.name)
        _set(self, "balance", to_decimal(self.balance))
        _set(self, "credit_limit", to_decimal(self.credit_limit))
        require_nonnegative("credit_limit", self.credit_limit)

    @property
    def has_debt(self) -> bool:
        return self.balance < ZERO


@dataclass(frozen=True)
class LineItem:
    """One cart line; copied by value into the sale that commits it."""

    line_id: int
    product_id: str
    product_name: str
    quantity: Decimal
    unit_price: Decimal
    unit_cost: Decimal = ZERO
    item_discount: Decimal = ZERO
    note: str = ""
    unit: str = WHOLE_UNIT

    def __post_init__(self) -> None:
        require_text("product_id", self.product_id)
        for name in ("quantity", "unit_price", "unit_cost", "item_discount"):
            value = to_decimal(getattr(self, name))
            require_nonnegative(name, value)
            _set(self, name, value)

    @property
    def gross(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Payment:
    method: PaymentMethod
    amount_paid: Decimal = ZERO
    change: Decimal = ZERO

    def __post_init__(self) -> None:
        _set(self, "method", PaymentMethod(self.method))
        _set(self, "amount_paid", to_decimal(self.amount_paid))
        _set(self, "change", to_decimal(self.change))
        require_nonnegative("amount_paid", self.amount_paid)
        require_nonnegative("change", self.change)


@dataclass(frozen=True)
class FiscalDocument:
    """Document number plus the fiscal fields returned by the invoicer."""

    number: str
    cae: Optional[str] = None
    cae_expiry: Optional[str] = None
    pdf_url: Optional[str] = None
    document_id: Optional[str] = None
    training: bool = False

    def __post_init__(self) -> None:
        require_text("document number", self.number)

    @classmethod
    def temporary(cls, sale_id: str) -> "FiscalDocument":
        """Placeholder receipt used when no fiscal document was issued."""

        return cls(number=f"{TEMP_DOCUMENT_PREFIX}-{sale_id}", training=True)


@dataclass(frozen=True)
class Sale:
    """Committed checkout record. Never mutated after creation.

    The monetary breakdown is taken verbatim from the pricing detail computed
    at checkout; ``total`` must equal the cent-rounded
    ``subtotal - item_discounts - discount + tax_amount``.
    """

    sale_id: str
    timestamp: datetime
    sale_type: SaleType
    items: Tuple[LineItem, ...]
    subtotal: Decimal
    item_discounts: Decimal
    discount: Decimal
    tax_amount: Decimal
    total: Decimal
    profit: Decimal
    payment: Payment
    document: FiscalDocument
    customer: Optional[Customer] = None
    notes: str = ""
    source_quote_id: Optional[str] = None

    def __post_init__(self) -> None:
        require_text("sale_id", self.sale_id)
        _set(self, "sale_type", SaleType(self.sale_type))
        _set(self, "items", tuple(self.items))
        if not self.items:
            raise ValueError("a sale needs at least one line item")
        for name in ("subtotal", "item_discounts", "discount", "tax_amount", "total", "profit"):
            _set(self, name, to_decimal(getattr(self, name)))
        for name in ("subtotal", "item_discounts", "discount", "tax_amount", "total"):
            require_nonnegative(name, getattr(self, name))
        expected = round2(self.subtotal - self.item_discounts - self.discount + self.tax_amount)
        if expected != self.total:
            raise ValueError(f"sale total {self.total} does not match its breakdown ({expected})")

    @property
    def document_number(self) -> str:
        return self.document.number

    @property
    def training(self) -> bool:
        return self.document.training

    @property
    def customer_id(self) -> Optional[str]:
        return self.customer.customer_id if self.customer else None

    @property
    def moves_goods(self) -> bool:
        """Quotes are informational; every other type moves stock and money."""

        return self.sale_type is not SaleType.QUOTE


@dataclass(frozen=True)
class DocumentRecord:
    sale_id: str
    sale_type: SaleType
    number: str
    issued_at: datetime
    cae: Optional[str] = None
    cae_expiry: Optional[str] = None
    pdf_url: Optional[str] = None
    document_id: Optional[str] = None
    training: bool = False

    @classmethod
    def for_sale(cls, sale: Sale) -> "DocumentRecord":
        document = sale.document
        return cls(
            sale_id=sale.sale_id,
            sale_type=sale.sale_type,
            number=document.number,
            issued_at=sale.timestamp,
            cae=document.cae,
            cae_expiry=document.cae_expiry,
            pdf_url=document.pdf_url,
            document_id=document.document_id,
            training=document.training,
        )


@dataclass(frozen=True)
class CashMovement:
    """One entry of a session's audit trail.

    ``amount`` is a magnitude; ``kind`` carries the direction. ``sale_id`` is
    set for movements generated by a sale commit and ``None`` for manual ones.
    """

    movement_id: str
    kind: MovementKind
    concept: str
    amount: Decimal
    timestamp: datetime
    sale_id: Optional[str] = None

    def __post_init__(self) -> None:
        _set(self, "kind", MovementKind(self.kind))
        _set(self, "amount", to_decimal(self.amount))
        if self.kind in (MovementKind.INCOME, MovementKind.EXPENSE, MovementKind.OPENING):
            require_nonnegative("movement amount", self.amount)

    @property
    def is_manual(self) -> bool:
        return self.sale_id is None and self.kind in (MovementKind.INCOME, MovementKind.EXPENSE)

    @property
    def signed_amount(self) -> Decimal:
        """Drawer effect of the entry; markers contribute nothing."""

        if self.kind is MovementKind.INCOME:
            return self.amount
        if self.kind is MovementKind.EXPENSE:
            return -self.amount
        return ZERO


@dataclass(frozen=True)
class CashRegister:
    """The single live cash drawer session."""

    is_open: bool = False
    opened_at: Optional[datetime] = None
    opening_amount: Decimal = ZERO
    current_amount: Decimal = ZERO
    sales_by_method: Mapping[PaymentMethod, Decimal] = field(default_factory=empty_accumulators)
    cash_from_mixed: Decimal = ZERO
    movements: Tuple[CashMovement, ...] = ()

    def __post_init__(self) -> None:
        _set(self, "opening_amount", to_decimal(self.opening_amount))
        _set(self, "current_amount", to_decimal(self.current_amount))
        _set(self, "cash_from_mixed", to_decimal(self.cash_from_mixed))
        require_nonnegative("opening_amount", self.opening_amount)
        require_nonnegative("cash_from_mixed", self.cash_from_mixed)
        accumulators = empty_accumulators()
        for method, amount in dict(self.sales_by_method).items():
            accumulators[PaymentMethod(method)] = to_decimal(amount)
        _set(self, "sales_by_method", accumulators)
        _set(self, "movements", tuple(self.movements))
        if self.is_open and self.opened_at is None:
            raise ValueError("an open register needs an opened_at timestamp")

    def accumulated(self, method: PaymentMethod) -> Decimal:
        return self.sales_by_method.get(PaymentMethod(method), ZERO)


@dataclass(frozen=True)
class TurnSummary:
    """Aggregates over the non-quote sales of one cash session."""

    sale_count: int = 0
    subtotal: Decimal = ZERO
    item_discounts: Decimal = ZERO
    discounts: Decimal = ZERO
    tax_amount: Decimal = ZERO
    total: Decimal = ZERO
    profit: Decimal = ZERO
    by_method: Mapping[PaymentMethod, Decimal] = field(default_factory=empty_accumulators)


@dataclass(frozen=True)
class CashClosure:
    """Archived snapshot of one completed open/close session."""

    opened_at: datetime
    closed_at: datetime
    opening_amount: Decimal
    sales_by_method: Mapping[PaymentMethod, Decimal]
    cash_from_mixed: Decimal
    current_amount: Decimal
    manual_net: Decimal
    expected_amount: Decimal
    difference: Decimal
    movements: Tuple[CashMovement, ...]
    turn: TurnSummary

    def __post_init__(self) -> None:
        _set(self, "movements", tuple(self.movements))


@dataclass(frozen=True)
class LedgerState:
    """Everything the transition function owns.

    ``provider_restock`` maps provider id to product id to the quantity sold
    since the provider's accumulator was last reset.
    """

    settings: Settings = field(default_factory=Settings)
    cart: Tuple[LineItem, ...] = ()
    products: Tuple[Product, ...] = ()
    customers: Tuple[Customer, ...] = ()
    providers: Tuple[Provider, ...] = ()
    provider_restock: Mapping[str, Mapping[str, Decimal]] = field(default_factory=dict)
    sales: Tuple[Sale, ...] = ()
    documents: Tuple[DocumentRecord, ...] = ()
    cash_register: CashRegister = field(default_factory=CashRegister)
    cash_closures: Tuple[CashClosure, ...] = ()
    current_customer_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_amount: Decimal = ZERO
    discount: Decimal = ZERO
    notes: str = ""

    def __post_init__(self) -> None:
        for name in ("cart", "products", "customers", "providers", "sales", "documents", "cash_closures"):
            _set(self, name, tuple(getattr(self, name)))
        _set(self, "payment_method", PaymentMethod(self.payment_method))
        _set(self, "payment_amount", to_decimal(self.payment_amount))
        _set(self, "discount", to_decimal(self.discount))
        require_nonnegative("payment_amount", self.payment_amount)
        require_nonnegative("discount", self.discount)
