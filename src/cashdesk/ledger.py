"""Ledger state engine.

Every change to the point-of-sale state is expressed as one of the frozen
action dataclasses below and applied by :func:`apply`, which returns a new
:class:`~cashdesk.models.LedgerState` and never mutates its input. A
transition either produces a complete new state or raises; there is no state
in which stock moved but the sale is missing, or the reverse.

Reads (totals, lookups) are plain functions over a state value and never
change it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple, Union, get_args

from . import cash_session, log
from .constants import ZERO, MovementKind, PaymentMethod, SaleType
from .errors import (
    BusinessRuleViolation,
    CartError,
    CustomerHasDebtError,
    MissingReferenceError,
    QuoteAlreadyConvertedError,
)
from .models import (
    Customer,
    DocumentRecord,
    LedgerState,
    LineItem,
    Product,
    Provider,
    Sale,
    Settings,
    to_decimal,
)
from .pricing import PriceDetail, compute_detail, compute_profit


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpdateSettings:
    settings: Settings


@dataclass(frozen=True)
class AddToCart:
    """Add ``quantity`` of a catalog product, optionally at a custom price."""

    product_id: str
    quantity: Decimal = Decimal("1")
    price: Optional[Decimal] = None
    note: str = ""


@dataclass(frozen=True)
class UpdateCartItem:
    """Edit one cart line; ``None`` fields are left as they are."""

    line_id: int
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    item_discount: Optional[Decimal] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class RemoveFromCart:
    line_id: int


@dataclass(frozen=True)
class ClearCart:
    pass


@dataclass(frozen=True)
class SetCustomer:
    customer_id: Optional[str]


@dataclass(frozen=True)
class SetPaymentMethod:
    method: PaymentMethod


@dataclass(frozen=True)
class SetPaymentAmount:
    amount: Decimal


@dataclass(frozen=True)
class SetDiscount:
    amount: Decimal


@dataclass(frozen=True)
class SetNotes:
    notes: str


@dataclass(frozen=True)
class AddProduct:
    product: Product


@dataclass(frozen=True)
class UpdateProduct:
    """Replace the catalog entry sharing ``product.product_id``."""

    product: Product


@dataclass(frozen=True)
class DeleteProduct:
    product_id: str


@dataclass(frozen=True)
class AddCustomer:
    customer: Customer


@dataclass(frozen=True)
class UpdateCustomer:
    """Replace identity fields and credit limit; the balance is preserved."""

    customer: Customer


@dataclass(frozen=True)
class DeleteCustomer:
    customer_id: str


@dataclass(frozen=True)
class RegisterCustomerPayment:
    """Customer pays towards their account.

    With ``into_drawer`` set and a session open, the payment is also logged as
    a manual cash income so the closure reconciles it.
    """

    customer_id: str
    amount: Decimal
    into_drawer: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AddProvider:
    provider: Provider


@dataclass(frozen=True)
class UpdateProvider:
    """Replace the provider entry sharing ``provider.provider_id``."""

    provider: Provider


@dataclass(frozen=True)
class DeleteProvider:
    provider_id: str


@dataclass(frozen=True)
class ResetProviderRestock:
    """Mark a provider's restock suggestion as attended."""

    provider_id: str


@dataclass(frozen=True)
class OpenCashRegister:
    opening_amount: Decimal
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AddCashMovement:
    kind: MovementKind
    amount: Decimal
    concept: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CloseCashRegister:
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaveSale:
    """Commit a sale built by :mod:`cashdesk.sale_builder`."""

    sale: Sale


Action = Union[
    UpdateSettings,
    AddToCart,
    UpdateCartItem,
    RemoveFromCart,
    ClearCart,
    SetCustomer,
    SetPaymentMethod,
    SetPaymentAmount,
    SetDiscount,
    SetNotes,
    AddProduct,
    UpdateProduct,
    DeleteProduct,
    AddCustomer,
    UpdateCustomer,
    DeleteCustomer,
    RegisterCustomerPayment,
    AddProvider,
    UpdateProvider,
    DeleteProvider,
    ResetProviderRestock,
    OpenCashRegister,
    AddCashMovement,
    CloseCashRegister,
    SaveSale,
]


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


def current_detail(state: LedgerState) -> PriceDetail:
    return compute_detail(state.cart, state.discount, state.settings.tax_rate)


def current_profit(state: LedgerState) -> Decimal:
    return compute_profit(state.cart)


def find_product(state: LedgerState, product_id: str) -> Product:
    for product in state.products:
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def find_customer(state: LedgerState, customer_id: str) -> Customer:
    for customer in state.customers:
        if customer.customer_id == customer_id:
            return customer
    log.warning("Customer lookup failed for id '%s'", customer_id)
    raise MissingReferenceError(f"Unknown customer id: {customer_id}")


def find_provider(state: LedgerState, provider_id: str) -> Provider:
    for provider in state.providers:
        if provider.provider_id == provider_id:
            return provider
    log.warning("Provider lookup failed for id '%s'", provider_id)
    raise MissingReferenceError(f"Unknown provider id: {provider_id}")


def find_sale(state: LedgerState, sale_id: str) -> Sale:
    for sale in state.sales:
        if sale.sale_id == sale_id:
            return sale
    log.warning("Sale lookup failed for id '%s'", sale_id)
    raise MissingReferenceError(f"Unknown sale id: {sale_id}")


def conversion_of(state: LedgerState, quote_id: str) -> Optional[Sale]:
    """Return the sale a quote was converted into, if any."""

    for sale in state.sales:
        if sale.source_quote_id == quote_id:
            return sale
    return None


def current_customer(state: LedgerState) -> Optional[Customer]:
    if state.current_customer_id is None:
        return None
    return find_customer(state, state.current_customer_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _replace_by_id(records: Tuple, key: str, identifier: str, replacement) -> Tuple:
    return tuple(replacement if getattr(record, key) == identifier else record for record in records)


def _require_unique(records: Iterable, key: str, identifier: str, label: str) -> None:
    if any(getattr(record, key) == identifier for record in records):
        log.warning("Duplicate %s id '%s'", label, identifier)
        raise BusinessRuleViolation(f"{label.capitalize()} '{identifier}' already exists")


def _find_line(state: LedgerState, line_id: int) -> LineItem:
    for line in state.cart:
        if line.line_id == line_id:
            return line
    raise MissingReferenceError(f"Unknown cart line: {line_id}")


def _check_quantity(product: Product, quantity: Decimal, *, already_in_cart: Decimal = ZERO) -> None:
    if quantity <= ZERO:
        log.error("Cart quantity validation failed: %s", quantity)
        raise CartError("Quantity must be greater than zero")
    if product.whole_units_only:
        if quantity != quantity.to_integral_value():
            raise CartError(f"'{product.name}' is sold in whole units only")
        if already_in_cart + quantity > product.stock:
            log.warning(
                "Insufficient stock for '%s': requested %s, available %s",
                product.product_id,
                already_in_cart + quantity,
                product.stock,
            )
            raise CartError(f"Only {product.stock} {product.unit}(s) of '{product.name}' available")


def _quantities_by_product(items: Iterable[LineItem]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, ZERO) + item.quantity
    return totals


def _decrement_stock(products: Tuple[Product, ...], items: Iterable[LineItem]) -> Tuple[Product, ...]:
    sold = _quantities_by_product(items)
    updated = []
    for product in products:
        quantity = sold.get(product.product_id)
        if quantity is None:
            updated.append(product)
            continue
        remaining = max(ZERO, product.stock - quantity)
        if product.stock < quantity:
            log.warning(
                "Stock for '%s' floored at zero (had %s, sold %s)",
                product.product_id,
                product.stock,
                quantity,
            )
        updated.append(replace(product, stock=remaining))
    return tuple(updated)


def _charge_account(customers: Tuple[Customer, ...], sale: Sale) -> Tuple[Customer, ...]:
    on_account = sale.sale_type is SaleType.CREDIT or sale.payment.method is PaymentMethod.ACCOUNT
    if not on_account or sale.customer_id is None:
        return customers

    target = next((c for c in customers if c.customer_id == sale.customer_id), None)
    if target is None:
        raise MissingReferenceError(f"Unknown customer id: {sale.customer_id}")

    owed = max(ZERO, sale.total - cash_session.upfront_amount(sale))
    balance = target.balance - owed
    if target.credit_limit > ZERO and -balance > target.credit_limit:
        log.warning(
            "Customer '%s' debt %s exceeds credit limit %s",
            target.customer_id,
            -balance,
            target.credit_limit,
        )
    log.info("Charged %s to customer '%s' account (balance %s)", owed, target.customer_id, balance)
    return _replace_by_id(customers, "customer_id", target.customer_id, replace(target, balance=balance))


def _accumulate_restock(
    restock: Mapping[str, Mapping[str, Decimal]],
    products: Iterable[Product],
    items: Iterable[LineItem],
) -> Dict[str, Dict[str, Decimal]]:
    providers = {product.product_id: product.provider_id for product in products}
    updated = {provider_id: dict(bucket) for provider_id, bucket in restock.items()}
    for item in items:
        provider_id = providers.get(item.product_id)
        if not provider_id:
            continue
        bucket = updated.setdefault(provider_id, {})
        bucket[item.product_id] = bucket.get(item.product_id, ZERO) + item.quantity
    return updated


def _reset_checkout(state: LedgerState) -> LedgerState:
    return replace(
        state,
        cart=(),
        current_customer_id=None,
        payment_method=PaymentMethod.CASH,
        payment_amount=ZERO,
        discount=ZERO,
        notes="",
    )


# ---------------------------------------------------------------------------
# Transition handlers
# ---------------------------------------------------------------------------


def _update_settings(state: LedgerState, action: UpdateSettings) -> LedgerState:
    return replace(state, settings=action.settings)


def _add_to_cart(state: LedgerState, action: AddToCart) -> LedgerState:
    product = find_product(state, action.product_id)
    quantity = to_decimal(action.quantity)
    price = product.price if action.price is None else to_decimal(action.price)
    if price < ZERO:
        raise CartError("Price must be zero or positive")
    in_cart = _quantities_by_product(state.cart).get(product.product_id, ZERO)
    _check_quantity(product, quantity, already_in_cart=in_cart)

    existing = next(
        (line for line in state.cart if line.product_id == product.product_id and line.unit_price == price),
        None,
    )
    if existing is not None:
        merged = replace(existing, quantity=existing.quantity + quantity)
        return replace(state, cart=_replace_by_id(state.cart, "line_id", existing.line_id, merged))

    line = LineItem(
        line_id=max((line.line_id for line in state.cart), default=0) + 1,
        product_id=product.product_id,
        product_name=product.name,
        quantity=quantity,
        unit_price=price,
        unit_cost=product.cost,
        note=action.note,
        unit=product.unit,
    )
    log.debug("Added %s x %s to cart", quantity, product.product_id)
    return replace(state, cart=state.cart + (line,))


def _update_cart_item(state: LedgerState, action: UpdateCartItem) -> LedgerState:
    line = _find_line(state, action.line_id)
    changes: Dict[str, object] = {}
    if action.quantity is not None:
        quantity = to_decimal(action.quantity)
        try:
            product = find_product(state, line.product_id)
        except MissingReferenceError:
            product = None
        if product is not None:
            others = sum(
                (other.quantity for other in state.cart
                 if other.product_id == line.product_id and other.line_id != line.line_id),
                ZERO,
            )
            _check_quantity(product, quantity, already_in_cart=others)
        changes["quantity"] = quantity
    if action.unit_price is not None:
        changes["unit_price"] = to_decimal(action.unit_price)
    if action.item_discount is not None:
        changes["item_discount"] = to_decimal(action.item_discount)
    if action.note is not None:
        changes["note"] = action.note
    try:
        updated = replace(line, **changes)
    except ValueError as exc:
        raise CartError(str(exc)) from exc
    return replace(state, cart=_replace_by_id(state.cart, "line_id", line.line_id, updated))


def _remove_from_cart(state: LedgerState, action: RemoveFromCart) -> LedgerState:
    return replace(state, cart=tuple(line for line in state.cart if line.line_id != action.line_id))


def _clear_cart(state: LedgerState, action: ClearCart) -> LedgerState:
    return _reset_checkout(state)


def _set_customer(state: LedgerState, action: SetCustomer) -> LedgerState:
    if action.customer_id is not None:
        find_customer(state, action.customer_id)
    return replace(state, current_customer_id=action.customer_id)


def _set_payment_method(state: LedgerState, action: SetPaymentMethod) -> LedgerState:
    return replace(state, payment_method=PaymentMethod(action.method))


def _set_payment_amount(state: LedgerState, action: SetPaymentAmount) -> LedgerState:
    return replace(state, payment_amount=to_decimal(action.amount))


def _set_discount(state: LedgerState, action: SetDiscount) -> LedgerState:
    return replace(state, discount=to_decimal(action.amount))


def _set_notes(state: LedgerState, action: SetNotes) -> LedgerState:
    return replace(state, notes=action.notes)


def _add_product(state: LedgerState, action: AddProduct) -> LedgerState:
    _require_unique(state.products, "product_id", action.product.product_id, "product")
    log.info("Added product '%s'", action.product.product_id)
    return replace(state, products=state.products + (action.product,))


def _update_product(state: LedgerState, action: UpdateProduct) -> LedgerState:
    find_product(state, action.product.product_id)
    return replace(
        state,
        products=_replace_by_id(state.products, "product_id", action.product.product_id, action.product),
    )


def _delete_product(state: LedgerState, action: DeleteProduct) -> LedgerState:
    find_product(state, action.product_id)
    log.info("Deleted product '%s'", action.product_id)
    return replace(state, products=tuple(p for p in state.products if p.product_id != action.product_id))


def _add_customer(state: LedgerState, action: AddCustomer) -> LedgerState:
    _require_unique(state.customers, "customer_id", action.customer.customer_id, "customer")
    customer = replace(action.customer, balance=ZERO)
    log.info("Added customer '%s'", customer.customer_id)
    return replace(state, customers=state.customers + (customer,))


def _update_customer(state: LedgerState, action: UpdateCustomer) -> LedgerState:
    existing = find_customer(state, action.customer.customer_id)
    updated = replace(action.customer, balance=existing.balance)
    return replace(
        state,
        customers=_replace_by_id(state.customers, "customer_id", existing.customer_id, updated),
    )


def _delete_customer(state: LedgerState, action: DeleteCustomer) -> LedgerState:
    customer = find_customer(state, action.customer_id)
    if customer.has_debt:
        log.warning(
            "Refused to delete customer '%s' with outstanding debt %s",
            customer.customer_id,
            customer.balance,
        )
        raise CustomerHasDebtError(f"Customer '{customer.name}' still owes {-customer.balance}")
    current = None if state.current_customer_id == customer.customer_id else state.current_customer_id
    log.info("Deleted customer '%s'", customer.customer_id)
    return replace(
        state,
        customers=tuple(c for c in state.customers if c.customer_id != customer.customer_id),
        current_customer_id=current,
    )


def _register_customer_payment(state: LedgerState, action: RegisterCustomerPayment) -> LedgerState:
    customer = find_customer(state, action.customer_id)
    amount = to_decimal(action.amount)
    if amount <= ZERO:
        log.error("Customer payment validation failed: %s", amount)
        raise ValueError("Payment amount must be greater than zero")

    register = state.cash_register
    if action.into_drawer:
        register = cash_session.add_movement(
            register,
            MovementKind.INCOME,
            amount,
            f"Account payment {customer.name}",
            timestamp=action.timestamp,
        )
    updated = replace(customer, balance=customer.balance + amount)
    log.info("Customer '%s' paid %s (balance %s)", customer.customer_id, amount, updated.balance)
    return replace(
        state,
        customers=_replace_by_id(state.customers, "customer_id", customer.customer_id, updated),
        cash_register=register,
    )


def _add_provider(state: LedgerState, action: AddProvider) -> LedgerState:
    _require_unique(state.providers, "provider_id", action.provider.provider_id, "provider")
    return replace(state, providers=state.providers + (action.provider,))


def _update_provider(state: LedgerState, action: UpdateProvider) -> LedgerState:
    find_provider(state, action.provider.provider_id)
    return replace(
        state,
        providers=_replace_by_id(state.providers, "provider_id", action.provider.provider_id, action.provider),
    )


def _delete_provider(state: LedgerState, action: DeleteProvider) -> LedgerState:
    find_provider(state, action.provider_id)
    restock = {key: value for key, value in state.provider_restock.items() if key != action.provider_id}
    return replace(
        state,
        providers=tuple(p for p in state.providers if p.provider_id != action.provider_id),
        provider_restock=restock,
    )


def _reset_provider_restock(state: LedgerState, action: ResetProviderRestock) -> LedgerState:
    restock = {key: value for key, value in state.provider_restock.items() if key != action.provider_id}
    log.info("Reset restock accumulator for provider '%s'", action.provider_id)
    return replace(state, provider_restock=restock)


def _open_cash_register(state: LedgerState, action: OpenCashRegister) -> LedgerState:
    register = cash_session.open_register(state.cash_register, action.opening_amount, timestamp=action.timestamp)
    return replace(state, cash_register=register)


def _add_cash_movement(state: LedgerState, action: AddCashMovement) -> LedgerState:
    register = cash_session.add_movement(
        state.cash_register,
        action.kind,
        action.amount,
        action.concept,
        timestamp=action.timestamp,
    )
    if register is state.cash_register:
        return state
    return replace(state, cash_register=register)


def _close_cash_register(state: LedgerState, action: CloseCashRegister) -> LedgerState:
    closure, register = cash_session.close_register(state.cash_register, state.sales, timestamp=action.timestamp)
    return replace(state, cash_register=register, cash_closures=state.cash_closures + (closure,))


def _save_sale(state: LedgerState, action: SaveSale) -> LedgerState:
    sale = action.sale
    if any(existing.sale_id == sale.sale_id for existing in state.sales):
        raise BusinessRuleViolation(f"Sale '{sale.sale_id}' was already committed")
    if sale.sale_type is SaleType.CREDIT and sale.customer is None:
        raise BusinessRuleViolation("A credit sale needs a customer")
    if sale.source_quote_id is not None:
        previous = conversion_of(state, sale.source_quote_id)
        if previous is not None:
            log.warning("Quote '%s' was already converted into '%s'", sale.source_quote_id, previous.sale_id)
            raise QuoteAlreadyConvertedError(
                f"Quote '{sale.source_quote_id}' was already converted into sale '{previous.sale_id}'"
            )

    products = state.products
    register = state.cash_register
    customers = state.customers
    restock = state.provider_restock
    if sale.moves_goods:
        products = _decrement_stock(products, sale.items)
        register = cash_session.apply_sale(register, sale)
        customers = _charge_account(customers, sale)
        restock = _accumulate_restock(restock, state.products, sale.items)

    committed = replace(
        state,
        products=products,
        cash_register=register,
        customers=customers,
        provider_restock=restock,
        documents=state.documents + (DocumentRecord.for_sale(sale),),
        sales=state.sales + (sale,),
    )
    log.info(
        "Committed %s '%s' total=%s method=%s document=%s",
        sale.sale_type.value,
        sale.sale_id,
        sale.total,
        sale.payment.method.value,
        sale.document_number,
    )
    return _reset_checkout(committed)


_HANDLERS: Dict[type, Callable[[LedgerState, object], LedgerState]] = {
    UpdateSettings: _update_settings,
    AddToCart: _add_to_cart,
    UpdateCartItem: _update_cart_item,
    RemoveFromCart: _remove_from_cart,
    ClearCart: _clear_cart,
    SetCustomer: _set_customer,
    SetPaymentMethod: _set_payment_method,
    SetPaymentAmount: _set_payment_amount,
    SetDiscount: _set_discount,
    SetNotes: _set_notes,
    AddProduct: _add_product,
    UpdateProduct: _update_product,
    DeleteProduct: _delete_product,
    AddCustomer: _add_customer,
    UpdateCustomer: _update_customer,
    DeleteCustomer: _delete_customer,
    RegisterCustomerPayment: _register_customer_payment,
    AddProvider: _add_provider,
    UpdateProvider: _update_provider,
    DeleteProvider: _delete_provider,
    ResetProviderRestock: _reset_provider_restock,
    OpenCashRegister: _open_cash_register,
    AddCashMovement: _add_cash_movement,
    CloseCashRegister: _close_cash_register,
    SaveSale: _save_sale,
}

_missing = set(get_args(Action)) - set(_HANDLERS)
if _missing:  # pragma: no cover - import-time guard
    raise RuntimeError(f"Ledger actions without a handler: {sorted(t.__name__ for t in _missing)}")


def apply(state: LedgerState, action: Action) -> LedgerState:
    """Apply one action and return the resulting state.

    Args:
        state (LedgerState): Current state; left untouched.
        action (Action): One of the action dataclasses of this module.

    Returns:
        LedgerState: The new state. A silently ignored action (a manual
            movement on a closed register) returns ``state`` itself.

    Raises:
        BusinessRuleViolation: When the transition is explicitly rejected.
        ValueError: When the action carries invalid amounts.
        TypeError: When ``action`` is not a ledger action.
    """
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"Unsupported ledger action: {type(action).__name__}")
    return handler(state, action)


def apply_all(state: LedgerState, actions: Iterable[Action]) -> LedgerState:
    """Fold ``actions`` over ``state`` in order."""

    for action in actions:
        state = apply(state, action)
    return state
