"""Cash session manager: open, active and close lifecycle of the drawer.

A session moves ``Closed -> Open -> Closed``. While open, manual movements and
cash-bearing sales adjust ``current_amount`` and append to the movement log.
Closing computes the expected drawer amount as::

    expected = opening + cash accumulator + cash from mixed + manual net

where ``manual net`` only counts manually entered income and expense
movements. The closure keeps the whole movement log so :func:`replay` can
re-derive the figures independently of the stored accumulators.

All functions return new :class:`CashRegister` values; none mutate input.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from . import log
from .constants import ZERO, MovementKind, PaymentMethod, SaleType
from .errors import RegisterStateError
from .models import (
    CashClosure,
    CashMovement,
    CashRegister,
    Sale,
    TurnSummary,
    empty_accumulators,
    generate_id,
    to_decimal,
)


MANUAL_KINDS = (MovementKind.INCOME, MovementKind.EXPENSE)


@dataclass(frozen=True)
class Replay:
    """Figures re-derived from a movement log alone."""

    opening_amount: Decimal
    sale_income: Decimal
    sale_expense: Decimal
    manual_income: Decimal
    manual_expense: Decimal

    @property
    def manual_net(self) -> Decimal:
        return self.manual_income - self.manual_expense

    @property
    def current_amount(self) -> Decimal:
        """Drawer balance implied by every logged cash flow."""

        return (
            self.opening_amount
            + self.sale_income
            - self.sale_expense
            + self.manual_income
            - self.manual_expense
        )


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _movement(
    register: CashRegister,
    pending: List[CashMovement],
    *,
    kind: MovementKind,
    concept: str,
    amount: Decimal,
    timestamp: datetime,
    sale_id: Optional[str] = None,
) -> CashMovement:
    sequence = len(register.movements) + len(pending) + 1
    movement = CashMovement(
        movement_id=generate_id("M", timestamp, suffix=sequence),
        kind=kind,
        concept=concept,
        amount=amount,
        timestamp=timestamp,
        sale_id=sale_id,
    )
    pending.append(movement)
    return movement


def accumulator_method(sale: Sale) -> PaymentMethod:
    """Accumulator a sale is reported under.

    Credit sales are booked on the customer's account whatever tender was
    selected, so they land in the ``account`` bucket alongside account sales.
    """
    if sale.sale_type is SaleType.CREDIT or sale.payment.method is PaymentMethod.ACCOUNT:
        return PaymentMethod.ACCOUNT
    return sale.payment.method


def upfront_amount(sale: Sale) -> Decimal:
    """Cash received now for an account or credit sale, capped at the total."""

    return min(sale.payment.amount_paid, sale.total)


def open_register(
    register: CashRegister,
    opening_amount: Decimal,
    *,
    timestamp: Optional[datetime] = None,
) -> CashRegister:
    """Start a session with ``opening_amount`` in the drawer.

    Raises:
        RegisterStateError: If a session is already open.
        ValueError: If ``opening_amount`` is zero or negative.
    """
    if register.is_open:
        log.warning("Refused to open the register: a session is already open")
        raise RegisterStateError("The cash register is already open")
    opening_amount = to_decimal(opening_amount)
    if opening_amount <= ZERO:
        log.error("Opening amount validation failed: %s", opening_amount)
        raise ValueError("Opening amount must be greater than zero")

    timestamp = _resolve_timestamp(timestamp)
    fresh = CashRegister(
        is_open=True,
        opened_at=timestamp,
        opening_amount=opening_amount,
        current_amount=opening_amount,
    )
    pending: List[CashMovement] = []
    _movement(
        fresh,
        pending,
        kind=MovementKind.OPENING,
        concept="Register opened",
        amount=opening_amount,
        timestamp=timestamp,
    )
    log.info("Opened cash register with %s", opening_amount)
    return replace(fresh, movements=tuple(pending))


def add_movement(
    register: CashRegister,
    kind: MovementKind,
    amount: Decimal,
    concept: str,
    *,
    timestamp: Optional[datetime] = None,
) -> CashRegister:
    """Record a manual income or expense.

    A closed register ignores the request and is returned unchanged.

    Raises:
        ValueError: If ``kind`` is not income/expense, ``amount`` is not
            positive or ``concept`` is blank.
    """
    kind = MovementKind(kind)
    if kind not in MANUAL_KINDS:
        raise ValueError(f"Manual movements must be income or expense, not {kind.value}")
    amount = to_decimal(amount)
    if amount <= ZERO:
        log.error("Cash movement amount validation failed: %s", amount)
        raise ValueError("Movement amount must be greater than zero")
    if not concept or not concept.strip():
        raise ValueError("Movement concept is required")

    if not register.is_open:
        log.warning("Ignored %s movement of %s: the register is closed", kind.value, amount)
        return register

    timestamp = _resolve_timestamp(timestamp)
    pending: List[CashMovement] = []
    movement = _movement(register, pending, kind=kind, concept=concept.strip(), amount=amount, timestamp=timestamp)
    log.info("Recorded manual %s '%s' of %s", kind.value, movement.concept, amount)
    return replace(
        register,
        current_amount=register.current_amount + movement.signed_amount,
        movements=register.movements + tuple(pending),
    )


def apply_sale(
    register: CashRegister,
    sale: Sale,
    *,
    timestamp: Optional[datetime] = None,
) -> CashRegister:
    """Apply the drawer effect of a committed sale.

    Branches on the tender:

    * ``cash``: the total enters the drawer and the cash accumulator; change
      handed back leaves it again as an expense movement.
    * ``mixed``: only ``min(paid, total)`` enters the drawer and
      ``cash_from_mixed``; the full total is reported under ``mixed``.
    * ``account`` tender or ``credit`` sale: the upfront amount, when any,
      enters the drawer; the full total is reported under ``account``.
    * anything else: the matching accumulator grows by the total.

    Sales that move no cash are still logged as an ``info`` entry.

    A closed register and quotes are returned unchanged.
    """
    if not register.is_open or not sale.moves_goods:
        return register

    timestamp = _resolve_timestamp(timestamp if timestamp is not None else sale.timestamp)
    total = sale.total
    method = accumulator_method(sale)
    accumulators = dict(register.sales_by_method)
    accumulators[method] = accumulators.get(method, ZERO) + total
    current = register.current_amount
    cash_from_mixed = register.cash_from_mixed
    pending: List[CashMovement] = []
    label = f"{sale.sale_type.value} {sale.document_number}"

    if method is PaymentMethod.ACCOUNT:
        upfront = upfront_amount(sale)
        if upfront > ZERO:
            current += upfront
            _movement(register, pending, kind=MovementKind.INCOME, concept=f"Upfront payment {label}",
                      amount=upfront, timestamp=timestamp, sale_id=sale.sale_id)
    elif method is PaymentMethod.CASH:
        current += total
        _movement(register, pending, kind=MovementKind.INCOME, concept=f"Cash {label}",
                  amount=total, timestamp=timestamp, sale_id=sale.sale_id)
        change = sale.payment.change
        if change > ZERO:
            current -= change
            _movement(register, pending, kind=MovementKind.EXPENSE, concept=f"Change {label}",
                      amount=change, timestamp=timestamp, sale_id=sale.sale_id)
    elif method is PaymentMethod.MIXED:
        portion = min(sale.payment.amount_paid, total)
        if portion > ZERO:
            current += portion
            cash_from_mixed += portion
            _movement(register, pending, kind=MovementKind.INCOME, concept=f"Mixed cash portion {label}",
                      amount=portion, timestamp=timestamp, sale_id=sale.sale_id)

    if not pending:
        # Keeps non-cash tenders on the audit trail without a drawer effect.
        _movement(register, pending, kind=MovementKind.INFO, concept=f"{method.value.capitalize()} {label}",
                  amount=total, timestamp=timestamp, sale_id=sale.sale_id)

    log.debug(
        "Applied %s sale '%s' to the drawer: current %s -> %s",
        method.value,
        sale.sale_id,
        register.current_amount,
        current,
    )
    return replace(
        register,
        current_amount=current,
        sales_by_method=accumulators,
        cash_from_mixed=cash_from_mixed,
        movements=register.movements + tuple(pending),
    )


def manual_net(movements: Iterable[CashMovement]) -> Decimal:
    """Sum of manual income minus manual expense."""

    return sum((movement.signed_amount for movement in movements if movement.is_manual), ZERO)


def expected_amount(register: CashRegister) -> Decimal:
    return (
        register.opening_amount
        + register.accumulated(PaymentMethod.CASH)
        + register.cash_from_mixed
        + manual_net(register.movements)
    )


def difference(register: CashRegister) -> Decimal:
    return register.current_amount - expected_amount(register)


def replay(movements: Iterable[CashMovement]) -> Replay:
    """Re-derive session figures from the movement log alone."""

    opening = ZERO
    sale_income = ZERO
    sale_expense = ZERO
    manual_income = ZERO
    manual_expense = ZERO
    for movement in movements:
        if movement.kind is MovementKind.OPENING:
            opening += movement.amount
        elif movement.kind is MovementKind.INCOME:
            if movement.sale_id is None:
                manual_income += movement.amount
            else:
                sale_income += movement.amount
        elif movement.kind is MovementKind.EXPENSE:
            if movement.sale_id is None:
                manual_expense += movement.amount
            else:
                sale_expense += movement.amount
    return Replay(
        opening_amount=opening,
        sale_income=sale_income,
        sale_expense=sale_expense,
        manual_income=manual_income,
        manual_expense=manual_expense,
    )


def recompute_expected(closure: CashClosure) -> Decimal:
    """Expected amount of an archived closure rebuilt from its movement log."""

    replayed = replay(closure.movements)
    return (
        replayed.opening_amount
        + closure.sales_by_method.get(PaymentMethod.CASH, ZERO)
        + closure.cash_from_mixed
        + replayed.manual_net
    )


def turn_summary(sales: Iterable[Sale], opened_at: datetime, closed_at: datetime) -> TurnSummary:
    """Aggregate the non-quote sales committed between ``opened_at`` and ``closed_at``."""

    count = 0
    subtotal = ZERO
    item_discounts = ZERO
    discounts = ZERO
    tax_amount = ZERO
    total = ZERO
    profit = ZERO
    by_method: Dict[PaymentMethod, Decimal] = empty_accumulators()
    for sale in sales:
        if not sale.moves_goods:
            continue
        if sale.timestamp < opened_at or sale.timestamp > closed_at:
            continue
        count += 1
        subtotal += sale.subtotal
        item_discounts += sale.item_discounts
        discounts += sale.discount
        tax_amount += sale.tax_amount
        total += sale.total
        profit += sale.profit
        method = accumulator_method(sale)
        by_method[method] += sale.total
    return TurnSummary(
        sale_count=count,
        subtotal=subtotal,
        item_discounts=item_discounts,
        discounts=discounts,
        tax_amount=tax_amount,
        total=total,
        profit=profit,
        by_method=by_method,
    )


def close_register(
    register: CashRegister,
    sales: Iterable[Sale],
    *,
    timestamp: Optional[datetime] = None,
) -> Tuple[CashClosure, CashRegister]:
    """Archive the open session and hand back a fresh closed register.

    Raises:
        RegisterStateError: If the register is not open.
    """
    if not register.is_open or register.opened_at is None:
        log.warning("Refused to close the register: no session is open")
        raise RegisterStateError("The cash register is not open")

    timestamp = _resolve_timestamp(timestamp)
    pending: List[CashMovement] = []
    _movement(
        register,
        pending,
        kind=MovementKind.CLOSING,
        concept="Register closed",
        amount=register.current_amount,
        timestamp=timestamp,
    )
    movements = register.movements + tuple(pending)
    expected = expected_amount(register)
    closure = CashClosure(
        opened_at=register.opened_at,
        closed_at=timestamp,
        opening_amount=register.opening_amount,
        sales_by_method=dict(register.sales_by_method),
        cash_from_mixed=register.cash_from_mixed,
        current_amount=register.current_amount,
        manual_net=manual_net(movements),
        expected_amount=expected,
        difference=register.current_amount - expected,
        movements=movements,
        turn=turn_summary(sales, register.opened_at, timestamp),
    )
    log.info(
        "Closed cash register: current=%s expected=%s difference=%s",
        closure.current_amount,
        closure.expected_amount,
        closure.difference,
    )
    return closure, CashRegister()
