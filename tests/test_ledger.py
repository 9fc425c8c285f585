"""Unit tests for the ledger state engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal

import pytest

from cashdesk import ledger, sale_builder
from cashdesk.constants import MovementKind, PaymentMethod, SaleType
from cashdesk.errors import (
    BusinessRuleViolation,
    CartError,
    CustomerHasDebtError,
    MissingReferenceError,
    QuoteAlreadyConvertedError,
    RegisterStateError,
)
from cashdesk.models import Customer, Product, Provider

from conftest import CLOSED_AT, OPENED_AT, SOLD_AT


def _checkout(state, *, sale_type=SaleType.SALE):
    result = asyncio.run(
        sale_builder.build_sale(
            state.cart,
            state.settings,
            sale_type=sale_type,
            payment_method=state.payment_method,
            payment_amount=state.payment_amount,
            customer=ledger.current_customer(state),
            discount=state.discount,
            notes=state.notes,
            timestamp=SOLD_AT,
        )
    )
    assert not isinstance(result, sale_builder.SaleRejection), result
    return ledger.apply(state, ledger.SaveSale(result)), result


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_apply_never_mutates_input(ledger_state):
    """Transitions return a new state and leave the old one intact."""

    after = ledger.apply(ledger_state, ledger.AddToCart("P1", Decimal("2")))

    assert ledger_state.cart == ()
    assert len(after.cart) == 1


def test_apply_rejects_unknown_actions(ledger_state):
    """Only the declared action types are accepted."""

    @dataclass(frozen=True)
    class Bogus:
        pass

    with pytest.raises(TypeError):
        ledger.apply(ledger_state, Bogus())


def test_every_action_has_a_handler():
    """The action union and the handler table stay in sync."""

    from typing import get_args

    assert set(get_args(ledger.Action)) == set(ledger._HANDLERS)


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


def test_add_to_cart_merges_same_product_and_price(ledger_state):
    """Adding the same product at the same price bumps the existing line."""

    state = ledger.apply_all(
        ledger_state,
        [ledger.AddToCart("P1", Decimal("1")), ledger.AddToCart("P1", Decimal("2"))],
    )

    assert len(state.cart) == 1
    assert state.cart[0].quantity == Decimal("3")
    assert state.cart[0].unit_cost == Decimal("30.00")


def test_add_to_cart_with_custom_price_opens_new_line(ledger_state):
    """A price override is kept on its own line."""

    state = ledger.apply_all(
        ledger_state,
        [ledger.AddToCart("P1"), ledger.AddToCart("P1", Decimal("1"), price=Decimal("45.00"))],
    )

    assert [line.unit_price for line in state.cart] == [Decimal("50.00"), Decimal("45.00")]
    assert [line.line_id for line in state.cart] == [1, 2]


def test_add_to_cart_rejects_fractional_units(ledger_state):
    """Products sold per unit only take whole quantities."""

    with pytest.raises(CartError):
        ledger.apply(ledger_state, ledger.AddToCart("P1", Decimal("1.5")))


def test_add_to_cart_allows_fractional_measures(ledger_state):
    """Products sold by measure accept fractions."""

    state = ledger.apply(ledger_state, ledger.AddToCart("P2", Decimal("2.5")))

    assert state.cart[0].quantity == Decimal("2.5")


def test_add_to_cart_respects_stock_across_lines(ledger_state):
    """The quantity already in the cart counts against stock."""

    state = ledger.apply(ledger_state, ledger.AddToCart("P1", Decimal("8")))

    with pytest.raises(CartError):
        ledger.apply(state, ledger.AddToCart("P1", Decimal("3"), price=Decimal("40")))


@pytest.mark.parametrize("quantity", ["0", "-1"])
def test_add_to_cart_requires_positive_quantity(ledger_state, quantity):
    """Zero and negative quantities are refused."""

    with pytest.raises(CartError):
        ledger.apply(ledger_state, ledger.AddToCart("P2", Decimal(quantity)))


def test_add_unknown_product_is_rejected(ledger_state):
    """Unknown product ids surface as missing references."""

    with pytest.raises(MissingReferenceError):
        ledger.apply(ledger_state, ledger.AddToCart("nope"))


def test_update_and_remove_cart_items(ledger_state):
    """Cart lines can be edited in place and removed."""

    state = ledger.apply_all(
        ledger_state,
        [
            ledger.AddToCart("P1"),
            ledger.AddToCart("P2", Decimal("3")),
            ledger.UpdateCartItem(1, quantity=Decimal("2"), item_discount=Decimal("5"), note="gift"),
            ledger.RemoveFromCart(2),
        ],
    )

    assert len(state.cart) == 1
    line = state.cart[0]
    assert (line.quantity, line.item_discount, line.note) == (Decimal("2"), Decimal("5"), "gift")
    assert ledger.current_detail(state).total == Decimal("95.00")
    assert ledger.current_profit(state) == Decimal("40.00")


def test_update_cart_item_rejects_negative_discount(ledger_state):
    """Invalid line edits surface as cart errors."""

    state = ledger.apply(ledger_state, ledger.AddToCart("P1"))

    with pytest.raises(CartError):
        ledger.apply(state, ledger.UpdateCartItem(1, item_discount=Decimal("-1")))


def test_clear_cart_resets_checkout(ledger_state):
    """Clearing drops the cart and the payment selections."""

    state = ledger.apply_all(
        ledger_state,
        [
            ledger.AddToCart("P1"),
            ledger.SetCustomer("C1"),
            ledger.SetPaymentMethod(PaymentMethod.TRANSFER),
            ledger.SetPaymentAmount(Decimal("10")),
            ledger.SetDiscount(Decimal("2")),
            ledger.SetNotes("note"),
            ledger.ClearCart(),
        ],
    )

    assert state.cart == ()
    assert state.current_customer_id is None
    assert state.payment_method is PaymentMethod.CASH
    assert state.payment_amount == Decimal("0")
    assert state.discount == Decimal("0")
    assert state.notes == ""


def test_set_unknown_customer_is_rejected(ledger_state):
    with pytest.raises(MissingReferenceError):
        ledger.apply(ledger_state, ledger.SetCustomer("ghost"))


# ---------------------------------------------------------------------------
# Sale commit
# ---------------------------------------------------------------------------


def test_cash_sale_scenario(open_state):
    """Float 100, sale 50 paid 60: drawer 140, cash accumulator 50, stock reduced."""

    state = ledger.apply_all(
        open_state,
        [ledger.AddToCart("P1"), ledger.SetPaymentAmount(Decimal("60.00"))],
    )

    state, sale = _checkout(state)

    assert sale.payment.change == Decimal("10.00")
    assert state.cash_register.current_amount == Decimal("140.00")
    assert state.cash_register.accumulated(PaymentMethod.CASH) == Decimal("50.00")
    assert ledger.find_product(state, "P1").stock == Decimal("9")
    assert state.sales == (sale,)
    assert state.documents[-1].sale_id == sale.sale_id
    assert state.cart == ()
    assert state.payment_amount == Decimal("0")


def test_mixed_sale_scenario(open_state):
    """Total 200 paid 90 in cash: drawer +90, cash from mixed 90, mixed accumulator 200."""

    state = ledger.apply_all(
        open_state,
        [
            ledger.AddToCart("P1", Decimal("4")),
            ledger.SetPaymentMethod(PaymentMethod.MIXED),
            ledger.SetPaymentAmount(Decimal("90.00")),
        ],
    )

    state, sale = _checkout(state)

    assert sale.total == Decimal("200.00")
    register = state.cash_register
    assert register.current_amount == Decimal("190.00")
    assert register.cash_from_mixed == Decimal("90.00")
    assert register.accumulated(PaymentMethod.MIXED) == Decimal("200.00")


@pytest.mark.parametrize("register_open, drawer", [(True, Decimal("150.00")), (False, None)])
def test_credit_sale_scenario(ledger_state, open_state, register_open, drawer):
    """Credit 300 with 50 upfront: balance -250; drawer +50 only when open."""

    start = open_state if register_open else ledger_state
    state = ledger.apply_all(
        start,
        [
            ledger.AddToCart("P1", Decimal("6")),
            ledger.SetCustomer("C1"),
            ledger.SetPaymentAmount(Decimal("50.00")),
        ],
    )

    state, sale = _checkout(state, sale_type=SaleType.CREDIT)

    assert sale.total == Decimal("300.00")
    assert ledger.find_customer(state, "C1").balance == Decimal("-250.00")
    if register_open:
        assert state.cash_register.current_amount == drawer
        assert state.cash_register.accumulated(PaymentMethod.ACCOUNT) == Decimal("300.00")
    else:
        assert state.cash_register.is_open is False
        assert state.cash_register.movements == ()


def test_account_tender_charges_customer(open_state):
    """Paying with the account method books the unpaid part as debt."""

    state = ledger.apply_all(
        open_state,
        [
            ledger.AddToCart("P1"),
            ledger.SetCustomer("C3"),
            ledger.SetPaymentMethod(PaymentMethod.ACCOUNT),
        ],
    )

    state, _ = _checkout(state)

    assert ledger.find_customer(state, "C3").balance == Decimal("-25.00")


def test_quote_moves_nothing(open_state):
    """Quotes are logged but leave stock, drawer and accounts alone."""

    state = ledger.apply_all(open_state, [ledger.AddToCart("P1", Decimal("2")), ledger.SetCustomer("C1")])

    state, quote = _checkout(state, sale_type=SaleType.QUOTE)

    assert ledger.find_product(state, "P1").stock == Decimal("10")
    assert state.cash_register == open_state.cash_register
    assert ledger.find_customer(state, "C1").balance == Decimal("0")
    assert state.provider_restock == {}
    assert state.sales == (quote,)
    assert len(state.documents) == 1


def test_sale_accumulates_provider_restock(ledger_state):
    """Sold quantities are tracked per provider until attended."""

    state = ledger.apply_all(
        ledger_state,
        [
            ledger.AddToCart("P1", Decimal("2")),
            ledger.AddToCart("P2", Decimal("1.5")),
            ledger.SetPaymentAmount(Decimal("200")),
        ],
    )

    state, _ = _checkout(state)

    assert state.provider_restock == {"prov1": {"P1": Decimal("2")}, "prov2": {"P2": Decimal("1.5")}}

    state = ledger.apply(state, ledger.ResetProviderRestock("prov1"))
    assert state.provider_restock == {"prov2": {"P2": Decimal("1.5")}}


def test_duplicate_sale_commit_is_rejected(ledger_state):
    """The same sale cannot be committed twice."""

    state = ledger.apply_all(ledger_state, [ledger.AddToCart("P1"), ledger.SetPaymentAmount(Decimal("50"))])
    state, sale = _checkout(state)

    with pytest.raises(BusinessRuleViolation):
        ledger.apply(state, ledger.SaveSale(sale))


def test_quote_conversion_commits_once(ledger_state):
    """A quote that already produced a sale cannot back a second one."""

    state = ledger.apply(ledger_state, ledger.AddToCart("P1", Decimal("2")))
    state, quote = _checkout(state, sale_type=SaleType.QUOTE)
    first, second = (
        asyncio.run(sale_builder.convert_quote(quote, state.settings, timestamp=at))
        for at in (OPENED_AT, CLOSED_AT)
    )

    state = ledger.apply(state, ledger.SaveSale(first))
    assert ledger.conversion_of(state, quote.sale_id) == first

    with pytest.raises(QuoteAlreadyConvertedError):
        ledger.apply(state, ledger.SaveSale(second))
    assert ledger.find_product(state, "P1").stock == Decimal("8")


# ---------------------------------------------------------------------------
# Catalog and customers
# ---------------------------------------------------------------------------


def test_delete_customer_with_debt_is_rejected(ledger_state):
    """A balance of -1 blocks deletion."""

    with pytest.raises(CustomerHasDebtError):
        ledger.apply(ledger_state, ledger.DeleteCustomer("C2"))


@pytest.mark.parametrize("customer_id", ["C1", "C3"])
def test_delete_customer_without_debt_succeeds(ledger_state, customer_id):
    """Zero and positive balances can be deleted."""

    state = ledger.apply(ledger_state, ledger.DeleteCustomer(customer_id))

    with pytest.raises(MissingReferenceError):
        ledger.find_customer(state, customer_id)


def test_add_customer_starts_without_balance(ledger_state):
    """New customers always start at zero."""

    state = ledger.apply(ledger_state, ledger.AddCustomer(Customer("C9", "Dora", balance=Decimal("-40"))))

    assert ledger.find_customer(state, "C9").balance == Decimal("0")


def test_update_customer_keeps_balance(ledger_state):
    """Editing a customer never rewrites the balance."""

    state = ledger.apply(ledger_state, ledger.UpdateCustomer(Customer("C2", "Bruno B.", balance=Decimal("100"))))

    customer = ledger.find_customer(state, "C2")
    assert customer.name == "Bruno B."
    assert customer.balance == Decimal("-1")


def test_duplicate_product_is_rejected(ledger_state, hammer):
    with pytest.raises(BusinessRuleViolation):
        ledger.apply(ledger_state, ledger.AddProduct(hammer))


def test_update_and_delete_product(ledger_state):
    """Products are replaced by id and removed."""

    renamed = Product("P1", "Claw hammer", Decimal("55.00"), Decimal("30.00"), Decimal("10"))
    state = ledger.apply(ledger_state, ledger.UpdateProduct(renamed))
    assert ledger.find_product(state, "P1").name == "Claw hammer"

    state = ledger.apply(state, ledger.DeleteProduct("P1"))
    with pytest.raises(MissingReferenceError):
        ledger.find_product(state, "P1")


def test_customer_payment_reduces_debt(ledger_state):
    """Payments raise the balance and are not capped at zero."""

    state = ledger.apply(ledger_state, ledger.RegisterCustomerPayment("C2", Decimal("11")))

    assert ledger.find_customer(state, "C2").balance == Decimal("10")


def test_customer_payment_into_open_drawer(open_state):
    """A drawer payment is logged as manual income and reconciles."""

    state = ledger.apply(open_state, ledger.RegisterCustomerPayment("C2", Decimal("1"), into_drawer=True))

    register = state.cash_register
    assert register.current_amount == Decimal("101.00")
    assert register.movements[-1].kind is MovementKind.INCOME
    assert register.movements[-1].is_manual


def test_delete_provider_drops_its_restock(ledger_state):
    state = ledger.apply(ledger_state, ledger.DeleteProvider("prov1"))

    with pytest.raises(MissingReferenceError):
        ledger.find_provider(state, "prov1")


def test_update_provider_replaces_contact_details(ledger_state):
    """Providers are replaced by id and keep their restock bucket."""

    state = ledger.apply(ledger_state, ledger.AddToCart("P1"))
    state, _ = _checkout(ledger.apply(state, ledger.SetPaymentAmount(Decimal("50"))))

    state = ledger.apply(state, ledger.UpdateProvider(Provider("prov1", "Tools Inc.", phone="555-0101")))

    provider = ledger.find_provider(state, "prov1")
    assert (provider.name, provider.phone) == ("Tools Inc.", "555-0101")
    assert state.provider_restock == {"prov1": {"P1": Decimal("1")}}
    with pytest.raises(MissingReferenceError):
        ledger.apply(state, ledger.UpdateProvider(Provider("prov9", "Nobody")))


# ---------------------------------------------------------------------------
# Register through the ledger
# ---------------------------------------------------------------------------


def test_open_while_open_is_rejected(open_state):
    with pytest.raises(RegisterStateError):
        ledger.apply(open_state, ledger.OpenCashRegister(Decimal("50")))


def test_movement_on_closed_register_returns_same_state(ledger_state):
    """The ignored movement is a no-op, not an error."""

    action = ledger.AddCashMovement(MovementKind.EXPENSE, Decimal("5"), "Coffee")

    assert ledger.apply(ledger_state, action) is ledger_state


def test_close_register_archives_closure(open_state):
    """Closing appends a closure and resets the register."""

    state = ledger.apply(open_state, ledger.CloseCashRegister(timestamp=CLOSED_AT))

    assert state.cash_register.is_open is False
    assert len(state.cash_closures) == 1
    assert state.cash_closures[0].difference == Decimal("0")
