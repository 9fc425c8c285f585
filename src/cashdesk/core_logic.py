"""Orchestration layer for cashdesk.

This module wires the pure ledger engine to its collaborators. A
:class:`RuntimeContext` bundles the parsed configuration, the current
:class:`~cashdesk.models.LedgerState`, the workbook state store, the display
sink and the invoicer. Front-ends (the CLI, a future UI) never touch those
pieces directly: they call :func:`dispatch` for plain transitions and
:func:`process_sale` / :func:`convert_quote` for the asynchronous checkout.

After every transition the new state is persisted (best effort, failures are
logged) and mirrored to the display sink.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

from . import data_manager, ledger, log, sale_builder
from .constants import EXPECTED_SCHEMA_VERSION, ZERO, PaymentMethod, SaleType
from .display import DisplaySink, NullDisplaySink, broadcast
from .errors import (
    BusinessRuleViolation,
    CartError,
    CustomerHasDebtError,
    MissingReferenceError,
    QuoteAlreadyConvertedError,
    RegisterStateError,
)
from .invoicing import Invoicer, PlaceholderInvoicer
from .models import LedgerState, Sale
from .sale_builder import BuildResult, SaleRejection


# A line requested at checkout: product id, quantity and an optional price override.
CartRequest = Tuple[str, Decimal, Optional[Decimal]]


@dataclass
class RuntimeContext:
    """Configuration, live state and collaborators used by the orchestration layer."""

    settings: data_manager.ConfigSettings
    store: data_manager.WorkbookStateStore
    state: LedgerState
    display: DisplaySink = field(default_factory=NullDisplaySink, repr=False)
    invoicer: Optional[Invoicer] = field(default=None, repr=False)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    invoicer: Optional[Invoicer] = None,
    display: Optional[DisplaySink] = None,
) -> RuntimeContext:
    """Load configuration settings and the stored ledger state.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        invoicer (Invoicer | None): Fiscal document service. Defaults to the
            :class:`~cashdesk.invoicing.PlaceholderInvoicer`; it is only called
            when invoicing is enabled in ``config.ini``.
        display (DisplaySink | None): Secondary display. Defaults to a sink
            that discards messages.

    Returns:
        RuntimeContext: Fully populated context ready for :func:`dispatch`.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        RuntimeError: If the stored workbook carries another schema version.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStateStore(settings.data_file, schema_version=settings.schema_version)
    state = store.load(settings.settings)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        store=store,
        state=state,
        display=display or NullDisplaySink(),
        invoicer=invoicer or PlaceholderInvoicer(),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that ``config.ini`` targets the schema this code understands.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def _touches_stored_state(before: LedgerState, after: LedgerState) -> bool:
    # Transitions reuse untouched fields, so identity tells us what changed.
    return any(getattr(before, key) is not getattr(after, key) for key in data_manager.STATE_KEYS)


def persist_context(context: RuntimeContext) -> None:
    """Write the current state to the configured workbook.

    Raises:
        OSError: If the workbook cannot be written.
    """
    context.store.save(context.state)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the stored state, discarding the live checkout and unsaved changes.

    Returns:
        RuntimeContext: Fresh context sharing settings and collaborators.
    """
    state = context.store.load(context.settings.settings)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        store=context.store,
        state=state,
        display=context.display,
        invoicer=context.invoicer,
    )


def dispatch(context: RuntimeContext, action: ledger.Action) -> LedgerState:
    """Apply ``action`` to the live state, then persist and broadcast.

    The transition is all-or-nothing: when the ledger raises, ``context.state``
    is left as it was and nothing is written. A failed save is logged but does
    not undo the transition.

    Args:
        context (RuntimeContext): Context holding the live state.
        action (ledger.Action): Transition to apply.

    Returns:
        LedgerState: The state after the transition.

    Raises:
        BusinessRuleViolation: When the ledger rejects the transition.
        ValueError: When the action carries invalid values.
    """
    before = context.state
    after = ledger.apply(before, action)
    if after is before:
        log.debug("%s left the state unchanged", type(action).__name__)
        return after

    context.state = after
    if _touches_stored_state(before, after):
        try:
            persist_context(context)
        except OSError as exc:
            log.error("Could not persist state to '%s': %s", context.settings.data_file, exc)
    broadcast(context.display, after)
    return after


async def process_sale(
    context: RuntimeContext,
    sale_type: SaleType = SaleType.SALE,
    *,
    timestamp: Optional[datetime] = None,
) -> BuildResult:
    """Check out the live cart as ``sale_type``.

    The sale is built from the cart, customer, payment and discount currently
    held in ``context.state``. A rejection leaves the state untouched; an
    accepted sale is committed through :func:`dispatch`.

    Returns:
        Sale | SaleRejection: The committed sale, or why it was refused.
    """
    state = context.state
    result = await sale_builder.build_sale(
        state.cart,
        state.settings,
        sale_type=sale_type,
        payment_method=state.payment_method,
        payment_amount=state.payment_amount,
        customer=ledger.current_customer(state),
        discount=state.discount,
        notes=state.notes,
        invoicer=context.invoicer,
        timestamp=timestamp,
    )
    if isinstance(result, SaleRejection):
        return result

    dispatch(context, ledger.SaveSale(result))
    return result


async def convert_quote(
    context: RuntimeContext,
    quote_id: str,
    *,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    payment_amount: Optional[Decimal] = None,
    timestamp: Optional[datetime] = None,
) -> BuildResult:
    """Turn a stored quote into a committed sale.

    Raises:
        MissingReferenceError: If ``quote_id`` is unknown.
        QuoteAlreadyConvertedError: If the quote already produced a sale.
        ValueError: If the referenced sale is not a quote.
    """
    quote = ledger.find_sale(context.state, quote_id)
    previous = ledger.conversion_of(context.state, quote_id)
    if previous is not None:
        log.warning("Quote '%s' was already converted into '%s'", quote_id, previous.sale_id)
        raise QuoteAlreadyConvertedError(f"Quote '{quote_id}' was already converted into sale '{previous.sale_id}'")
    result = await sale_builder.convert_quote(
        quote,
        context.state.settings,
        payment_method=payment_method,
        payment_amount=payment_amount,
        invoicer=context.invoicer,
        timestamp=timestamp,
    )
    if isinstance(result, SaleRejection):
        return result

    dispatch(context, ledger.SaveSale(result))
    log.info("Converted quote '%s' into sale '%s'", quote_id, result.sale_id)
    return result


async def checkout(
    context: RuntimeContext,
    items: Sequence[CartRequest],
    *,
    sale_type: SaleType = SaleType.SALE,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    payment_amount: Decimal = ZERO,
    customer_id: Optional[str] = None,
    discount: Decimal = ZERO,
    notes: str = "",
    timestamp: Optional[datetime] = None,
) -> BuildResult:
    """Fill the cart from ``items`` and process it in one call.

    Any cart left over from a previous interaction is cleared first. When the
    checkout is rejected the filled cart stays in ``context.state`` so the
    operator can fix the payment and retry.

    Raises:
        CartError: If a requested quantity is invalid or exceeds stock.
        MissingReferenceError: If a product or customer is unknown.
    """
    actions: list = [ledger.ClearCart()]
    actions.extend(ledger.AddToCart(product_id, quantity, price) for product_id, quantity, price in items)
    actions.extend(
        [
            ledger.SetCustomer(customer_id),
            ledger.SetPaymentMethod(payment_method),
            ledger.SetPaymentAmount(payment_amount),
            ledger.SetDiscount(discount),
            ledger.SetNotes(notes),
        ]
    )
    # Validate the whole cart before touching the live state.
    context.state = ledger.apply_all(context.state, actions)
    broadcast(context.display, context.state)
    return await process_sale(context, sale_type, timestamp=timestamp)


def committed_sales(context: RuntimeContext, *, include_quotes: bool = True) -> Iterable[Sale]:
    return [
        sale for sale in context.state.sales if include_quotes or sale.sale_type is not SaleType.QUOTE
    ]


__all__ = [
    "BusinessRuleViolation",
    "CartError",
    "CartRequest",
    "CustomerHasDebtError",
    "MissingReferenceError",
    "QuoteAlreadyConvertedError",
    "RegisterStateError",
    "RuntimeContext",
    "checkout",
    "committed_sales",
    "convert_quote",
    "dispatch",
    "ensure_schema_version",
    "load_runtime_context",
    "persist_context",
    "process_sale",
    "refresh_context",
]
