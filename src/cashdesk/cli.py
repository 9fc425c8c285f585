"""Command-line entry points for the cashdesk toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the ledger actions and checkout calls exposed by
:mod:`cashdesk.core_logic`. Keeping the CLI thin ensures the same parser
configuration can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import cash_session, core_logic, ledger, log, reports
from .constants import MovementKind, PaymentMethod, SaleType
from .display import JsonFileDisplaySink
from .models import Sale
from .sale_builder import SaleRejection


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def decimal_argument(text: str) -> Decimal:
    """``argparse`` type converting ``text`` into a ``Decimal``."""
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from exc


def date_argument(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {text!r}") from exc


def item_argument(text: str) -> core_logic.CartRequest:
    """Parse ``PRODUCT_ID:QTY[:PRICE]`` into a cart request."""
    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"expected PRODUCT_ID:QTY[:PRICE], got {text!r}")
    quantity = decimal_argument(parts[1])
    price = decimal_argument(parts[2]) if len(parts) == 3 else None
    return parts[0], quantity, price


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cashdesk-cli",
        description="Command-line tools for the cashdesk point of sale.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    parser.add_argument(
        "--display",
        type=Path,
        default=None,
        help="Mirror every transition to this JSON file for a customer-facing display.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and register sessions."""
    specs = {
        "open-register": register_open_register_command(),
        "close-register": register_close_register_command(),
        "movement": register_movement_command(),
        "sale": register_sale_command(),
        "convert-quote": register_convert_quote_command(),
        "pay-account": register_pay_account_command(),
        "delete-customer": register_delete_customer_command(),
        "attend-restock": register_attend_restock_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports and exports."""
    specs = {
        "status": register_status_command(),
        "closures": register_closures_command(),
        "sales": register_sales_command(),
        "restock": register_restock_command(),
        "export-closures": register_export_closures_command(),
        "export-sales": register_export_sales_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_open_register_command() -> CommandSpec:
    """Register the parser and executor for ``open-register``."""
    name = "open-register"
    help_text = "Open the cash register with a starting float."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True, type=decimal_argument)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_register)


def register_close_register_command() -> CommandSpec:
    """Register the parser and executor for ``close-register``."""
    name = "close-register"
    help_text = "Close the cash register and print the closure report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_close_register)


def register_movement_command() -> CommandSpec:
    """Register the parser and executor for ``movement``."""
    name = "movement"
    help_text = "Log a manual cash income or expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--kind",
            required=True,
            choices=[MovementKind.INCOME.value, MovementKind.EXPENSE.value],
        )
        parser.add_argument("--amount", required=True, type=decimal_argument)
        parser.add_argument("--concept", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movement)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Ring up a sale, quote, remit or credit sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            type=item_argument,
            metavar="PRODUCT_ID:QTY[:PRICE]",
            help="Cart line; repeat for several products.",
        )
        parser.add_argument(
            "--type",
            dest="sale_type",
            choices=[sale_type.value for sale_type in SaleType],
            default=SaleType.SALE.value,
        )
        parser.add_argument(
            "--method",
            choices=[method.value for method in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--paid", type=decimal_argument, default=Decimal("0"))
        parser.add_argument("--customer", dest="customer_id", default=None)
        parser.add_argument("--discount", type=decimal_argument, default=Decimal("0"))
        parser.add_argument("--notes", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_convert_quote_command() -> CommandSpec:
    """Register the parser and executor for ``convert-quote``."""
    name = "convert-quote"
    help_text = "Turn a stored quote into a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--quote-id", required=True)
        parser.add_argument(
            "--method",
            choices=[method.value for method in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--paid", type=decimal_argument, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_convert_quote)


def register_pay_account_command() -> CommandSpec:
    """Register the parser and executor for ``pay-account``."""
    name = "pay-account"
    help_text = "Record a payment towards a customer's account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", required=True, type=decimal_argument)
        parser.add_argument(
            "--into-drawer",
            action="store_true",
            help="Also log the payment as cash income of the open register.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_account)


def register_delete_customer_command() -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""
    name = "delete-customer"
    help_text = "Delete a customer without outstanding debt."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_customer)


def register_attend_restock_command() -> CommandSpec:
    """Register the parser and executor for ``attend-restock``."""
    name = "attend-restock"
    help_text = "Mark a provider's restock suggestion as attended."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--provider-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_attend_restock)


def register_status_command() -> CommandSpec:
    """Register the parser and executor for ``status``."""
    name = "status"
    help_text = "Show the cash register session."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_status)


def register_closures_command() -> CommandSpec:
    """Register the parser and executor for ``closures``."""
    name = "closures"
    help_text = "List archived cash closures."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--last", type=int, default=None, help="Only show the most recent N closures.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_closures)


def register_sales_command() -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Summarise sales for a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=date_argument, default=None)
        parser.add_argument("--end", type=date_argument, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_restock_command() -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "List restock suggestions per provider."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--provider-id", default=None)
        parser.add_argument("--output", type=Path, default=None, help="Write the suggestions as CSV.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock_report)


def register_export_closures_command() -> CommandSpec:
    """Register the parser and executor for ``export-closures``."""
    name = "export-closures"
    help_text = "Export archived cash closures as CSV."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_closures)


def register_export_sales_command() -> CommandSpec:
    """Register the parser and executor for ``export-sales``."""
    name = "export-sales"
    help_text = "Export the sales log as CSV."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, required=True)
        parser.add_argument("--start", type=date_argument, default=None)
        parser.add_argument("--end", type=date_argument, default=None)
        parser.add_argument("--include-quotes", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_sales)


def load_runtime_context(
    config_path: Optional[Path] = None,
    display_path: Optional[Path] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    display = JsonFileDisplaySink(display_path) if display_path is not None else None
    return core_logic.load_runtime_context(config_path, display=display)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_movement(args: argparse.Namespace) -> ledger.AddCashMovement:
    """Translate CLI args into a manual cash movement."""
    return ledger.AddCashMovement(kind=MovementKind(args.kind), amount=args.amount, concept=args.concept)


def translate_pay_account(args: argparse.Namespace) -> ledger.RegisterCustomerPayment:
    """Translate CLI args into an account payment."""
    return ledger.RegisterCustomerPayment(
        customer_id=args.customer_id,
        amount=args.amount,
        into_drawer=args.into_drawer,
    )


def format_sale(sale: Sale) -> str:
    line = (
        f"{sale.sale_type.value} {sale.sale_id} document={sale.document_number} "
        f"total={sale.total} paid={sale.payment.amount_paid} change={sale.payment.change}"
    )
    return f"{line} (training)" if sale.training else line


def report_result(result: object) -> int:
    """Print a checkout result and map it to an exit code."""
    if isinstance(result, SaleRejection):
        print(f"Rejected ({result.reason.value}): {result.message}")
        return 2
    print(format_sale(result))
    return 0


def run_open_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the open-register workflow."""
    core_logic.dispatch(context, ledger.OpenCashRegister(opening_amount=args.amount))
    print(f"Register opened with {args.amount}")
    return 0


def run_close_register(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the close-register workflow and print the closure."""
    state = core_logic.dispatch(context, ledger.CloseCashRegister())
    closure = state.cash_closures[-1]
    print(reports.format_closure_report(closure, currency=state.settings.currency))
    return 0


def run_movement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the manual movement workflow."""
    before = context.state
    after = core_logic.dispatch(context, translate_movement(args))
    if after is before:
        print("Register is closed; movement ignored")
        return 1
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow."""
    result = asyncio.run(
        core_logic.checkout(
            context,
            args.items,
            sale_type=SaleType(args.sale_type),
            payment_method=PaymentMethod(args.method),
            payment_amount=args.paid,
            customer_id=args.customer_id,
            discount=args.discount,
            notes=args.notes,
        )
    )
    return report_result(result)


def run_convert_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quote conversion workflow."""
    result = asyncio.run(
        core_logic.convert_quote(
            context,
            args.quote_id,
            payment_method=PaymentMethod(args.method),
            payment_amount=args.paid,
        )
    )
    return report_result(result)


def run_pay_account(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the account payment workflow."""
    state = core_logic.dispatch(context, translate_pay_account(args))
    customer = ledger.find_customer(state, args.customer_id)
    print(f"{customer.name} balance: {customer.balance}")
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-customer workflow."""
    core_logic.dispatch(context, ledger.DeleteCustomer(customer_id=args.customer_id))
    return 0


def run_attend_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the attend-restock workflow."""
    core_logic.dispatch(context, ledger.ResetProviderRestock(provider_id=args.provider_id))
    return 0


def run_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the live register session."""
    register = context.state.cash_register
    if not register.is_open:
        print("Register closed")
        return 0
    print(f"Register open since {register.opened_at:%Y-%m-%d %H:%M}")
    print(f"Opening amount: {register.opening_amount}")
    print(f"Current amount: {register.current_amount}")
    for method in PaymentMethod:
        amount = register.accumulated(method)
        if amount:
            print(f"Sales {method.value}: {amount}")
    print(f"Expected amount: {cash_session.expected_amount(register)}")
    print(f"Difference: {cash_session.difference(register)}")
    return 0


def run_closures(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List archived closures, newest last."""
    closures = context.state.cash_closures
    if args.last is not None:
        closures = closures[-args.last:] if args.last > 0 else ()
    for closure in closures:
        print(
            f"{closure.opened_at:%Y-%m-%d %H:%M} -> {closure.closed_at:%Y-%m-%d %H:%M} "
            f"expected={closure.expected_amount} current={closure.current_amount} "
            f"difference={closure.difference} sales={closure.turn.sale_count}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print revenue, profit and top products for a date range."""
    summary = reports.sales_summary(context.state.sales, start=args.start, end=args.end)
    print(f"Sales: {summary.sale_count}")
    print(f"Revenue: {summary.revenue}")
    print(f"Profit: {summary.profit}")
    print(f"Average ticket: {summary.average_ticket}")
    print(f"Margin: {summary.margin_percentage}%")
    for entry in summary.top_products:
        print(f"  {entry.name}: {entry.quantity} sold, {entry.revenue}")
    return 0


def run_restock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print or export restock suggestions."""
    lines = reports.restock_suggestions(context.state, args.provider_id)
    if args.output is not None:
        reports.export_restock_csv(lines, args.output)
        return 0
    for line in lines:
        print(
            f"{line.provider_name}: {line.name} sold={line.sold} stock={line.stock} suggested={line.suggested}"
        )
    return 0


def run_export_closures(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write archived closures to CSV."""
    reports.export_closures_csv(context.state.cash_closures, args.output)
    return 0


def run_export_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the sales log to CSV."""
    sales = reports.filter_sales(
        context.state.sales,
        start=args.start,
        end=args.end,
        include_quotes=args.include_quotes,
    )
    reports.export_sales_csv(sales, args.output)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None), getattr(args, "display", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
