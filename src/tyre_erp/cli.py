"""Command-line entry points for the tyre ERP.

The module only wires argparse and turns parsed arguments into the command
objects of :mod:`tyre_erp.core_logic`. Write commands persist the workbook
when they succeed; report commands print plain-text tables to stdout.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, reporting
from .constants import NOT_AVAILABLE, PaymentMethod, UserType


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tyre-cli",
        description="Command-line tools for the tyre shop workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
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
    """Declare mutating commands: users, purchases, sales, returns, payments."""
    specs = {
        "add-user": register_add_user_command(subparsers),
        "buy": register_buy_command(subparsers),
        "delete-purchase": register_delete_purchase_command(subparsers),
        "sell": register_sell_command(subparsers),
        "return": register_return_command(subparsers),
        "transfer": register_transfer_command(subparsers),
        "pay-customer": register_pay_customer_command(subparsers),
        "pay-company": register_pay_company_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only report commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "dues": register_dues_command(subparsers),
        "profit": register_profit_command(subparsers),
        "customer-sales": register_customer_sales_command(subparsers),
        "transfers": register_transfers_command(subparsers),
        "drift": register_drift_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {value}") from exc


def parse_decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {value}") from exc


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid quantity: {value}") from exc


def parse_sale_item(value: str) -> core_logic.SaleLine:
    """Parse ``company:brand:model:size:price:quantity[:discount[:due[:comment]]]``."""
    parts = value.split(":", 8)
    if len(parts) < 6:
        raise argparse.ArgumentTypeError(
            "sale item needs company:brand:model:size:price:quantity[:discount[:due[:comment]]]"
        )
    company, brand, model, size, price, quantity, *rest = parts
    discount = rest[0] if len(rest) > 0 and rest[0] else "0"
    due = rest[1] if len(rest) > 1 and rest[1] else "0"
    comment = rest[2] if len(rest) > 2 else ""
    return core_logic.SaleLine(
        company=company,
        brand=brand,
        model=model,
        size=size,
        price=parse_decimal(price),
        quantity=_parse_int(quantity),
        discount=parse_decimal(discount),
        due=parse_decimal(due),
        comment=comment,
    )


def parse_return_item(value: str) -> core_logic.ReturnLine:
    """Parse ``company:brand:model:size:price:quantity:return_qty:return_price[:comment]``."""
    parts = value.split(":", 8)
    if len(parts) < 8:
        raise argparse.ArgumentTypeError(
            "return item needs company:brand:model:size:price:quantity:return_qty:return_price[:comment]"
        )
    company, brand, model, size, price, quantity, return_quantity, return_price, *rest = parts
    return core_logic.ReturnLine(
        company=company,
        brand=brand,
        model=model,
        size=size,
        price=parse_decimal(price),
        quantity=_parse_int(quantity),
        return_quantity=_parse_int(return_quantity),
        return_price=parse_decimal(return_price),
        comment=rest[0] if rest else "",
    )


def _add_tyre_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--company", required=True)
    parser.add_argument("--brand", required=True)
    parser.add_argument("--model", required=True)
    parser.add_argument("--size", required=True)


def _add_window_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=parse_date, default=None, help="Inclusive start date (YYYY-MM-DD).")
    parser.add_argument("--end", type=parse_date, default=None, help="Inclusive end date (YYYY-MM-DD).")


# ---------------------------------------------------------------------------
# Write commands
# ---------------------------------------------------------------------------


def register_add_user_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-user``."""
    name = "add-user"
    help_text = "Register a customer or company."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--mobile", required=True)
        parser.add_argument("--address", required=True)
        parser.add_argument("--type", dest="user_type", choices=[member.value for member in UserType], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user)


def register_buy_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``buy``."""
    name = "buy"
    help_text = "Record a tyre purchase from a company."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_tyre_arguments(parser)
        parser.add_argument("--price", type=parse_decimal, required=True)
        parser.add_argument("--quantity", type=_parse_int, required=True)
        parser.add_argument("--store", type=_parse_int, required=True)
        parser.add_argument("--shop", type=_parse_int, required=True)
        parser.add_argument("--date", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_buy)


def register_delete_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-purchase``."""
    name = "delete-purchase"
    help_text = "Delete a purchase and its company ledger entries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_purchase)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Record a sale of one or more items to a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            type=parse_sale_item,
            action="append",
            required=True,
            help="company:brand:model:size:price:quantity[:discount[:due[:comment]]]",
        )
        parser.add_argument("--bank", default="")
        parser.add_argument("--date", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Record tyres returned by a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            type=parse_return_item,
            action="append",
            required=True,
            help="company:brand:model:size:price:quantity:return_qty:return_price[:comment]",
        )
        parser.add_argument("--date", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return)


def register_transfer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Move tyres from the store to the shop."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_tyre_arguments(parser)
        parser.add_argument("--quantity", type=_parse_int, required=True)
        parser.add_argument("--date", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer)


def register_pay_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-customer``."""
    name = "pay-customer"
    help_text = "Record a payment received from a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--bank", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_customer)


def register_pay_company_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-company``."""
    name = "pay-company"
    help_text = "Record a bank payment made to a company."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--company", required=True)
        parser.add_argument("--amount", type=parse_decimal, required=True)
        parser.add_argument("--bank", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_company)


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock per company, brand, size and model."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.add_argument("--on", dest="on_date", type=parse_date, default=None)
        parser.add_argument("--brand", default=None)
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, writes=False)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Display the running-balance ledger of a customer or company."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="user_type", choices=[member.value for member in UserType], required=True)
        parser.add_argument("--name", required=True)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report, writes=False)


def register_dues_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dues``."""
    name = "dues"
    help_text = "Display customers or companies with an outstanding balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="user_type", choices=[member.value for member in UserType], required=True)
        _add_window_arguments(parser)
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dues_report, writes=False)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display revenue, cost, returns and margin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report, writes=False)


def register_customer_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customer-sales``."""
    name = "customer-sales"
    help_text = "Display one customer's purchases grouped by brand and size."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer", required=True)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customer_sales_report, writes=False)


def register_transfers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfers``."""
    name = "transfers"
    help_text = "Display the store to shop transfer history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfers_report, writes=False)


def register_drift_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``drift``."""
    name = "drift"
    help_text = "List tyres whose store/shop balance disagrees with their history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_drift_report, writes=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def _today(args: argparse.Namespace) -> date:
    return getattr(args, "date", None) or date.today()


def translate_add_user(args: argparse.Namespace) -> core_logic.UserCommand:
    return core_logic.UserCommand(
        name=args.name,
        mobile=args.mobile,
        address=args.address,
        user_type=UserType(args.user_type),
    )


def translate_buy(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command; the date defaults to today."""
    return core_logic.PurchaseCommand(
        company=args.company,
        brand=args.brand,
        model=args.model,
        size=args.size,
        price=args.price,
        quantity=args.quantity,
        store=args.store,
        shop=args.shop,
        date=_today(args),
    )


def translate_sell(args: argparse.Namespace) -> core_logic.SaleCommand:
    return core_logic.SaleCommand(
        customer_name=args.customer,
        lines=tuple(args.items),
        bank=args.bank or "",
        date=_today(args),
    )


def translate_return(args: argparse.Namespace) -> core_logic.ReturnCommand:
    return core_logic.ReturnCommand(
        customer=args.customer,
        lines=tuple(args.items),
        date=_today(args),
    )


def translate_transfer(args: argparse.Namespace) -> core_logic.TransferCommand:
    return core_logic.TransferCommand(
        company=args.company,
        brand=args.brand,
        model=args.model,
        size=args.size,
        quantity=args.quantity,
        date=_today(args),
    )


def translate_pay_customer(args: argparse.Namespace) -> core_logic.CustomerPaymentCommand:
    return core_logic.CustomerPaymentCommand(
        customer_name=args.customer,
        amount=args.amount,
        payment_method=PaymentMethod(args.method),
        bank_name=args.bank or "",
    )


def translate_pay_company(args: argparse.Namespace) -> core_logic.CompanyPaymentCommand:
    return core_logic.CompanyPaymentCommand(
        company=args.company,
        amount=args.amount,
        bank_name=args.bank,
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    user = core_logic.add_user(context, translate_add_user(args))
    print(f"Added {user.user_type} '{user.name}' ({user.record_id})")
    return 0


def run_buy(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    purchase = core_logic.record_purchase(context, translate_buy(args))
    print(f"Recorded purchase {purchase.invoice_number} ({purchase.record_id})")
    return 0


def run_delete_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    removed = core_logic.delete_purchase(context, args.purchase_id)
    print(f"Deleted purchase {args.purchase_id} and {removed} ledger entries")
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.record_sale(context, translate_sell(args))
    print(
        f"Recorded sale {result.transaction_id}: "
        f"debit {reporting.format_number(result.total_debit)}, "
        f"paid {reporting.format_number(result.total_credit)}"
    )
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.record_return(context, translate_return(args))
    print(f"Recorded return {result.transaction_id} ({len(result.returns)} items)")
    for line in result.unmatched:
        print(f"Warning: no purchase to restock {line.company} {line.brand} {line.model} {line.size}")
    return 0


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transfer = core_logic.record_transfer(context, translate_transfer(args))
    print(f"Transferred {transfer.quantity} tyres from store to shop")
    return 0


def run_pay_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = core_logic.record_customer_payment(context, translate_pay_customer(args))
    print(f"Recorded payment of {reporting.format_number(entry.credit)} from {entry.counterparty_name}")
    return 0


def run_pay_company(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = core_logic.record_company_payment(context, translate_pay_company(args))
    print(f"Recorded payment {entry.invoice_number} of {reporting.format_number(entry.credit)} to {entry.counterparty_name}")
    return 0


def format_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    """Render rows as a left-aligned plain-text table."""
    cells: List[List[str]] = [list(headers)]
    for row in rows:
        cells.append([_cell(value) for value in row])
    widths = [max(len(line[index]) for line in cells) for index in range(len(headers))]
    rendered = ["  ".join(value.ljust(width) for value, width in zip(line, widths)).rstrip() for line in cells]
    rendered.insert(1, "  ".join("-" * width for width in widths))
    return "\n".join(rendered)


def _cell(value: object) -> str:
    if isinstance(value, Decimal):
        return reporting.format_number(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = core_logic.stock_summary(
        context,
        start=args.start,
        end=args.end,
        on_date=args.on_date,
        brand=args.brand,
        search=args.search,
    )
    print(
        format_table(
            ("Company", "Brand", "Size", "Model", "Bought", "Sold", "Returned", "Store", "Shop", "Stock"),
            (
                (row.company, row.brand, row.size, row.model, row.bought, row.sold, row.returned, row.store, row.shop, row.stock)
                for row in rows
            ),
        )
    )
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    statement = core_logic.ledger_statement(
        context,
        UserType(args.user_type),
        args.name,
        start=args.start,
        end=args.end,
    )
    print(
        format_table(
            ("#", "Date", "Description", "Invoice", "Debit", "Credit", "Balance"),
            (
                (line.index, line.date, line.description, line.invoice, line.debit, line.credit, line.balance)
                for line in statement.lines
            ),
        )
    )
    print(
        f"Total debit: {reporting.format_number(statement.total_debit)}  "
        f"Total credit: {reporting.format_number(statement.total_credit)}  "
        f"Balance: {reporting.format_number(statement.closing_balance)}"
    )
    return 0


def run_dues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = core_logic.pending_dues(
        context,
        UserType(args.user_type),
        start=args.start,
        end=args.end,
        search=args.search,
    )
    print(
        format_table(
            ("Name", "Phone", "Total cost", "Paid", "Due", "Since"),
            ((row.name, row.phone, row.total_cost, row.total_paid, row.due, row.earliest_date) for row in rows),
        )
    )
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    report = core_logic.profit_and_loss(context, start=args.start, end=args.end)
    print(
        format_table(
            ("Metric", "Value"),
            (
                ("Purchase cost", report.total_purchase_cost),
                ("Sales revenue", report.total_sales_revenue),
                ("Returns", report.total_return_amount),
                ("Net sales", report.net_sales),
                ("Gross profit", report.gross_profit),
                ("Margin %", report.profit_margin),
                ("Bought", report.total_bought),
                ("Sold", report.total_sold),
                ("Returned", report.total_returned_quantity),
                ("In stock", report.in_stock),
                ("Most returned brand", report.most_returned_brand),
                ("Stock turnover %", report.stock_turnover_rate),
                ("Return rate %", report.return_rate),
                ("Avg profit per tyre", report.avg_profit_per_tyre),
                ("Best brand", report.best_brand),
            ),
        )
    )
    print()
    print(
        format_table(
            ("Brand", "Sold", "Revenue", "Cost", "Returns", "Profit", "Margin %"),
            (
                (row.brand, row.sold_qty, row.revenue, row.cost, row.returns, row.profit, row.margin)
                for row in report.brands
            ),
        )
    )
    print()
    print(
        format_table(
            ("Brand", "Model", "Size", "Units", "Profit"),
            ((row.brand, row.model, row.size, row.units_sold, row.profit) for row in report.top_skus),
        )
    )
    return 0


def run_customer_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = core_logic.customer_sale_summary(context, args.customer, start=args.start, end=args.end)
    print(
        format_table(
            ("Brand", "Size", "Items", "Total cost", "Paid", "Due", "Dates"),
            (
                (
                    row.brand,
                    row.size,
                    row.total_items,
                    row.total_cost,
                    row.total_paid,
                    row.due,
                    ", ".join(day.isoformat() for day in row.dates) or NOT_AVAILABLE,
                )
                for row in rows
            ),
        )
    )
    return 0


def run_transfers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rows = core_logic.list_transfers(context, start=args.start, end=args.end)
    print(
        format_table(
            ("Date", "Company", "Brand", "Model", "Size", "Quantity"),
            ((row.date, row.company, row.brand, row.model, row.size, row.quantity) for row in rows),
        )
    )
    return 0


def run_drift_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    drift = core_logic.stock_drift(context)
    if not drift:
        print("Stored balances match the purchase, sale and return history.")
        return 0
    print(
        format_table(
            ("Company", "Brand", "Size", "Model", "Stored", "From history", "Difference"),
            (
                (row.company, row.brand, row.size, row.model, row.materialised, row.derived, row.difference)
                for row in drift
            ),
        )
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.WriteFailure):
        log.error("%s (applied: %s)", error, "; ".join(error.applied) or "nothing")
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
