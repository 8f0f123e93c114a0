"""Command-line entry points for the Invoice ERP toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, reconciliation, reports
from .constants import LIFECYCLE_INVOICE_TYPES, InvoiceType
from .data_manager import CustomerInfo


LIFECYCLE_TYPE_CHOICES = sorted(member.value for member in LIFECYCLE_INVOICE_TYPES)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-cli",
        description="Command-line tools for the Invoice ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands such as invoicing and trash handling."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "edit-invoice": register_edit_invoice_command(subparsers),
        "trash": register_trash_command(subparsers),
        "restore": register_restore_command(subparsers),
        "purge": register_purge_command(subparsers),
        "trash-all": register_trash_all_command(subparsers),
        "clear-all": register_clear_all_command(subparsers),
        "recalc": register_recalc_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "next-number": register_next_number_command(subparsers),
        "drift": register_drift_command(subparsers),
        "log": register_log_command(subparsers),
        "profit": register_profit_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item_argument(raw: str) -> core_logic.InvoiceLineCommand:
    """Parse ``PRODUCT_ID:QUANTITY[:DISCOUNT]`` into an invoice line.

    Raises:
        argparse.ArgumentTypeError: If the value is malformed.
    """
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QUANTITY[:DISCOUNT], got '{raw}'")
    try:
        quantity = int(parts[1])
        discount = Decimal(parts[2]) if len(parts) == 3 else Decimal("0")
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity or discount in '{raw}'") from exc
    return core_logic.InvoiceLineCommand(product_id=parts[0], quantity=quantity, discount=discount)


def _add_customer_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--customer", required=required, help="Customer name.")
    parser.add_argument("--email", default=None)
    parser.add_argument("--address", default=None)
    parser.add_argument("--phone", default=None)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--sku", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--opening-stock", type=int, default=0)
        parser.add_argument("--category", default="Uncategorized")
        parser.add_argument("--purchase-price", default=None)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Create an invoice and apply its stock effect."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--number", default=None, help="Business number; suggested when omitted.")
        parser.add_argument("--date", default=None, help="ISO date; defaults to today.")
        parser.add_argument("--type", dest="invoice_type", choices=LIFECYCLE_TYPE_CHOICES, default="sale")
        parser.add_argument("--discount", default="0", help="Global discount percentage.")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item_argument,
            required=True,
            help="PRODUCT_ID:QUANTITY[:DISCOUNT]; repeat for several lines.",
        )
        _add_customer_arguments(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_edit_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-invoice``."""
    name = "edit-invoice"
    help_text = "Edit an active invoice, moving stock to match the new lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--number", default=None)
        parser.add_argument("--date", default=None)
        parser.add_argument("--type", dest="invoice_type", choices=LIFECYCLE_TYPE_CHOICES, default=None)
        parser.add_argument("--discount", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item_argument,
            default=None,
            help="Replacement lines; omit to keep the stored lines.",
        )
        _add_customer_arguments(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_invoice)


def register_trash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``trash``."""
    name = "trash"
    help_text = "Move one or more invoices to the trash."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", dest="invoice_ids", action="append", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_trash)


def register_restore_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restore``."""
    name = "restore"
    help_text = "Restore a trashed invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restore)


def register_purge_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purge``."""
    name = "purge"
    help_text = "Permanently delete a trashed invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purge)


def register_trash_all_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``trash-all``."""
    name = "trash-all"
    help_text = "Move every active invoice to the trash."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_trash_all)


def register_clear_all_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear-all``."""
    name = "clear-all"
    help_text = "Delete every invoice and product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--yes", action="store_true", required=True, help="Confirm the irreversible wipe.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear_all)


def register_recalc_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recalc``."""
    name = "recalc"
    help_text = "Recompute ledger quantities from invoice history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--product-id",
            dest="product_ids",
            action="append",
            default=None,
            help="Limit to these products; all products when omitted.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recalc)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        group = parser.add_mutually_exclusive_group()
        group.add_argument("--trashed", action="store_true", help="Only invoices in the trash.")
        group.add_argument("--all", dest="include_deleted", action="store_true", help="Include trashed invoices.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report, mutates=False)


def register_next_number_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``next-number``."""
    name = "next-number"
    help_text = "Suggest the next invoice number."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="invoice_type", choices=LIFECYCLE_TYPE_CHOICES, default="sale")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_next_number, mutates=False)


def register_drift_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``drift``."""
    name = "drift"
    help_text = "Report products whose stock disagrees with their invoice history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_drift_report, mutates=False)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the activity log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report, mutates=False)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display sales, cost, and profit summaries for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="date_from", default=None, help="First ISO date included.")
        parser.add_argument("--to", dest="date_to", default=None, help="Last ISO date included.")
        parser.add_argument("--invoices", action="store_true", help="Also list every invoice with its profit.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report, mutates=False)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the sell history of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
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


def translate_add_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    """Translate CLI args into a product command object."""
    return core_logic.ProductCommand(
        name=args.name,
        sku=args.sku,
        price=Decimal(args.price),
        opening_stock=args.opening_stock,
        category=args.category,
        purchase_price=Decimal(args.purchase_price) if args.purchase_price is not None else None,
        short_description=args.description,
    )


def translate_customer(args: argparse.Namespace) -> Optional[CustomerInfo]:
    """Build the customer block, or ``None`` when no name was given."""
    if args.customer is None:
        return None
    return CustomerInfo(
        name=args.customer,
        email=args.email or "",
        address=args.address or "",
        phone=args.phone,
    )


def translate_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object."""
    invoice_type = InvoiceType(args.invoice_type)
    number = args.number or core_logic.next_invoice_number(context, invoice_type)
    return core_logic.InvoiceCommand(
        number=number,
        date=args.date or datetime.now(UTC).date().isoformat(),
        customer=translate_customer(args),
        items=tuple(args.items),
        invoice_type=invoice_type,
        discount_percentage=Decimal(args.discount),
    )


def translate_edit_invoice(args: argparse.Namespace) -> core_logic.InvoiceUpdateCommand:
    """Translate CLI args into an invoice update command object."""
    return core_logic.InvoiceUpdateCommand(
        invoice_id=args.invoice_id,
        number=args.number,
        date=args.date,
        customer=translate_customer(args),
        items=tuple(args.items) if args.items is not None else None,
        invoice_type=InvoiceType(args.invoice_type) if args.invoice_type is not None else None,
        discount_percentage=Decimal(args.discount) if args.discount is not None else None,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_add_product(args))
    print(product.product_id)
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice creation workflow via the BLL."""
    created = core_logic.create_invoice(context, translate_invoice(context, args))
    print(f"{created.invoice_id}\t{created.number}")
    return 0


def run_edit_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice edit workflow via the BLL."""
    updated = core_logic.update_invoice(context, translate_edit_invoice(args))
    print(f"{updated.invoice_id}\t{updated.number}\t{updated.total}")
    return 0


def run_trash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Move the requested invoices to the trash."""
    if len(args.invoice_ids) == 1:
        core_logic.soft_delete_invoice(context, args.invoice_ids[0])
        return 0
    trashed = core_logic.bulk_soft_delete_invoices(context, args.invoice_ids)
    print(f"Moved {len(trashed)} invoices to trash")
    return 0


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restore workflow via the BLL."""
    core_logic.restore_invoice(context, args.invoice_id)
    return 0


def run_purge(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the permanent delete workflow via the BLL."""
    core_logic.permanently_delete_invoice(context, args.invoice_id)
    return 0


def run_trash_all(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Move every active invoice to the trash."""
    trashed = core_logic.delete_all_invoices(context)
    print(f"Moved {len(trashed)} invoices to trash")
    return 0


def run_clear_all(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Wipe every invoice and product."""
    invoices, products = core_logic.clear_all_data(context)
    print(f"Removed {invoices} invoices and {products} products")
    return 0


def run_recalc(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Recompute ledger quantities for the selected products."""
    if args.product_ids:
        results = reconciliation.recalculate_products(context, args.product_ids)
    else:
        results = reconciliation.recalculate_all_products(context)
    for product_id, quantity in results.items():
        print(f"{product_id}\t{quantity}")
    return 0


def format_rows(header: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    """Render rows as a left-aligned plain-text table."""
    table: list[Tuple[str, ...]] = [tuple(header), *(tuple(str(value) for value in row) for row in rows)]
    widths = [max(len(row[idx]) for row in table) for idx in range(len(header))]
    return "\n".join(
        "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in table
    )


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    products = core_logic.list_products(context)
    print(
        format_rows(
            ("ProductID", "SKU", "Name", "OnHand", "Quantity"),
            ((p.product_id, p.sku, p.name, p.on_hand, p.quantity) for p in products),
        )
    )
    return 0


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice listing workflow."""
    if args.trashed:
        invoices = core_logic.list_trashed_invoices(context)
    else:
        invoices = core_logic.list_invoices(context, include_deleted=args.include_deleted)
    print(
        format_rows(
            ("InvoiceID", "Number", "Date", "Type", "Customer", "Total", "Trashed"),
            (
                (
                    inv.invoice_id,
                    inv.number,
                    inv.date,
                    inv.invoice_type,
                    inv.customer.name,
                    inv.total,
                    "yes" if inv.is_trashed else "",
                )
                for inv in invoices
            ),
        )
    )
    return 0


def run_next_number(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the suggested next invoice number."""
    print(core_logic.next_invoice_number(context, InvoiceType(args.invoice_type)))
    return 0


def run_drift_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock drift reporting workflow."""
    drifts = reconciliation.find_stock_drift(context)
    print(
        format_rows(
            ("ProductID", "Name", "OnHand", "Reconciled", "Difference"),
            ((d.product_id, d.name, d.on_hand, d.reconciled, f"{d.difference:+d}") for d in drifts),
        )
    )
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the activity log reporting workflow."""
    entries = core_logic.list_activity(context)
    if args.limit is not None:
        entries = entries[: args.limit]
    for entry in entries:
        print(f"{entry.timestamp_iso}  {entry.message}")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the profit reporting workflow."""
    metrics = reports.calculate_sales_metrics(context, date_from=args.date_from, date_to=args.date_to)
    print(
        format_rows(
            ("Metric", "Value"),
            (
                ("Sales", metrics.total_sales),
                ("Costs", metrics.total_costs),
                ("Profit", metrics.total_profit),
                ("Invoices", metrics.number_of_invoices),
                ("Returned quantity", metrics.returned_quantity),
                ("Returned value", metrics.returned_value),
            ),
        )
    )
    if args.invoices:
        rows = reports.invoice_profit_table(context, date_from=args.date_from, date_to=args.date_to)
        print()
        print(
            format_rows(
                ("Number", "Date", "Type", "Total", "Cost", "Profit", "Trashed"),
                (
                    (
                        row.invoice.number,
                        row.invoice.date,
                        row.invoice.invoice_type,
                        row.invoice.total,
                        row.cost,
                        row.profit,
                        "yes" if row.invoice.is_trashed else "",
                    )
                    for row in rows
                ),
            )
        )
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product sell history workflow."""
    history = reports.product_sell_history(context, args.product_id)
    if not history:
        print("No sell history for this product.")
        return 0
    print(
        format_rows(
            ("Number", "Date", "Type", "Quantity", "Price"),
            ((entry.invoice_number, entry.date, entry.invoice_type, entry.quantity, entry.price) for entry in history),
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
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
