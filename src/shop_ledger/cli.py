"""Command-line entry points for the Shop Ledger toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import DateRange
from .exceptions import BusinessRuleViolation, ConflictError, InsufficientStockError

EXIT_OK = 0
EXIT_INTERNAL_ERROR = 1
EXIT_RULE_VIOLATION = 2
EXIT_MISSING_FILE = 3
EXIT_CONFLICT = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_decimal(raw: str) -> Decimal:
    """argparse type converting text into a finite ``Decimal``."""
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a decimal amount: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"Not a decimal amount: {raw!r}")
    return value


def parse_basket_entry(raw: str) -> Tuple[str, int]:
    """argparse type converting ``PRODUCT:QTY`` into a basket pair."""
    product_id, separator, quantity = raw.rpartition(":")
    if not separator or not product_id:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT:QTY, got {raw!r}")
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in {raw!r}") from exc


def parse_timestamp(raw: str) -> datetime:
    """argparse type converting ISO-8601 text into a ``datetime``."""
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Not an ISO-8601 timestamp: {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-cli",
        description="Command-line tools for the Shop Ledger workbook.",
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
    """Declare mutating CLI commands such as purchases, sales and repairs."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "sale": register_sale_command(subparsers),
        "repair": register_repair_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "purchases": register_purchases_command(subparsers),
        "sales": register_sales_command(subparsers),
        "repairs": register_repairs_command(subparsers),
        "repair-stats": register_repair_stats_command(subparsers),
        "customer": register_customer_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product with no stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--sale-price", required=True, type=parse_decimal)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--unit-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit a product's name, price, category or unit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", default=None)
        parser.add_argument("--sale-price", default=None, type=parse_decimal)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--unit-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record received stock and update the average cost."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.add_argument("--cost-per-unit", required=True, type=parse_decimal)
        parser.add_argument("--purchase-date", default=None, type=parse_timestamp)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale and deduct stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            default=[],
            type=parse_basket_entry,
            metavar="PRODUCT:QTY",
            help="Line item; repeat for each product.",
        )
        parser.add_argument("--sale-date", default=None, type=parse_timestamp)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_repair_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``repair``."""
    name = "repair"
    help_text = "Record a repair job and deduct the parts it used."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--description", required=True)
        parser.add_argument("--total-cost", required=True, type=parse_decimal)
        parser.add_argument(
            "--part",
            dest="parts",
            action="append",
            default=[],
            type=parse_basket_entry,
            metavar="PRODUCT:QTY",
            help="Used part; repeat for each product.",
        )
        parser.add_argument("--repair-date", default=None, type=parse_timestamp)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_repair)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display on-hand quantities and average costs."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--check", action="store_true", help="Also reconcile stock against history.")
        parser.add_argument("--value", action="store_true", help="Also print the total value of stock on hand.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_purchases_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchases``."""
    name = "purchases"
    help_text = "Display purchase history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchases_report)


def _add_date_range_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--range",
        dest="date_range",
        choices=[member.value for member in DateRange],
        default=None,
    )


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display sales history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_repairs_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``repairs``."""
    name = "repairs"
    help_text = "Display repair history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_repairs_report)


def register_repair_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``repair-stats``."""
    name = "repair-stats"
    help_text = "Display repair revenue, labor and parts totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_repair_stats_report)


def register_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customer``."""
    name = "customer"
    help_text = "Display a customer's sales and repairs."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customer_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the data layer searches upward from the working
    directory for ``config.ini``.
    """
    context = core_logic.load_runtime_context(config_path)
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


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "product_name": args.product_name,
        "sale_price": args.sale_price,
        "category_id": args.category_id,
        "unit_id": args.unit_id,
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an update-product request, dropping unset fields."""
    fields = {
        "product_name": args.product_name,
        "sale_price": args.sale_price,
        "category_id": args.category_id,
        "unit_id": args.unit_id,
    }
    return {key: value for key, value in fields.items() if value is not None}


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-customer request."""
    return {
        "customer_id": args.customer_id,
        "customer_name": args.customer_name,
        "phone": args.phone,
        "address": args.address,
    }


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        cost_per_unit=args.cost_per_unit,
        purchase_date=args.purchase_date,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        customer_id=args.customer_id,
        items=list(args.items),
        sale_date=args.sale_date,
    )


def translate_repair(args: argparse.Namespace) -> core_logic.RepairCommand:
    """Translate CLI args into a repair command object."""
    return core_logic.RepairCommand(
        customer_id=args.customer_id,
        description=args.description,
        total_cost=args.total_cost,
        used_parts=list(args.parts),
        repair_date=args.repair_date,
    )


def _date_range(args: argparse.Namespace) -> Optional[DateRange]:
    raw = getattr(args, "date_range", None)
    return DateRange(raw) if raw else None


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added product {product.product_id} ({product.product_name}) at {product.sale_price}")
    return EXIT_OK


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.update_product(context, args.product_id, **translate_update_product(args))
    print(f"Updated product {product.product_id} ({product.product_name}) at {product.sale_price}")
    return EXIT_OK


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(context, **translate_add_customer(args))
    print(f"Added customer {customer.customer_id} ({customer.customer_name})")
    return EXIT_OK


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    result = core_logic.record_purchase(context, translate_purchase(args))
    print(
        f"Purchase {result.record.purchase_id}: {result.product.product_id} now "
        f"{result.product.quantity} on hand at average cost {result.product.average_cost}"
    )
    return EXIT_OK


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    aggregate = core_logic.create_sale(context, translate_sale(args))
    print(
        f"Sale {aggregate.sale.sale_id}: amount {aggregate.sale.total_amount}, "
        f"cost {aggregate.sale.total_cost}, {len(aggregate.items)} line(s)"
    )
    return EXIT_OK


def run_repair(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the repair workflow via the BLL."""
    aggregate = core_logic.create_repair(context, translate_repair(args))
    repair = aggregate.repair
    print(
        f"Repair {repair.repair_id}: total {repair.total_cost}, parts {repair.parts_cost}, "
        f"labor {repair.labor_cost}"
    )
    return EXIT_OK


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for product in core_logic.list_products(context):
        print(f"{product.product_id}\t{product.product_name}\t{product.quantity}\t{product.average_cost}")
    if getattr(args, "check", False):
        discrepancies = core_logic.find_stock_discrepancies(context)
        for product_id, (stored, expected) in sorted(discrepancies.items()):
            print(f"MISMATCH {product_id}: stored {stored}, history {expected}")
        if discrepancies:
            return EXIT_INTERNAL_ERROR
    if getattr(args, "value", False):
        print(f"Stock value\t{core_logic.calculate_stock_value(context)}")
    return EXIT_OK


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase history workflow."""
    for purchase in core_logic.list_purchases(context, product_id=args.product_id):
        print(
            f"{purchase.purchase_id}\t{purchase.purchase_date.isoformat()}\t{purchase.product_id}\t"
            f"{purchase.quantity}\t{purchase.cost_per_unit}"
        )
    return EXIT_OK


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales history workflow."""
    for aggregate in core_logic.list_sales(context, date_range=_date_range(args)):
        sale = aggregate.sale
        print(f"{sale.sale_id}\t{sale.created_at.isoformat()}\t{sale.customer_id}\t{sale.total_amount}\t{sale.total_cost}")
    return EXIT_OK


def run_repairs_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the repair history workflow."""
    for aggregate in core_logic.list_repairs(context, date_range=_date_range(args)):
        repair = aggregate.repair
        print(
            f"{repair.repair_id}\t{repair.created_at.isoformat()}\t{repair.customer_id}\t"
            f"{repair.total_cost}\t{repair.parts_cost}\t{repair.labor_cost}"
        )
    return EXIT_OK


def run_repair_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the repair analytics workflow."""
    summary = core_logic.calculate_repair_analytics(context, date_range=_date_range(args))
    for key, value in summary.items():
        print(f"{key}\t{value}")
    return EXIT_OK


def run_customer_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the customer history workflow."""
    history = core_logic.get_customer_history(context, args.customer_id)
    print(f"{history.customer.customer_id}\t{history.customer.customer_name}")
    for aggregate in history.sales:
        print(f"  sale\t{aggregate.sale.sale_id}\t{aggregate.sale.total_amount}")
    for aggregate in history.repairs:
        print(f"  repair\t{aggregate.repair.repair_id}\t{aggregate.repair.total_cost}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, InsufficientStockError):
        for shortage in error.shortages:
            log.error(
                "Insufficient stock for %s (%s): available %s, requested %s",
                shortage.product_name,
                shortage.product_id,
                shortage.available,
                shortage.requested,
            )
        return EXIT_RULE_VIOLATION
    if isinstance(error, (BusinessRuleViolation, ValueError)):
        log.error("%s", error)
        return EXIT_RULE_VIOLATION
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    if isinstance(error, ConflictError):
        log.error("%s (safe to retry)", error)
        return EXIT_CONFLICT
    log.error("%s", error)
    return EXIT_INTERNAL_ERROR


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
