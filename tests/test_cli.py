"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping

import pytest

from shop_ledger import cli, core_logic
from shop_ledger.exceptions import (
    ConflictError,
    EmptyBasketError,
    InsufficientStockError,
    InternalError,
    StockShortage,
)


WRITE_COMMANDS = {
    "add-product",
    "update-product",
    "add-customer",
    "purchase",
    "sale",
    "repair",
}

READ_COMMANDS = {
    "stock",
    "purchases",
    "sales",
    "repairs",
    "repair-stats",
    "customer",
}


def _registered_choices(parser: argparse.ArgumentParser) -> Iterable[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices.keys()
    return ()


def _parse(argv: list[str]) -> tuple[argparse.Namespace, Mapping[str, cli.CommandSpec]]:
    parser = cli.build_parser()
    table = cli.configure_subcommands(parser)
    return parser.parse_args(argv), table


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "shop-cli"


def test_configure_subcommands_registers_every_command(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert set(_registered_choices(cli_parser)) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert callable(spec.execute)


def test_build_command_table_indexes_by_name(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def test_parse_basket_entry_splits_on_last_colon():
    assert cli.parse_basket_entry("P1:3") == ("P1", 3)
    assert cli.parse_basket_entry("SKU:A:2") == ("SKU:A", 2)


@pytest.mark.parametrize("raw", ["P1", ":3", "P1:x"])
def test_parse_basket_entry_rejects_bad_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_basket_entry(raw)


def test_parse_decimal_rejects_non_numbers():
    assert cli.parse_decimal("2.50") == Decimal("2.50")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_decimal("abc")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_decimal("Infinity")


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def test_translate_sale_collects_repeated_items():
    args, _ = _parse(
        ["sale", "--customer-id", "C1", "--item", "P1:2", "--item", "P2:1", "--sale-date", "2025-01-02T10:00:00"]
    )
    command = cli.translate_sale(args)

    assert isinstance(command, core_logic.SaleCommand)
    assert command.customer_id == "C1"
    assert command.items == [("P1", 2), ("P2", 1)]
    assert command.sale_date == datetime(2025, 1, 2, 10, 0)


def test_translate_repair_builds_command():
    args, _ = _parse(
        ["repair", "--customer-id", "C1", "--description", "Screen", "--total-cost", "50", "--part", "P1:2"]
    )
    command = cli.translate_repair(args)

    assert command.total_cost == Decimal("50")
    assert command.used_parts == [("P1", 2)]
    assert command.repair_date is None


def test_translate_purchase_builds_command():
    args, _ = _parse(["purchase", "--product-id", "P1", "--quantity", "10", "--cost-per-unit", "5"])
    command = cli.translate_purchase(args)
    assert command == core_logic.PurchaseCommand(product_id="P1", quantity=10, cost_per_unit=Decimal("5"))


def test_translate_update_product_drops_unset_fields():
    args, _ = _parse(["update-product", "--product-id", "P1", "--sale-price", "9.99"])
    assert cli.translate_update_product(args) == {"sale_price": Decimal("9.99")}


# ---------------------------------------------------------------------------
# Dispatch and error handling
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(runtime_context, command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert cli.dispatch_command(runtime_context, argparse.Namespace(command="beta"), table) == 0


def test_dispatch_command_unknown_raises(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="nope"), {})


@pytest.mark.parametrize(
    "error, expected",
    [
        (InsufficientStockError([StockShortage("P1", "Screen", 1, 2)]), cli.EXIT_RULE_VIOLATION),
        (EmptyBasketError("empty"), cli.EXIT_RULE_VIOLATION),
        (ValueError("bad quantity"), cli.EXIT_RULE_VIOLATION),
        (FileNotFoundError("missing"), cli.EXIT_MISSING_FILE),
        (ConflictError("busy"), cli.EXIT_CONFLICT),
        (InternalError("boom"), cli.EXIT_INTERNAL_ERROR),
        (RuntimeError("schema"), cli.EXIT_INTERNAL_ERROR),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def test_main_runs_full_workflow(config_file, capsys):
    """Commands executed through main() should persist between invocations."""

    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-customer", "--customer-id", "C1", "--customer-name", "Ada"]) == 0
    assert cli.main([*base, "add-product", "--product-id", "P1", "--product-name", "Screen", "--sale-price", "10"]) == 0
    assert cli.main([*base, "purchase", "--product-id", "P1", "--quantity", "10", "--cost-per-unit", "5"]) == 0
    assert cli.main([*base, "purchase", "--product-id", "P1", "--quantity", "5", "--cost-per-unit", "8"]) == 0
    assert cli.main([*base, "sale", "--customer-id", "C1", "--item", "P1:3"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "stock", "--check"]) == 0
    out = capsys.readouterr().out
    assert "P1\tScreen\t12\t6.0000" in out
    assert "MISMATCH" not in out
    assert "Stock value" not in out

    assert cli.main([*base, "stock", "--value"]) == 0
    assert "Stock value\t72.0000" in capsys.readouterr().out


def test_main_reports_shortage_with_rule_exit_code(config_file):
    base = ["--config", str(config_file)]
    cli.main([*base, "add-customer", "--customer-id", "C1", "--customer-name", "Ada"])
    cli.main([*base, "add-product", "--product-id", "P1", "--product-name", "Screen", "--sale-price", "10"])

    assert cli.main([*base, "sale", "--customer-id", "C1", "--item", "P1:1"]) == cli.EXIT_RULE_VIOLATION


def test_main_missing_config_returns_missing_file(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == cli.EXIT_MISSING_FILE
