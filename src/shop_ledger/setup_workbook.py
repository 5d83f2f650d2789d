"""Utility for initializing the Shop Ledger master workbook.

The module doubles as a script (``shop-ledger-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .constants import SheetName

# Column order must match the serialize_* helpers in data_manager.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductName",
        "SalePrice",
        "Quantity",
        "AverageCost",
        "CategoryID",
        "UnitID",
        "CreatedAt",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "CustomerName",
        "Phone",
        "Address",
        "CreatedAt",
    ],
    SheetName.PURCHASE_RECORDS.value: [
        "PurchaseID",
        "ProductID",
        "Quantity",
        "CostPerUnit",
        "PurchaseDate",
        "CreatedAt",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "CustomerID",
        "TotalAmount",
        "TotalCost",
        "CreatedAt",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleItemID",
        "SaleID",
        "ProductID",
        "Quantity",
        "PriceAtTime",
        "CostAtTime",
    ],
    SheetName.REPAIRS.value: [
        "RepairID",
        "CustomerID",
        "Description",
        "TotalCost",
        "PartsCost",
        "LaborCost",
        "CreatedAt",
    ],
    SheetName.USED_PARTS.value: [
        "UsedPartID",
        "RepairID",
        "ProductID",
        "Quantity",
        "CostAtTime",
    ],
}

CONFIG_FILE = "config.ini"


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the Shop Ledger master workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by the ``DataFile`` entry of ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Shop Ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Shop Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
