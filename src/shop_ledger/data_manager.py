"""Data access layer for Shop Ledger.

This module provides low-level helpers that read from and write to the
``shop_master.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import COST_QUANTUM, MONEY_QUANTUM, SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0

PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
PURCHASE_RECORDS_SHEET = SheetName.PURCHASE_RECORDS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
REPAIRS_SHEET = SheetName.REPAIRS.value
USED_PARTS_SHEET = SheetName.USED_PARTS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet.

    ``quantity`` and ``average_cost`` are derived state owned by the costing
    engine; catalog edits never write them.
    """

    product_id: str
    product_name: str
    sale_price: Decimal
    quantity: int
    average_cost: Decimal
    category_id: Optional[str] = None
    unit_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    customer_name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PurchaseRow:
    """Immutable purchase event from the ``PurchaseRecords`` sheet."""

    purchase_id: str
    product_id: str
    quantity: int
    cost_per_unit: Decimal
    purchase_date: datetime
    created_at: datetime


@dataclass(frozen=True)
class SaleRow:
    """Sale header from the ``Sales`` sheet."""

    sale_id: str
    customer_id: str
    total_amount: Decimal
    total_cost: Decimal
    created_at: datetime


@dataclass(frozen=True)
class SaleItemRow:
    """Sale line from the ``SaleItems`` sheet with its frozen price and cost."""

    sale_item_id: str
    sale_id: str
    product_id: str
    quantity: int
    price_at_time: Decimal
    cost_at_time: Decimal


@dataclass(frozen=True)
class RepairRow:
    """Repair header from the ``Repairs`` sheet."""

    repair_id: str
    customer_id: str
    description: str
    total_cost: Decimal
    parts_cost: Decimal
    labor_cost: Decimal
    created_at: datetime


@dataclass(frozen=True)
class UsedPartRow:
    """Consumed part from the ``UsedParts`` sheet with its frozen cost."""

    used_part_id: str
    repair_id: str
    product_id: str
    quantity: int
    cost_at_time: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Callers receive the ``ConfigParser`` even if individual sections are
    missing; validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Transactions]`` section is
    optional and falls back to the module defaults for lock handling. Relative
    ``DataFile`` entries are expanded against ``base_path`` when provided, or
    against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If the lock timeout is not a positive number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    lock_timeout = parser.getfloat(
        "Transactions", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if lock_timeout <= 0:
        raise ValueError("LockTimeoutSeconds must be a positive number of seconds")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        lock_timeout_seconds=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing ``destination`` atomically.

    The workbook is first written to a temporary sibling file and then moved
    over the destination with :func:`os.replace`, so a reader either sees the
    previous file or the complete new one. Parent directories are created on
    demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.name}.{os.getpid()}.tmp")
    try:
        workbook.save(staging)
        os.replace(staging, dest)
    finally:
        staging.unlink(missing_ok=True)
    log.debug("Saved workbook to '%s'", dest)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows.
    """

    yield from (deserialize_product(raw) for raw in _iter_raw_rows(workbook, PRODUCTS_SHEET))


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    yield from (deserialize_customer(raw) for raw in _iter_raw_rows(workbook, CUSTOMERS_SHEET))


def iter_purchases(workbook: Workbook) -> Iterable[PurchaseRow]:
    """Stream purchase events in the order they were recorded."""

    yield from (deserialize_purchase(raw) for raw in _iter_raw_rows(workbook, PURCHASE_RECORDS_SHEET))


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    yield from (deserialize_sale(raw) for raw in _iter_raw_rows(workbook, SALES_SHEET))


def iter_sale_items(workbook: Workbook) -> Iterable[SaleItemRow]:
    yield from (deserialize_sale_item(raw) for raw in _iter_raw_rows(workbook, SALE_ITEMS_SHEET))


def iter_repairs(workbook: Workbook) -> Iterable[RepairRow]:
    yield from (deserialize_repair(raw) for raw in _iter_raw_rows(workbook, REPAIRS_SHEET))


def iter_used_parts(workbook: Workbook) -> Iterable[UsedPartRow]:
    yield from (deserialize_used_part(raw) for raw in _iter_raw_rows(workbook, USED_PARTS_SHEET))


def get_product(workbook: Workbook, product_id: str) -> Optional[ProductRow]:
    """Read a single product row straight from the worksheet.

    Returns ``None`` when no row carries ``product_id``.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        return None
    sheet = workbook[PRODUCTS_SHEET]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return deserialize_product(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet.

    The dataclass is serialized into the exact column ordering expected by the
    sheet before being appended.
    """

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_purchase(workbook: Workbook, record: PurchaseRow) -> None:
    """Append a purchase event to the ``PurchaseRecords`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[PURCHASE_RECORDS_SHEET].append(serialize_purchase(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    workbook[SALES_SHEET].append(serialize_sale(record))


def append_sale_item(workbook: Workbook, record: SaleItemRow) -> None:
    workbook[SALE_ITEMS_SHEET].append(serialize_sale_item(record))


def append_repair(workbook: Workbook, record: RepairRow) -> None:
    workbook[REPAIRS_SHEET].append(serialize_repair(record))


def append_used_part(workbook: Workbook, record: UsedPartRow) -> None:
    workbook[USED_PARTS_SHEET].append(serialize_used_part(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    The function locates the row whose ``ProductID`` matches ``product_id``,
    validates that each requested field exists in the header row, and then writes
    the provided values into the corresponding cells. Only the specified fields
    are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    sheet_name = PRODUCTS_SHEET
    row_index = locate_row(workbook, sheet_name, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        col = header_map[field]
        sheet.cell(row=row_index, column=col, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The function constructs a mapping from header titles to column indices,
    verifies that ``key_column`` exists, and scans the worksheet for the first
    row whose value equals ``key_value``. The header row itself is not
    considered during matching.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def format_timestamp(moment: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 text, treating naive values as UTC."""

    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.isoformat()


def parse_timestamp(raw: object) -> Optional[datetime]:
    """Parse a worksheet timestamp cell into a timezone-aware ``datetime``."""

    if raw is None or raw == "":
        return None
    moment = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def to_decimal(raw: object, quantum: Decimal) -> Decimal:
    """Normalize a numeric cell into a :class:`~decimal.Decimal` at ``quantum``.

    Excel stores numbers as binary floats, so values are routed through ``str``
    and re-quantized to recover the exact amount that was written.
    """

    if raw is None or raw == "":
        return Decimal("0").quantize(quantum)
    return Decimal(str(raw)).quantize(quantum)


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.sale_price,
        record.quantity,
        record.average_cost,
        record.category_id,
        record.unit_id,
        format_timestamp(record.created_at),
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    return [
        record.customer_id,
        record.customer_name,
        record.phone,
        record.address,
        format_timestamp(record.created_at),
    ]


def serialize_purchase(record: PurchaseRow) -> list[object]:
    return [
        record.purchase_id,
        record.product_id,
        record.quantity,
        record.cost_per_unit,
        format_timestamp(record.purchase_date),
        format_timestamp(record.created_at),
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.customer_id,
        record.total_amount,
        record.total_cost,
        format_timestamp(record.created_at),
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_item_id,
        record.sale_id,
        record.product_id,
        record.quantity,
        record.price_at_time,
        record.cost_at_time,
    ]


def serialize_repair(record: RepairRow) -> list[object]:
    return [
        record.repair_id,
        record.customer_id,
        record.description,
        record.total_cost,
        record.parts_cost,
        record.labor_cost,
        format_timestamp(record.created_at),
    ]


def serialize_used_part(record: UsedPartRow) -> list[object]:
    return [
        record.used_part_id,
        record.repair_id,
        record.product_id,
        record.quantity,
        record.cost_at_time,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    The converter normalizes monetary values into :class:`~decimal.Decimal`
    instances and coerces id/name fields to ``str`` to avoid surprises caused by
    Excel automatically interpreting numbers. Missing stock figures read as
    zero.
    """

    (
        product_id,
        product_name,
        sale_price_raw,
        quantity_raw,
        average_cost_raw,
        category_id,
        unit_id,
        created_at_raw,
    ) = _pad(raw_row, 8)

    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name),
        sale_price=to_decimal(sale_price_raw, MONEY_QUANTUM),
        quantity=int(quantity_raw or 0),
        average_cost=to_decimal(average_cost_raw, COST_QUANTUM),
        category_id=_optional_text(category_id),
        unit_id=_optional_text(unit_id),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, customer_name, phone, address, created_at_raw = _pad(raw_row, 5)
    return CustomerRow(
        customer_id=str(customer_id),
        customer_name=str(customer_name),
        phone=_optional_text(phone),
        address=_optional_text(address),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    purchase_id, product_id, quantity_raw, cost_raw, purchase_date_raw, created_at_raw = _pad(raw_row, 6)
    return PurchaseRow(
        purchase_id=str(purchase_id),
        product_id=str(product_id),
        quantity=int(quantity_raw or 0),
        cost_per_unit=to_decimal(cost_raw, COST_QUANTUM),
        purchase_date=parse_timestamp(purchase_date_raw),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    sale_id, customer_id, total_amount_raw, total_cost_raw, created_at_raw = _pad(raw_row, 5)
    return SaleRow(
        sale_id=str(sale_id),
        customer_id=str(customer_id),
        total_amount=to_decimal(total_amount_raw, MONEY_QUANTUM),
        total_cost=to_decimal(total_cost_raw, COST_QUANTUM),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    sale_item_id, sale_id, product_id, quantity_raw, price_raw, cost_raw = _pad(raw_row, 6)
    return SaleItemRow(
        sale_item_id=str(sale_item_id),
        sale_id=str(sale_id),
        product_id=str(product_id),
        quantity=int(quantity_raw or 0),
        price_at_time=to_decimal(price_raw, MONEY_QUANTUM),
        cost_at_time=to_decimal(cost_raw, COST_QUANTUM),
    )


def deserialize_repair(raw_row: Sequence[object]) -> RepairRow:
    (
        repair_id,
        customer_id,
        description,
        total_cost_raw,
        parts_cost_raw,
        labor_cost_raw,
        created_at_raw,
    ) = _pad(raw_row, 7)
    return RepairRow(
        repair_id=str(repair_id),
        customer_id=str(customer_id),
        description=str(description) if description is not None else "",
        total_cost=to_decimal(total_cost_raw, MONEY_QUANTUM),
        parts_cost=to_decimal(parts_cost_raw, COST_QUANTUM),
        labor_cost=to_decimal(labor_cost_raw, COST_QUANTUM),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_used_part(raw_row: Sequence[object]) -> UsedPartRow:
    used_part_id, repair_id, product_id, quantity_raw, cost_raw = _pad(raw_row, 5)
    return UsedPartRow(
        used_part_id=str(used_part_id),
        repair_id=str(repair_id),
        product_id=str(product_id),
        quantity=int(quantity_raw or 0),
        cost_at_time=to_decimal(cost_raw, COST_QUANTUM),
    )


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _header_map(sheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _pad(raw_row: Sequence[object], width: int) -> tuple:
    # openpyxl trims trailing empty cells on some sheets
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


def _optional_text(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
