"""Enumerations and numeric constants shared across Shop Ledger modules.

Centralises domain constants so that the data access layer (DAL), the costing
engine, and the CLI rely on a single source of truth for sheet names, error
kinds, and currency precision.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Prices, billed totals and sale amounts are kept to the cent.
MONEY_QUANTUM = Decimal("0.01")

# Average costs carry extra places so repeated purchases do not drift.
COST_QUANTUM = Decimal("0.0001")

ZERO = Decimal("0")


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    PURCHASE_RECORDS = "PurchaseRecords"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    REPAIRS = "Repairs"
    USED_PARTS = "UsedParts"


class ErrorKind(str, Enum):
    """Enumerate the failure kinds a caller can match on."""

    NOT_FOUND = "NOT_FOUND"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    EMPTY_BASKET = "EMPTY_BASKET"
    DUPLICATE_LINE_ITEM = "DUPLICATE_LINE_ITEM"
    BUSINESS_RULE = "BUSINESS_RULE"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


class DateRange(str, Enum):
    """Enumerate the history windows offered by listing and analytics reads."""

    TODAY = "today"
    SEVEN_DAYS = "7days"
    ONE_MONTH = "1month"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "COST_QUANTUM",
    "ZERO",
    "SheetName",
    "ErrorKind",
    "DateRange",
]
