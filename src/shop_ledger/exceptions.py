"""Failure taxonomy for the costing and order engine.

Every rejected operation surfaces as one of the classes below. Validation
failures derive from :class:`BusinessRuleViolation` and are raised before any
write; :class:`ConflictError` and :class:`InternalError` are raised after the
unit of work has been rolled back. Callers match on the class or on
``kind``; the message text is for humans only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from .constants import ErrorKind


class ShopLedgerError(Exception):
    """Base class for every error raised by the engine."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False


class BusinessRuleViolation(ShopLedgerError):
    """Raised when a requested operation violates a domain constraint."""

    kind = ErrorKind.BUSINESS_RULE


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, sale, or repair is unknown."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"Unknown {entity} id: {identifier}")
        self.entity = entity
        self.identifier = identifier


class EmptyBasketError(BusinessRuleViolation):
    """Raised when a sale or repair lists no line items."""

    kind = ErrorKind.EMPTY_BASKET


class DuplicateLineItemError(BusinessRuleViolation):
    """Raised when a basket names the same product more than once."""

    kind = ErrorKind.DUPLICATE_LINE_ITEM

    def __init__(self, product_ids: Sequence[str]) -> None:
        joined = ", ".join(product_ids)
        super().__init__(f"Basket lists products more than once: {joined}")
        self.product_ids = tuple(product_ids)


@dataclass(frozen=True)
class StockShortage:
    """One basket line that asked for more units than are on hand."""

    product_id: str
    product_name: str
    available: int
    requested: int


class InsufficientStockError(BusinessRuleViolation):
    """Raised when one or more basket lines exceed the on-hand quantity.

    All failing lines are reported together in ``shortages``.
    """

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, shortages: Iterable[StockShortage]) -> None:
        self.shortages = tuple(shortages)
        details = "; ".join(
            f"{item.product_name} ({item.product_id}): available {item.available}, requested {item.requested}"
            for item in self.shortages
        )
        super().__init__(f"Insufficient stock: {details}")


class ConflictError(ShopLedgerError):
    """Raised when a concurrent writer prevented the unit of work from committing.

    Nothing was written; the whole operation may be retried from the start.
    """

    kind = ErrorKind.CONFLICT
    retryable = True


class InternalError(ShopLedgerError):
    """Raised when persistence failed mid-operation and everything was rolled back."""

    kind = ErrorKind.INTERNAL
    retryable = True


__all__ = [
    "ShopLedgerError",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "EmptyBasketError",
    "DuplicateLineItemError",
    "StockShortage",
    "InsufficientStockError",
    "ConflictError",
    "InternalError",
]
