"""Stock reservation validator for sale and repair baskets.

A basket is an ordered collection of :class:`BasketLine` values, one per
distinct product. Shape checks (emptiness, duplicates) and the sufficiency
check run against product rows loaded inside the caller's unit of work, so the
answer cannot go stale before the matching decrement is written.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import (
    DuplicateLineItemError,
    EmptyBasketError,
    InsufficientStockError,
    MissingReferenceError,
    StockShortage,
)
from .ledger import require_positive_quantity


@dataclass(frozen=True)
class BasketLine:
    """One requested ``(product, quantity)`` pair."""

    product_id: str
    quantity: int


BasketInput = Union[BasketLine, Tuple[str, int]]


def build_basket(lines: Iterable[BasketInput]) -> Tuple[BasketLine, ...]:
    """Normalize caller input into basket lines and check each quantity.

    Accepts :class:`BasketLine` instances or ``(product_id, quantity)`` pairs.
    Emptiness and duplicates are deliberately not checked here; see
    :func:`validate_basket_shape`.

    Raises:
        ValueError: If an entry is malformed or a quantity is not a positive
            whole number.
    """

    basket = []
    for entry in lines:
        if isinstance(entry, BasketLine):
            line = entry
        else:
            try:
                product_id, quantity = entry
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Malformed basket entry: {entry!r}") from exc
            line = BasketLine(product_id=str(product_id), quantity=quantity)
        if not line.product_id:
            raise ValueError("Basket entry is missing a product id")
        require_positive_quantity(line.quantity)
        basket.append(line)
    return tuple(basket)


def validate_basket_shape(basket: Sequence[BasketLine]) -> None:
    """Reject empty baskets and baskets naming a product twice.

    Duplicates are not merged; every repeated id is reported.

    Raises:
        EmptyBasketError: If ``basket`` has no lines.
        DuplicateLineItemError: If any product id appears more than once.
    """

    if not basket:
        log.error("Rejected empty basket")
        raise EmptyBasketError("At least one line item is required")

    counts = Counter(line.product_id for line in basket)
    duplicates = [product_id for product_id, count in counts.items() if count > 1]
    if duplicates:
        log.error("Rejected basket with duplicate products: %s", ", ".join(duplicates))
        raise DuplicateLineItemError(duplicates)


def load_basket_products(workbook: Workbook, basket: Sequence[BasketLine]) -> Dict[str, data_manager.ProductRow]:
    """Read the current row of every product named in ``basket``.

    Raises:
        MissingReferenceError: Naming the first basket product id that has no
            row in the workbook.
    """

    wanted = {line.product_id for line in basket}
    products = {
        product.product_id: product
        for product in data_manager.iter_products(workbook)
        if product.product_id in wanted
    }
    for line in basket:
        if line.product_id not in products:
            log.warning("Product lookup failed for id '%s'", line.product_id)
            raise MissingReferenceError("product", line.product_id)
    return products


def validate_stock(products: Mapping[str, data_manager.ProductRow], basket: Sequence[BasketLine]) -> None:
    """Require ``on hand >= requested`` for every basket line.

    Every failing line is collected before raising so the caller sees the
    whole picture at once.

    Raises:
        InsufficientStockError: Listing each short line with its available and
            requested amounts.
    """

    shortages = []
    for line in basket:
        product = products[line.product_id]
        if product.quantity < line.quantity:
            shortages.append(
                StockShortage(
                    product_id=product.product_id,
                    product_name=product.product_name,
                    available=product.quantity,
                    requested=line.quantity,
                )
            )
    if shortages:
        log.error(
            "Stock validation failed for %d line(s): %s",
            len(shortages),
            ", ".join(f"{item.product_id} ({item.available}<{item.requested})" for item in shortages),
        )
        raise InsufficientStockError(shortages)
