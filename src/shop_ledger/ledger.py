"""Product ledger: the weighted-average cost formula and stock transitions.

The two transitions here are pure. They take a product snapshot and return a
new one; persisting the result is the caller's job and must happen inside the
same unit of work that produced the snapshot.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import ROUND_HALF_EVEN, Decimal

from . import log
from .constants import COST_QUANTUM, ZERO
from .data_manager import ProductRow
from .exceptions import InsufficientStockError, StockShortage


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive whole number.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is zero or negative.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not a whole number", quantity)
        raise ValueError("Quantity must be a whole number")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is a nonnegative ``Decimal``.

    Raises:
        ValueError: If ``amount`` is not a finite ``Decimal`` or is negative.
    """

    if not isinstance(amount, Decimal) or not amount.is_finite():
        log.error("Monetary value validation failed: %r is not a finite Decimal", amount)
        raise ValueError("Amount must be a finite Decimal")
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def weighted_average_cost(
    on_hand: int,
    average_cost: Decimal,
    added: int,
    unit_cost: Decimal,
) -> Decimal:
    """Blend the cost of ``added`` units into the cost of ``on_hand`` units.

    Returns ``average_cost`` unchanged when the combined quantity is zero. The
    result is rounded half-even to :data:`~shop_ledger.constants.COST_QUANTUM`.
    """

    combined = on_hand + added
    if combined <= 0:
        return average_cost
    blended = (on_hand * average_cost + added * unit_cost) / combined
    return blended.quantize(COST_QUANTUM, rounding=ROUND_HALF_EVEN)


def apply_purchase(product: ProductRow, quantity: int, cost_per_unit: Decimal) -> ProductRow:
    """Return ``product`` after receiving ``quantity`` units at ``cost_per_unit``.

    The new average uses the pre-purchase quantity and cost:
    ``(q * avg + qty * cost) / (q + qty)``.

    Raises:
        ValueError: If ``quantity`` is not positive or ``cost_per_unit`` is
            negative.
    """

    require_positive_quantity(quantity)
    require_nonnegative_money(cost_per_unit)

    new_average = weighted_average_cost(product.quantity, product.average_cost, quantity, cost_per_unit)
    return replace(product, quantity=product.quantity + quantity, average_cost=new_average)


def apply_consumption(product: ProductRow, quantity: int) -> ProductRow:
    """Return ``product`` after ``quantity`` units left stock.

    Consumption never changes the average cost of what remains.

    Raises:
        ValueError: If ``quantity`` is not positive.
        InsufficientStockError: If ``quantity`` exceeds the on-hand amount.
    """

    require_positive_quantity(quantity)
    if quantity > product.quantity:
        log.error(
            "Consumption of %s units rejected for product '%s' (on hand %s)",
            quantity,
            product.product_id,
            product.quantity,
        )
        raise InsufficientStockError(
            [StockShortage(product.product_id, product.product_name, product.quantity, quantity)]
        )
    return replace(product, quantity=product.quantity - quantity)


def line_total(quantity: int, unit_amount: Decimal) -> Decimal:
    """Extend a unit amount over a line; exact, no rounding."""

    return quantity * unit_amount
