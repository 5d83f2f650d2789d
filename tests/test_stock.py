"""Unit tests for basket normalisation and stock validation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from shop_ledger import data_manager, stock
from shop_ledger.constants import ErrorKind
from shop_ledger.exceptions import (
    DuplicateLineItemError,
    EmptyBasketError,
    InsufficientStockError,
    MissingReferenceError,
)


def _products(**quantities: int) -> dict[str, data_manager.ProductRow]:
    return {
        product_id: data_manager.ProductRow(
            product_id=product_id,
            product_name=f"Item {product_id}",
            sale_price=Decimal("1.00"),
            quantity=quantity,
            average_cost=Decimal("0.5000"),
        )
        for product_id, quantity in quantities.items()
    }


def test_build_basket_accepts_pairs_and_lines():
    basket = stock.build_basket([("P1", 2), stock.BasketLine("P2", 1)])
    assert basket == (stock.BasketLine("P1", 2), stock.BasketLine("P2", 1))


@pytest.mark.parametrize("entry", [("P1",), "P1", ("", 1), ("P1", 0), ("P1", 2.5)])
def test_build_basket_rejects_malformed_entries(entry):
    with pytest.raises(ValueError):
        stock.build_basket([entry])


def test_validate_basket_shape_rejects_empty_basket():
    with pytest.raises(EmptyBasketError) as excinfo:
        stock.validate_basket_shape(())
    assert excinfo.value.kind is ErrorKind.EMPTY_BASKET


def test_validate_basket_shape_reports_every_duplicate():
    """Duplicates are rejected, not merged."""

    basket = stock.build_basket([("P1", 1), ("P2", 1), ("P1", 3), ("P2", 2), ("P3", 1)])
    with pytest.raises(DuplicateLineItemError) as excinfo:
        stock.validate_basket_shape(basket)
    assert set(excinfo.value.product_ids) == {"P1", "P2"}


def test_load_basket_products_names_missing_product(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(MissingReferenceError) as excinfo:
        stock.load_basket_products(workbook, stock.build_basket([("GHOST", 1)]))
    assert excinfo.value.identifier == "GHOST"
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


def test_validate_stock_passes_when_covered():
    stock.validate_stock(_products(P1=5, P2=1), stock.build_basket([("P1", 5), ("P2", 1)]))


def test_validate_stock_collects_all_shortages():
    """Every short line is reported at once with available and requested amounts."""

    products = _products(P1=1, P2=10, P3=0)
    basket = stock.build_basket([("P1", 2), ("P2", 3), ("P3", 4)])

    with pytest.raises(InsufficientStockError) as excinfo:
        stock.validate_stock(products, basket)

    shortages = {item.product_id: (item.available, item.requested) for item in excinfo.value.shortages}
    assert shortages == {"P1": (1, 2), "P3": (0, 4)}
    assert "Item P1" in str(excinfo.value)
