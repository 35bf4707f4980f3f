"""Unit tests for stock reconciliation, validation and compare-and-swap application."""

from __future__ import annotations

from decimal import Decimal

import pytest

from optical_pos import stock
from optical_pos.errors import ConcurrencyConflictError, StockInsufficientError, ValidationError
from optical_pos.pricing import LineItem


def _item(product_id: str, quantity: int) -> LineItem:
    return LineItem(product_id=product_id, unit_price_gross_of_tax=Decimal("100.00"), quantity=quantity)


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


def test_reconcile_returns_and_sells_units():
    """Reducing A and adding B returns two A and draws two B."""

    deltas = stock.reconcile([_item("A", 5)], [_item("A", 3), _item("B", 2)], "NTA")
    assert deltas == [
        stock.StockDelta("A", "NTA", -2),
        stock.StockDelta("B", "NTA", 2),
    ]


def test_reconcile_dropped_product_returns_full_quantity():
    deltas = stock.reconcile([_item("A", 5), _item("B", 1)], [_item("B", 1)], "NTA")
    assert deltas == [stock.StockDelta("A", "NTA", -5)]


def test_reconcile_identical_orders_yield_nothing():
    assert stock.reconcile([_item("A", 2)], [_item("A", 2)], "NTA") == []


def test_reconcile_sums_duplicate_products():
    deltas = stock.reconcile([], [_item("A", 1), _item("A", 2)], "NTA")
    assert deltas == [stock.StockDelta("A", "NTA", 3)]


def test_reconcile_skips_new_zero_quantity_lines():
    assert stock.reconcile([], [_item("A", 0)], "NTA") == []


def test_reconcile_rejects_negative_quantities():
    with pytest.raises(ValidationError):
        stock.reconcile([], [_item("A", -1)], "NTA")


def _shelf(items, products, opening=100):
    """Stock left on the shelf once ``items`` have been sold."""

    levels = {product_id: opening for product_id in products}
    for item in items:
        levels[item.product_id] -= item.quantity
    return levels


@pytest.mark.parametrize(
    "original, updated",
    [
        ([("A", 5)], [("A", 3), ("B", 2)]),
        ([("A", 1), ("A", 2)], [("A", 3)]),
        ([("A", 2)], [("A", 1), ("A", 1), ("A", 4)]),
        ([("A", 4), ("B", 1), ("C", 2)], [("B", 1)]),
        ([("A", 2), ("B", 3)], []),
        ([], [("C", 1), ("D", 0), ("C", 2)]),
        ([("A", 0), ("B", 2)], [("B", 2), ("A", 0)]),
        ([("A", 7), ("B", 1), ("A", 1)], [("B", 6), ("C", 3), ("A", 8)]),
    ],
)
def test_reconcile_conserves_stock(original, updated):
    """Selling the original then applying the deltas leaves the shelf as if the edit had been sold."""

    original_items = [_item(product_id, quantity) for product_id, quantity in original]
    updated_items = [_item(product_id, quantity) for product_id, quantity in updated]
    products = {item.product_id for item in original_items + updated_items}

    shelf = _shelf(original_items, products)
    deltas = stock.reconcile(original_items, updated_items, "NTA")
    for delta in deltas:
        shelf[delta.product_id] -= delta.quantity_change

    assert shelf == _shelf(updated_items, products)
    assert all(delta.quantity_change != 0 for delta in deltas)
    assert len({delta.product_id for delta in deltas}) == len(deltas)


def test_deltas_for_new_order_draw_full_quantity():
    deltas = stock.deltas_for_new_order([_item("A", 2), _item("B", 1)], "KAT")
    assert [(d.product_id, d.quantity_change) for d in deltas] == [("A", 2), ("B", 1)]
    assert all(d.branch_code == "KAT" for d in deltas)


# ---------------------------------------------------------------------------
# Validation and application against the workbook store
# ---------------------------------------------------------------------------


def test_validate_line_items_reports_every_shortage(store):
    store.set_quantity("A", "NTA", 1)
    store.set_quantity("B", "NTA", 0)
    with pytest.raises(StockInsufficientError) as excinfo:
        stock.validate_line_items([_item("A", 2), _item("B", 0)], "NTA", store)
    assert [entry[0] for entry in excinfo.value.shortages] == ["A", "B"]
    assert str(excinfo.value).startswith("Insufficient stock")


def test_validate_deltas_is_all_or_nothing(store):
    store.set_quantity("A", "NTA", 5)
    store.set_quantity("B", "NTA", 1)
    deltas = [stock.StockDelta("A", "NTA", 2), stock.StockDelta("B", "NTA", 3)]
    with pytest.raises(StockInsufficientError):
        stock.validate_deltas(deltas, store)
    assert store.get_quantity("A", "NTA") == 5
    assert store.get_quantity("B", "NTA") == 1


def test_apply_deltas_moves_stock_both_ways(store):
    store.set_quantity("A", "NTA", 5)
    store.set_quantity("B", "NTA", 4)
    deltas = stock.reconcile([_item("A", 5)], [_item("A", 3), _item("B", 2)], "NTA")
    applied = stock.apply_deltas(stock.validate_deltas(deltas, store), store)
    assert len(applied) == 2
    assert store.get_quantity("A", "NTA") == 7
    assert store.get_quantity("B", "NTA") == 2


def test_apply_deltas_reverts_on_concurrent_change(store):
    store.set_quantity("A", "NTA", 5)
    store.set_quantity("B", "NTA", 5)
    validated = stock.validate_deltas(
        [stock.StockDelta("A", "NTA", 1), stock.StockDelta("B", "NTA", 1)],
        store,
    )
    # Another sale takes a unit of B after validation.
    store.set_quantity("B", "NTA", 4)

    with pytest.raises(ConcurrencyConflictError):
        stock.apply_deltas(validated, store)
    assert store.get_quantity("A", "NTA") == 5
    assert store.get_quantity("B", "NTA") == 4


def test_revert_deltas_adds_changes_back(store):
    store.set_quantity("A", "NTA", 3)
    applied = stock.apply_deltas(stock.validate_deltas([stock.StockDelta("A", "NTA", 2)], store), store)
    assert store.get_quantity("A", "NTA") == 1
    stock.revert_deltas(applied, store)
    assert store.get_quantity("A", "NTA") == 3
