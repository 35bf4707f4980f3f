"""Stock reconciliation for new and edited orders.

The diff step is pure. Validation reads current stock for every delta before
anything is written, and application goes through compare-and-swap so a
concurrent sale of the same product cannot silently overdraw a branch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from . import log
from .data_manager import StockStore
from .errors import ConcurrencyConflictError, StockInsufficientError, ValidationError
from .pricing import LineItem


@dataclass(frozen=True)
class StockDelta:
    """Signed stock movement for one product at one branch.

    A positive ``quantity_change`` means stock must decrease (more was sold),
    a negative one means units go back on the shelf.
    """

    product_id: str
    branch_code: str
    quantity_change: int


@dataclass(frozen=True)
class ValidatedDelta:
    """A delta paired with the stock level it was validated against."""

    delta: StockDelta
    current_quantity: int
    new_quantity: int


def aggregate_quantities(items: Iterable[LineItem]) -> Dict[str, int]:
    """Map each product id to its total quantity.

    Duplicate rows for the same product are summed so every unit on the
    order is accounted for in stock.
    """
    totals: Dict[str, int] = {}
    for item in items:
        if item.quantity < 0:
            raise ValidationError(f"Quantity for '{item.product_id}' cannot be negative")
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


def reconcile(
    original: Sequence[LineItem],
    updated: Sequence[LineItem],
    branch_code: str,
) -> List[StockDelta]:
    """Diff an order's stored items against its edited items.

    Products in ``original`` yield ``updated - original`` when that differs
    from zero (a product dropped from the order returns its full quantity).
    Products only in ``updated`` yield their whole quantity. Output order
    follows first appearance: original products first, then new ones.

    Args:
        original (Sequence[LineItem]): Items as last persisted.
        updated (Sequence[LineItem]): Items after the edit.
        branch_code (str): Branch whose stock the order draws from.

    Returns:
        list[StockDelta]: One entry per product whose stock must move.
    """
    original_map = aggregate_quantities(original)
    updated_map = aggregate_quantities(updated)

    deltas: List[StockDelta] = []
    for product_id, original_qty in original_map.items():
        diff = updated_map.get(product_id, 0) - original_qty
        if diff != 0:
            deltas.append(StockDelta(product_id, branch_code, diff))
    for product_id, updated_qty in updated_map.items():
        if product_id not in original_map and updated_qty != 0:
            deltas.append(StockDelta(product_id, branch_code, updated_qty))

    log.debug("Reconciled %d original and %d updated lines into %d deltas", len(original), len(updated), len(deltas))
    return deltas


def deltas_for_new_order(items: Sequence[LineItem], branch_code: str) -> List[StockDelta]:
    """Every line of a brand-new order draws its full quantity."""
    return reconcile([], items, branch_code)


def validate_line_items(items: Sequence[LineItem], branch_code: str, stock_store: StockStore) -> None:
    """Reject lines that the branch cannot currently fulfil.

    A line whose product has no stock at all is refused even when its
    quantity is zero, and no line may ask for more than is on hand.

    Raises:
        StockInsufficientError: Listing every offending product.
    """
    shortages = []
    for product_id, requested in aggregate_quantities(items).items():
        available = stock_store.get_quantity(product_id, branch_code)
        if available <= 0 or requested > available:
            shortages.append((product_id, branch_code, available, requested))
    if shortages:
        log.warning("Rejected cart for branch '%s': %s", branch_code, shortages)
        raise StockInsufficientError(shortages)


def validate_deltas(deltas: Sequence[StockDelta], stock_store: StockStore) -> List[ValidatedDelta]:
    """Check that every delta leaves stock at zero or above.

    The check covers the whole order before anything is written: either all
    deltas validate or the call raises and nothing has been touched.

    Args:
        deltas (Sequence[StockDelta]): Output of :func:`reconcile`.
        stock_store (StockStore): Source of current stock levels.

    Returns:
        list[ValidatedDelta]: Deltas with the levels they were checked against,
            ready for :func:`apply_deltas`.

    Raises:
        StockInsufficientError: If any resulting level would be negative.
    """
    validated: List[ValidatedDelta] = []
    shortages = []
    for delta in deltas:
        current = stock_store.get_quantity(delta.product_id, delta.branch_code)
        new_quantity = current - delta.quantity_change
        if new_quantity < 0:
            shortages.append((delta.product_id, delta.branch_code, current, delta.quantity_change))
            continue
        validated.append(ValidatedDelta(delta, current, new_quantity))
    if shortages:
        log.warning("Stock validation failed: %s", shortages)
        raise StockInsufficientError(shortages)
    return validated


def apply_deltas(validated: Sequence[ValidatedDelta], stock_store: StockStore) -> List[ValidatedDelta]:
    """Write validated stock levels with compare-and-swap.

    If any row changed since validation, rows already written by this call
    are put back and :class:`ConcurrencyConflictError` is raised so the
    caller can restart the settlement from a fresh read.

    Returns:
        list[ValidatedDelta]: The applied entries, for later compensation.
    """
    applied: List[ValidatedDelta] = []
    for entry in validated:
        delta = entry.delta
        swapped = stock_store.compare_and_set_quantity(
            delta.product_id,
            delta.branch_code,
            expected=entry.current_quantity,
            new=entry.new_quantity,
        )
        if not swapped:
            revert_deltas(applied, stock_store)
            log.warning(
                "Concurrent stock change for '%s' at '%s'; reverted %d rows",
                delta.product_id,
                delta.branch_code,
                len(applied),
            )
            raise ConcurrencyConflictError(
                f"Stock for '{delta.product_id}' at '{delta.branch_code}' changed during settlement"
            )
        applied.append(entry)
    log.info("Applied %d stock deltas", len(applied))
    return applied


def revert_deltas(applied: Sequence[ValidatedDelta], stock_store: StockStore) -> None:
    """Undo applied deltas in reverse order by adding each change back."""
    for entry in reversed(applied):
        delta = entry.delta
        stock_store.adjust_quantity(delta.product_id, delta.branch_code, delta.quantity_change)


__all__ = [
    "StockDelta",
    "ValidatedDelta",
    "aggregate_quantities",
    "reconcile",
    "deltas_for_new_order",
    "validate_line_items",
    "validate_deltas",
    "apply_deltas",
    "revert_deltas",
]
