"""Branch-scoped order identifier sequencing.

Each (branch, order kind) pair owns a counter row in the ``Sequences`` sheet.
The counter is the source of truth: it only ever moves forward, so numbers of
voided or deleted orders are never handed out again. Allocation holds a
per-key lock and writes the counter with compare-and-swap, which keeps two
concurrent submissions for the same branch from receiving the same number.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from . import log
from .constants import (
    BRANCH_WORK_ORDER_START,
    DEFAULT_SALES_ORDER_START,
    DEFAULT_WORK_ORDER_START,
    WORK_ORDER_PREFIX,
    OrderKind,
    SheetName,
)
from .data_manager import RecordStore
from .errors import ConcurrencyConflictError, ValidationError

SEQUENCES_SHEET = SheetName.SEQUENCES.value

ORDER_TABLES = {
    OrderKind.WORK_ORDER: (SheetName.WORK_ORDERS.value, "WorkOrderID"),
    OrderKind.SALES_ORDER: (SheetName.SALES_ORDERS.value, "SalesOrderID"),
}

_WORK_ORDER_PATTERN = re.compile(r"^(?P<prefix>[A-Z]+)\((?P<branch>[^)]+)\)-(?P<number>\d+)-\d{2}-\d{2}$")
_TRAILING_NUMBER = re.compile(r"(\d+)$")


@dataclass(frozen=True)
class OrderIdentifier:
    """An allocated order number together with its display form."""

    branch: str
    kind: OrderKind
    number: int
    fiscal_year: str

    def __str__(self) -> str:
        if self.kind is OrderKind.WORK_ORDER:
            return f"{WORK_ORDER_PREFIX}({self.branch})-{self.number}-{self.fiscal_year}"
        return str(self.number)


def fiscal_year(today: date) -> str:
    """Indian fiscal year (April to March) as ``YY-YY``."""
    start = today.year if today.month >= 4 else today.year - 1
    return f"{start % 100:02d}-{(start + 1) % 100:02d}"


def parse_order_number(identifier: object) -> Optional[int]:
    """Extract the order number from a stored identifier.

    Work order ids carry the number before the fiscal-year suffix; sales
    order ids are the number itself. Unparseable values yield ``None``.
    """
    if identifier is None:
        return None
    if isinstance(identifier, int):
        return identifier
    text = str(identifier).strip()
    match = _WORK_ORDER_PATTERN.match(text)
    if match:
        return int(match.group("number"))
    match = _TRAILING_NUMBER.search(text)
    return int(match.group(1)) if match else None


def default_start(branch: str, kind: OrderKind) -> int:
    if kind is OrderKind.WORK_ORDER:
        return BRANCH_WORK_ORDER_START.get(branch, DEFAULT_WORK_ORDER_START)
    return DEFAULT_SALES_ORDER_START


def highest_existing_number(store: RecordStore, branch: str, kind: OrderKind) -> Optional[int]:
    """Highest order number already persisted for ``branch`` and ``kind``."""
    table, id_column = ORDER_TABLES[kind]
    latest = store.find_latest(table, {"Branch": branch}, order_by="Number")
    if latest is None:
        return None
    number = latest.get("Number")
    if number is not None:
        return int(number)
    return parse_order_number(latest.get(id_column))


def allocate_order_identifier(
    store: RecordStore,
    branch: str,
    kind: OrderKind,
    *,
    today: Optional[date] = None,
) -> OrderIdentifier:
    """Reserve the next order number for ``branch``.

    Args:
        store (RecordStore): Store holding the ``Sequences`` counters and the
            order sheets.
        branch (str): Branch code such as ``"NTA"``.
        kind (OrderKind): Work order or sales order sequence.
        today (date | None): Date used for the fiscal-year suffix.

    Returns:
        OrderIdentifier: The reserved number, already recorded in the counter.

    Raises:
        ValidationError: If ``branch`` is blank.
        ConcurrencyConflictError: If the counter moved between read and write.
    """
    if not branch:
        raise ValidationError("Branch is required to allocate an order identifier")
    kind = OrderKind(kind)
    today = today or date.today()
    key = {"Branch": branch, "Kind": kind.value}

    with store.key_lock("sequence", branch, kind.value):
        counter = store.find(SEQUENCES_SHEET, key)
        stored_last = counter[0].get("LastNumber") if counter else None
        candidates = [default_start(branch, kind) - 1]
        if stored_last is not None:
            candidates.append(int(stored_last))
        existing = highest_existing_number(store, branch, kind)
        if existing is not None:
            candidates.append(existing)
        number = max(candidates) + 1

        if not store.compare_and_set(SEQUENCES_SHEET, key, "LastNumber", stored_last, number):
            log.warning("Sequence counter for %s/%s moved during allocation", branch, kind.value)
            raise ConcurrencyConflictError(f"Order sequence for branch '{branch}' changed concurrently")

    identifier = OrderIdentifier(branch=branch, kind=kind, number=number, fiscal_year=fiscal_year(today))
    log.info("Allocated %s identifier '%s'", kind.value, identifier)
    return identifier


def next_order_id(store: RecordStore, branch: str, kind: OrderKind, *, today: Optional[date] = None) -> str:
    """Allocate the next identifier and return its display form."""
    return str(allocate_order_identifier(store, branch, kind, today=today))


__all__ = [
    "OrderIdentifier",
    "fiscal_year",
    "parse_order_number",
    "default_start",
    "highest_existing_number",
    "allocate_order_identifier",
    "next_order_id",
]
