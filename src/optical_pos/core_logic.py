"""Business logic layer for the optical POS.

Orchestrates pricing, loyalty settlement, stock reconciliation and identifier
allocation on top of the data access layer. Every order completion runs as a
single :class:`UnitOfWork`: each write registers a compensating action, and
if a later step fails the applied writes are undone in reverse order before
the error propagates. Nothing reaches disk until :func:`persist_context`
saves the workbook, so a failed completion leaves the file untouched.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log, pricing, sequencer, stock
from .constants import EXPECTED_SCHEMA_VERSION, ZERO, ModificationStatus, OrderKind, SheetName
from .errors import (
    BusinessRuleViolation,
    ConcurrencyConflictError,
    ExternalStoreError,
    ValidationError,
)

T = TypeVar("T")

PRODUCTS_SHEET = SheetName.PRODUCTS.value
PRIVILEGE_CARDS_SHEET = SheetName.PRIVILEGE_CARDS.value
WORK_ORDERS_SHEET = SheetName.WORK_ORDERS.value
SALES_ORDERS_SHEET = SheetName.SALES_ORDERS.value
MODIFICATION_REQUESTS_SHEET = SheetName.MODIFICATION_REQUESTS.value
STOCK_SHEET = SheetName.STOCK.value


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, workbook and store used by the business layer."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: Optional[data_manager.WorkbookStore] = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.store is None:
            object.__setattr__(self, "store", data_manager.WorkbookStore(self.workbook))


@dataclass(frozen=True)
class SalesOrderCommand:
    """User intent for completing a new sales order."""

    branch: str
    line_items: Sequence[pricing.LineItem]
    discount_amount: Decimal = ZERO
    advance_paid: Decimal = ZERO
    card_number: Optional[str] = None
    redeem_requested: Decimal = ZERO
    work_order_id: Optional[str] = None
    employee: Optional[str] = None
    payment_method: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ModifySalesOrderCommand:
    """User intent for editing a persisted sales order."""

    sales_order_id: str
    line_items: Sequence[pricing.LineItem]
    discount_amount: Decimal = ZERO
    redeem_requested: Decimal = ZERO
    employee: Optional[str] = None
    payment_method: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class WorkOrderCommand:
    """User intent for booking a made-to-order job with an advance."""

    branch: str
    line_items: Sequence[pricing.LineItem]
    advance_paid: Decimal = ZERO
    discount_amount: Decimal = ZERO
    due_date: Optional[date] = None
    employee: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ModifyWorkOrderCommand:
    """User intent for editing a booked work order. ``None`` keeps the stored value."""

    work_order_id: str
    line_items: Sequence[pricing.LineItem]
    discount_amount: Decimal = ZERO
    advance_paid: Optional[Decimal] = None
    due_date: Optional[date] = None
    employee: Optional[str] = None


@dataclass(frozen=True)
class SalesQuote:
    """Preview of a settlement before anything is written."""

    pricing: pricing.PricingResult
    loyalty: pricing.LoyaltySettlement


class UnitOfWork:
    """Collect compensating actions and run them if the block fails.

    Use as a context manager. Writes register their undo with
    :meth:`on_rollback`; on an exception the undos run newest first and the
    original exception continues to propagate.
    """

    def __init__(self, description: str):
        self.description = description
        self._compensations: List[Tuple[str, Callable[[], Any]]] = []

    def on_rollback(self, label: str, action: Callable[[], Any]) -> None:
        self._compensations.append((label, action))

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self._compensations.clear()
            return False
        log.warning("Rolling back %s after %s: %s", self.description, exc_type.__name__, exc)
        for label, action in reversed(self._compensations):
            try:
                action()
            except Exception:
                log.exception("Compensation '%s' failed while rolling back %s", label, self.description)
        self._compensations.clear()
        return False


def call_with_retry(
    operation: Callable[[], T],
    policy: data_manager.RetrySettings,
    *,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run a store operation under a bounded exponential backoff.

    ``ExternalStoreError`` and transient ``OSError`` failures (a workbook
    locked by another program, a flaky network share) are retried up to
    ``policy.attempts`` times. A missing file is not transient and propagates
    immediately.

    Raises:
        ExternalStoreError: Once every attempt has failed.
    """
    delay = policy.backoff_initial
    for attempt in range(1, policy.attempts + 1):
        try:
            return operation()
        except FileNotFoundError:
            raise
        except (ExternalStoreError, OSError) as exc:
            if attempt >= policy.attempts:
                log.error("%s failed after %d attempts: %s", description, attempt, exc)
                raise ExternalStoreError(f"{description} failed after {attempt} attempts: {exc}") from exc
            wait = min(delay, policy.backoff_max)
            log.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s", description, attempt, policy.attempts, wait, exc)
            sleep(wait)
            delay *= policy.backoff_factor
    raise ExternalStoreError(f"{description} was never attempted")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_request_id(*, prefix: str = "MR", when: Optional[datetime] = None) -> str:
    """Sortable request identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Resolve ``config.ini``, parse settings and open the workbook.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        ExternalStoreError: If the workbook stays unreadable after retries.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = call_with_retry(
        lambda: data_manager.open_workbook(settings.data_file),
        settings.retry,
        description=f"Opening workbook '{settings.data_file}'",
    )
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to run against a workbook whose schema version differs.

    Raises:
        RuntimeError: On mismatch with ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def persist_context(context: RuntimeContext) -> None:
    """Save the workbook to the configured path, retrying transient failures."""
    call_with_retry(
        lambda: data_manager.save_workbook(context.workbook, destination=context.settings.data_file),
        context.settings.retry,
        description=f"Saving workbook '{context.settings.data_file}'",
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, dropping unsaved changes."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Record conversion
# ---------------------------------------------------------------------------


def serialize_items(items: Sequence[pricing.LineItem]) -> str:
    return json.dumps([item.to_mapping() for item in items])


def deserialize_items(raw: Optional[str]) -> List[pricing.LineItem]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ExternalStoreError(f"Stored line items are not valid JSON: {exc}") from exc
    return [pricing.LineItem.from_mapping(entry) for entry in payload]


def _money(value: Decimal) -> str:
    return str(value)


def _account_from_record(record: Dict[str, Any]) -> pricing.LoyaltyAccount:
    return pricing.LoyaltyAccount(
        card_number=str(record["CardNumber"]),
        current_points=int(record.get("LoyaltyPoints") or 0),
        customer_name=str(record.get("CustomerName") or ""),
        phone=str(record.get("Phone") or ""),
    )


def _require_line_items(items: Sequence[pricing.LineItem]) -> None:
    if not any(item.quantity > 0 for item in items):
        raise ValidationError("An order needs at least one product with a positive quantity")


# ---------------------------------------------------------------------------
# Catalog, stock and privilege cards
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    mrp: Decimal,
    hsn_code: str = "",
) -> Dict[str, Any]:
    """Register a product in the catalog.

    Raises:
        BusinessRuleViolation: If the product id is already registered.
        ValidationError: If the MRP is negative.
    """
    if mrp < ZERO:
        raise ValidationError("MRP cannot be negative")
    if context.store.find(PRODUCTS_SHEET, {"ProductID": product_id}):
        raise BusinessRuleViolation(f"Product '{product_id}' already exists")
    record = context.store.insert(
        PRODUCTS_SHEET,
        {"ProductID": product_id, "ProductName": product_name, "MRP": _money(mrp), "HSNCode": hsn_code},
    )
    log.info("Added product '%s' (%s) at MRP %s", product_id, product_name, mrp)
    return record


def get_product(context: RuntimeContext, product_id: str) -> Dict[str, Any]:
    return data_manager.require_record(context.store, PRODUCTS_SHEET, {"ProductID": product_id})


def line_item_for(context: RuntimeContext, product_id: str, quantity: int) -> pricing.LineItem:
    """Build a cart line from the catalog's current MRP and HSN code."""
    product = get_product(context, product_id)
    return pricing.LineItem(
        product_id=product_id,
        unit_price_gross_of_tax=pricing.to_decimal(product.get("MRP")),
        quantity=quantity,
        hsn_code=str(product.get("HSNCode") or ""),
        product_name=str(product.get("ProductName") or ""),
    )


def set_stock(context: RuntimeContext, *, product_id: str, branch: str, quantity: int) -> None:
    """Overwrite the on-hand quantity for a product at a branch."""
    if quantity < 0:
        raise ValidationError("Stock quantity cannot be negative")
    get_product(context, product_id)
    with context.store.key_lock("stock", product_id, branch):
        context.store.set_quantity(product_id, branch, quantity)
    log.info("Set stock for '%s' at '%s' to %d", product_id, branch, quantity)


def get_stock_levels(context: RuntimeContext, branch: str) -> Dict[str, int]:
    """Return ``ProductID -> Quantity`` for one branch."""
    return {
        str(record["ProductID"]): int(record.get("Quantity") or 0)
        for record in context.store.find(STOCK_SHEET, {"BranchCode": branch})
    }


def issue_privilege_card(
    context: RuntimeContext,
    *,
    card_number: str,
    customer_name: str,
    phone: str,
    opening_points: int = 0,
) -> pricing.LoyaltyAccount:
    """Create a privilege card.

    Raises:
        BusinessRuleViolation: If the card number or phone is already in use.
    """
    if opening_points < 0:
        raise ValidationError("Opening points cannot be negative")
    if context.store.find(PRIVILEGE_CARDS_SHEET, {"CardNumber": card_number}):
        raise BusinessRuleViolation(f"Privilege card '{card_number}' already exists")
    if context.store.find(PRIVILEGE_CARDS_SHEET, {"Phone": phone}):
        raise BusinessRuleViolation(f"Phone '{phone}' already holds a privilege card")
    record = context.store.insert(
        PRIVILEGE_CARDS_SHEET,
        {"CardNumber": card_number, "CustomerName": customer_name, "Phone": phone, "LoyaltyPoints": opening_points},
    )
    log.info("Issued privilege card '%s' to '%s'", card_number, customer_name)
    return _account_from_record(record)


def find_privilege_card(
    context: RuntimeContext,
    *,
    card_number: Optional[str] = None,
    phone: Optional[str] = None,
) -> pricing.LoyaltyAccount:
    """Look up a privilege card by card number or registered phone.

    Raises:
        ValidationError: If neither key is supplied.
        MissingReferenceError: If no card matches.
    """
    if card_number:
        filters = {"CardNumber": card_number}
    elif phone:
        filters = {"Phone": phone}
    else:
        raise ValidationError("Provide a card number or phone to look up a privilege card")
    record = data_manager.require_record(context.store, PRIVILEGE_CARDS_SHEET, filters)
    return _account_from_record(record)


def _write_loyalty_balance(
    context: RuntimeContext,
    uow: UnitOfWork,
    card_number: str,
    expected_points: int,
    new_points: int,
) -> None:
    filters = {"CardNumber": card_number}
    if not context.store.compare_and_set(PRIVILEGE_CARDS_SHEET, filters, "LoyaltyPoints", expected_points, new_points):
        raise ConcurrencyConflictError(f"Loyalty balance for card '{card_number}' changed during settlement")
    uow.on_rollback(
        f"restore points on '{card_number}'",
        lambda: context.store.update(PRIVILEGE_CARDS_SHEET, filters, {"LoyaltyPoints": expected_points}),
    )


def _apply_stock(context: RuntimeContext, uow: UnitOfWork, validated: Sequence[stock.ValidatedDelta]) -> None:
    applied = stock.apply_deltas(validated, context.store)
    uow.on_rollback("revert stock deltas", lambda: stock.revert_deltas(applied, context.store))


# ---------------------------------------------------------------------------
# Work orders
# ---------------------------------------------------------------------------


def get_work_order(context: RuntimeContext, work_order_id: str) -> Dict[str, Any]:
    return data_manager.require_record(context.store, WORK_ORDERS_SHEET, {"WorkOrderID": work_order_id})


def _price_work_order(
    line_items: Sequence[pricing.LineItem], discount_amount: Decimal, advance_paid: Decimal
) -> pricing.PricingResult:
    result = pricing.compute_pricing(pricing.SettlementInput(line_items=line_items, discount_amount=discount_amount))
    if advance_paid < ZERO:
        raise ValidationError("Advance amount cannot be negative")
    if advance_paid > result.final_amount:
        raise ValidationError(f"Advance {advance_paid} exceeds the work order total {result.final_amount}")
    return result


def record_work_order(context: RuntimeContext, command: WorkOrderCommand) -> Dict[str, Any]:
    """Price and book a work order.

    Work orders carry no loyalty settlement and do not move stock; the stock
    is drawn when the sales order that fulfils the job is completed. The
    stored total is the full post-discount amount including GST, and the
    advance collected is kept alongside it for the later sale.

    Raises:
        ValidationError: For empty carts or negative amounts.
    """
    _require_line_items(command.line_items)
    if not command.branch:
        raise ValidationError("Branch is required")
    result = _price_work_order(command.line_items, command.discount_amount, command.advance_paid)
    timestamp = _resolve_timestamp(command.timestamp)

    identifier = sequencer.allocate_order_identifier(
        context.store, command.branch, OrderKind.WORK_ORDER, today=timestamp.date()
    )
    record = context.store.insert(
        WORK_ORDERS_SHEET,
        {
            "WorkOrderID": str(identifier),
            "Number": identifier.number,
            "Branch": command.branch,
            "Items": serialize_items(command.line_items),
            "AdvancePaid": _money(command.advance_paid),
            "Subtotal": _money(result.adjusted_subtotal),
            "Discount": _money(result.discount_applied),
            "CGST": _money(result.cgst),
            "SGST": _money(result.sgst),
            "TotalAmount": _money(result.final_amount),
            "DueDate": command.due_date.isoformat() if command.due_date else None,
            "Employee": command.employee,
            "IsUsed": False,
            "CreatedAt": timestamp.isoformat(),
        },
    )
    log.info("Recorded work order '%s' (total=%s, advance=%s)", identifier, result.final_amount, command.advance_paid)
    return record


def modify_work_order(context: RuntimeContext, command: ModifyWorkOrderCommand) -> Dict[str, Any]:
    """Apply an approved edit to a work order that has not been billed yet.

    The job is re-priced from the edited items and discount. The stored
    advance is kept unless a new one is given, and it must still fit within
    the new total. Work orders hold no stock, so nothing moves. The approved
    modification request is marked completed inside the same unit of work.

    Raises:
        MissingReferenceError: Unknown work order.
        BusinessRuleViolation: No approved request, or the job is already billed.
        ValidationError: Empty cart, negative amounts or an advance above the total.
        ConcurrencyConflictError: The request changed mid-flight.
    """
    _require_line_items(command.line_items)
    order = get_work_order(context, command.work_order_id)
    request = _approved_request_for(context, command.work_order_id, OrderKind.WORK_ORDER)
    if order.get("IsUsed"):
        raise BusinessRuleViolation(f"Work order '{command.work_order_id}' has already been billed")
    advance = command.advance_paid if command.advance_paid is not None else pricing.to_decimal(order.get("AdvancePaid"))
    result = _price_work_order(command.line_items, command.discount_amount, advance)

    order_filters = {"WorkOrderID": command.work_order_id}
    patch = {
        "Items": serialize_items(command.line_items),
        "AdvancePaid": _money(advance),
        "Subtotal": _money(result.adjusted_subtotal),
        "Discount": _money(result.discount_applied),
        "CGST": _money(result.cgst),
        "SGST": _money(result.sgst),
        "TotalAmount": _money(result.final_amount),
        "DueDate": command.due_date.isoformat() if command.due_date else order.get("DueDate"),
        "Employee": command.employee or order.get("Employee"),
    }
    previous = {column: order.get(column) for column in patch}

    with UnitOfWork(f"edit of work order '{command.work_order_id}'") as uow:
        updated = context.store.update(WORK_ORDERS_SHEET, order_filters, patch)
        uow.on_rollback(
            f"restore work order '{command.work_order_id}'",
            lambda: context.store.update(WORK_ORDERS_SHEET, order_filters, previous),
        )
        _transition_request(context, uow, request, ModificationStatus.COMPLETED)

    log.info("Modified work order '%s' (total=%s, advance=%s)", command.work_order_id, result.final_amount, advance)
    return updated


# ---------------------------------------------------------------------------
# Sales orders
# ---------------------------------------------------------------------------


def _resolve_advance(context: RuntimeContext, command: SalesOrderCommand) -> Tuple[Decimal, Optional[Dict[str, Any]]]:
    if not command.work_order_id:
        return command.advance_paid, None
    work_order = get_work_order(context, command.work_order_id)
    if work_order.get("IsUsed"):
        raise BusinessRuleViolation(f"Work order '{command.work_order_id}' has already been billed")
    if str(work_order.get("Branch")) != command.branch:
        raise BusinessRuleViolation(
            f"Work order '{command.work_order_id}' belongs to branch '{work_order.get('Branch')}'"
        )
    return pricing.to_decimal(work_order.get("AdvancePaid")), work_order


def quote_sales_order(context: RuntimeContext, command: SalesOrderCommand) -> SalesQuote:
    """Price a prospective sale and preview its point movement. Read only."""
    advance, _ = _resolve_advance(context, command)
    account = find_privilege_card(context, card_number=command.card_number) if command.card_number else None
    result = pricing.compute_pricing(
        pricing.SettlementInput(
            line_items=command.line_items,
            advance_paid=advance,
            discount_amount=command.discount_amount,
            loyalty_account=account,
            redeem_requested=command.redeem_requested,
        )
    )
    loyalty = pricing.settle_loyalty(result.adjusted_subtotal, command.redeem_requested, account)
    return SalesQuote(pricing=result, loyalty=loyalty)


def complete_sales_order(context: RuntimeContext, command: SalesOrderCommand) -> Dict[str, Any]:
    """Settle and record a new sales order as one unit of work.

    Steps: validate the cart against branch stock, price it, settle loyalty,
    validate stock deltas for the whole order, then write the new point
    balance, apply stock, allocate the order number, insert the order and,
    when the sale fulfils a work order, mark that work order used. Any
    failure after the first write undoes every earlier write.

    Points redeemed are the requested redemption capped at the card balance,
    independent of how much of it the bill could absorb as a discount.

    Returns:
        dict[str, Any]: The inserted ``SalesOrders`` row.

    Raises:
        ValidationError: Bad input, including a redemption without a card.
        MissingReferenceError: Unknown card or work order.
        BusinessRuleViolation: Work order already billed or from another branch.
        StockInsufficientError: Any line exceeds branch stock.
        ConcurrencyConflictError: Stock, points or sequence changed mid-flight.
    """
    _require_line_items(command.line_items)
    if not command.branch:
        raise ValidationError("Branch is required")
    quote = quote_sales_order(context, command)
    result, loyalty = quote.pricing, quote.loyalty
    account = loyalty.account

    stock.validate_line_items(command.line_items, command.branch, context.store)
    validated = stock.validate_deltas(stock.deltas_for_new_order(command.line_items, command.branch), context.store)
    timestamp = _resolve_timestamp(command.timestamp)

    with UnitOfWork(f"sales order for branch '{command.branch}'") as uow:
        if account is not None:
            _write_loyalty_balance(context, uow, account.card_number, account.current_points, loyalty.new_point_balance)
        _apply_stock(context, uow, validated)
        identifier = sequencer.allocate_order_identifier(
            context.store, command.branch, OrderKind.SALES_ORDER, today=timestamp.date()
        )
        record = context.store.insert(
            SALES_ORDERS_SHEET,
            {
                "SalesOrderID": str(identifier),
                "Number": identifier.number,
                "Branch": command.branch,
                "WorkOrderID": command.work_order_id,
                "Items": serialize_items(command.line_items),
                "AdvancePaid": _money(result.advance_paid),
                "Subtotal": _money(result.adjusted_subtotal),
                "Discount": _money(result.discount_applied),
                "PrivilegeDiscount": _money(result.privilege_discount_applied),
                "CGST": _money(result.cgst),
                "SGST": _money(result.sgst),
                "FinalAmount": _money(result.final_amount),
                "CardNumber": account.card_number if account else None,
                "PointsRedeemed": loyalty.points_redeemed,
                "PointsAdded": loyalty.points_accrued,
                "Employee": command.employee,
                "PaymentMethod": command.payment_method,
                "UpdatedAt": timestamp.isoformat(),
            },
        )
        uow.on_rollback(
            f"delete sales order '{identifier}'",
            lambda: context.store.delete(SALES_ORDERS_SHEET, {"SalesOrderID": str(identifier)}),
        )
        if command.work_order_id:
            wo_filters = {"WorkOrderID": command.work_order_id}
            if not context.store.compare_and_set(WORK_ORDERS_SHEET, wo_filters, "IsUsed", False, True):
                raise ConcurrencyConflictError(f"Work order '{command.work_order_id}' was billed concurrently")
            uow.on_rollback(
                f"release work order '{command.work_order_id}'",
                lambda: context.store.update(WORK_ORDERS_SHEET, wo_filters, {"IsUsed": False}),
            )

    log.info(
        "Completed sales order '%s' at '%s' (final=%s, redeemed=%d, accrued=%d)",
        identifier,
        command.branch,
        result.final_amount,
        loyalty.points_redeemed,
        loyalty.points_accrued,
    )
    return record


def get_sales_order(context: RuntimeContext, sales_order_id: str) -> Dict[str, Any]:
    return data_manager.require_record(context.store, SALES_ORDERS_SHEET, {"SalesOrderID": sales_order_id})


def modify_sales_order(context: RuntimeContext, command: ModifySalesOrderCommand) -> Dict[str, Any]:
    """Apply an approved edit to a persisted sales order.

    The stored items are diffed against the edited items and only the
    difference moves stock. Loyalty is re-settled from the balance the card
    would hold without this order (its earlier redemption refunded and its
    earlier accrual withdrawn), so editing never double counts points. The
    approved modification request is marked completed inside the same unit
    of work.

    Raises:
        MissingReferenceError: Unknown order.
        BusinessRuleViolation: No approved modification request exists, or the
            edit would take back points the card has already spent.
        StockInsufficientError: An increase exceeds branch stock.
        ConcurrencyConflictError: Stock or points changed mid-flight.
    """
    _require_line_items(command.line_items)
    order = get_sales_order(context, command.sales_order_id)
    request = _approved_request_for(context, command.sales_order_id, OrderKind.SALES_ORDER)
    branch = str(order["Branch"])
    original_items = deserialize_items(order.get("Items"))

    account = None
    stored_points = 0
    baseline = 0
    card_number = order.get("CardNumber")
    if card_number:
        stored = find_privilege_card(context, card_number=str(card_number))
        stored_points = stored.current_points
        # May be negative when the points this order earned were already spent.
        baseline = stored_points + int(order.get("PointsRedeemed") or 0) - int(order.get("PointsAdded") or 0)
        account = pricing.LoyaltyAccount(
            card_number=stored.card_number,
            current_points=max(baseline, 0),
            customer_name=stored.customer_name,
            phone=stored.phone,
        )

    result = pricing.compute_pricing(
        pricing.SettlementInput(
            line_items=command.line_items,
            advance_paid=pricing.to_decimal(order.get("AdvancePaid")),
            discount_amount=command.discount_amount,
            loyalty_account=account,
            redeem_requested=command.redeem_requested,
        )
    )
    loyalty = pricing.settle_loyalty(result.adjusted_subtotal, command.redeem_requested, account)
    new_balance = baseline - loyalty.points_redeemed + loyalty.points_accrued
    if account is not None and new_balance < 0:
        raise BusinessRuleViolation(
            f"Edit would leave card '{account.card_number}' at {new_balance} points; its earlier accrual was spent"
        )
    deltas = stock.reconcile(original_items, command.line_items, branch)
    validated = stock.validate_deltas(deltas, context.store)
    timestamp = _resolve_timestamp(command.timestamp)

    order_filters = {"SalesOrderID": command.sales_order_id}
    patch = {
        "Items": serialize_items(command.line_items),
        "Subtotal": _money(result.adjusted_subtotal),
        "Discount": _money(result.discount_applied),
        "PrivilegeDiscount": _money(result.privilege_discount_applied),
        "CGST": _money(result.cgst),
        "SGST": _money(result.sgst),
        "FinalAmount": _money(result.final_amount),
        "PointsRedeemed": loyalty.points_redeemed,
        "PointsAdded": loyalty.points_accrued,
        "Employee": command.employee or order.get("Employee"),
        "PaymentMethod": command.payment_method or order.get("PaymentMethod"),
        "UpdatedAt": timestamp.isoformat(),
    }
    previous = {column: order.get(column) for column in patch}

    with UnitOfWork(f"edit of sales order '{command.sales_order_id}'") as uow:
        if account is not None:
            _write_loyalty_balance(context, uow, account.card_number, stored_points, new_balance)
        _apply_stock(context, uow, validated)
        updated = context.store.update(SALES_ORDERS_SHEET, order_filters, patch)
        uow.on_rollback(
            f"restore sales order '{command.sales_order_id}'",
            lambda: context.store.update(SALES_ORDERS_SHEET, order_filters, previous),
        )
        _transition_request(context, uow, request, ModificationStatus.COMPLETED)

    log.info(
        "Modified sales order '%s' (%d stock deltas, final=%s)",
        command.sales_order_id,
        len(deltas),
        result.final_amount,
    )
    return updated


# ---------------------------------------------------------------------------
# Modification requests
# ---------------------------------------------------------------------------


def raise_modification_request(
    context: RuntimeContext,
    *,
    order_id: str,
    order_kind: OrderKind,
    reason: str,
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Open a pending request to edit a persisted order.

    Raises:
        MissingReferenceError: If the order does not exist.
        BusinessRuleViolation: If an open request already exists for it.
        ValidationError: If no reason is given.
    """
    order_kind = OrderKind(order_kind)
    if not reason or not reason.strip():
        raise ValidationError("A reason is required for a modification request")
    table, id_column = sequencer.ORDER_TABLES[order_kind]
    order = data_manager.require_record(context.store, table, {id_column: order_id})
    for status in (ModificationStatus.PENDING, ModificationStatus.APPROVED):
        if context.store.find(MODIFICATION_REQUESTS_SHEET, {"OrderID": order_id, "Status": status.value}):
            raise BusinessRuleViolation(f"Order '{order_id}' already has a {status.value} modification request")
    when = _resolve_timestamp(timestamp)
    record = context.store.insert(
        MODIFICATION_REQUESTS_SHEET,
        {
            "RequestID": generate_request_id(when=when),
            "OrderID": order_id,
            "OrderKind": order_kind.value,
            "Branch": order.get("Branch"),
            "Reason": reason.strip(),
            "Status": ModificationStatus.PENDING.value,
            "CreatedAt": when.isoformat(),
        },
    )
    log.info("Raised modification request '%s' for order '%s'", record["RequestID"], order_id)
    return record


def list_modification_requests(
    context: RuntimeContext,
    *,
    status: Optional[ModificationStatus] = None,
    branch: Optional[str] = None,
) -> List[Dict[str, Any]]:
    filters: Dict[str, Any] = {}
    if status is not None:
        filters["Status"] = ModificationStatus(status).value
    if branch:
        filters["Branch"] = branch
    return context.store.find(MODIFICATION_REQUESTS_SHEET, filters)


def _get_request(context: RuntimeContext, request_id: str) -> Dict[str, Any]:
    return data_manager.require_record(context.store, MODIFICATION_REQUESTS_SHEET, {"RequestID": request_id})


def _approved_request_for(context: RuntimeContext, order_id: str, order_kind: OrderKind) -> Dict[str, Any]:
    matches = context.store.find(
        MODIFICATION_REQUESTS_SHEET,
        {"OrderID": order_id, "OrderKind": order_kind.value, "Status": ModificationStatus.APPROVED.value},
    )
    if not matches:
        log.warning("Edit attempted on order '%s' without an approved request", order_id)
        raise BusinessRuleViolation(f"Order '{order_id}' has no approved modification request")
    return matches[0]


def _transition_request(
    context: RuntimeContext,
    uow: Optional[UnitOfWork],
    request: Dict[str, Any],
    target: ModificationStatus,
    **extra: Any,
) -> Dict[str, Any]:
    filters = {"RequestID": request["RequestID"]}
    current = request.get("Status")
    if not context.store.compare_and_set(MODIFICATION_REQUESTS_SHEET, filters, "Status", current, target.value):
        raise ConcurrencyConflictError(f"Modification request '{request['RequestID']}' changed concurrently")
    if uow is not None:
        uow.on_rollback(
            f"restore request '{request['RequestID']}'",
            lambda: context.store.update(MODIFICATION_REQUESTS_SHEET, filters, {"Status": current}),
        )
    if extra:
        context.store.update(MODIFICATION_REQUESTS_SHEET, filters, extra)
    return context.store.find(MODIFICATION_REQUESTS_SHEET, filters)[0]


def approve_modification_request(context: RuntimeContext, request_id: str, *, reviewer: str) -> Dict[str, Any]:
    """Approve a pending request so the order may be edited."""
    request = _get_request(context, request_id)
    if request.get("Status") != ModificationStatus.PENDING.value:
        raise BusinessRuleViolation(f"Request '{request_id}' is {request.get('Status')}, not pending")
    record = _transition_request(context, None, request, ModificationStatus.APPROVED, Reviewer=reviewer)
    log.info("Request '%s' approved by '%s'", request_id, reviewer)
    return record


def reject_modification_request(
    context: RuntimeContext,
    request_id: str,
    *,
    reviewer: str,
    reason: str,
) -> Dict[str, Any]:
    """Reject a pending request with a reason."""
    if not reason or not reason.strip():
        raise ValidationError("A rejection reason is required")
    request = _get_request(context, request_id)
    if request.get("Status") != ModificationStatus.PENDING.value:
        raise BusinessRuleViolation(f"Request '{request_id}' is {request.get('Status')}, not pending")
    record = _transition_request(
        context,
        None,
        request,
        ModificationStatus.REJECTED,
        Reviewer=reviewer,
        RejectionReason=reason.strip(),
    )
    log.info("Request '%s' rejected by '%s'", request_id, reviewer)
    return record


__all__ = [
    "RuntimeContext",
    "SalesOrderCommand",
    "ModifySalesOrderCommand",
    "WorkOrderCommand",
    "ModifyWorkOrderCommand",
    "SalesQuote",
    "UnitOfWork",
    "call_with_retry",
    "generate_request_id",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "serialize_items",
    "deserialize_items",
    "add_product",
    "get_product",
    "line_item_for",
    "set_stock",
    "get_stock_levels",
    "issue_privilege_card",
    "find_privilege_card",
    "get_work_order",
    "record_work_order",
    "modify_work_order",
    "quote_sales_order",
    "complete_sales_order",
    "get_sales_order",
    "modify_sales_order",
    "raise_modification_request",
    "list_modification_requests",
    "approve_modification_request",
    "reject_modification_request",
]
