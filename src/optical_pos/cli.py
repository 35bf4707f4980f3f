"""Command-line entry points for the optical POS.

This module only wires argparse and translates arguments into the command
objects consumed by the business layer, so the same parser configuration can
be reused by tests, scripts, or another front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, pricing
from .constants import ModificationStatus, OrderKind
from .errors import (
    BusinessRuleViolation,
    ConcurrencyConflictError,
    ExternalStoreError,
    StockInsufficientError,
    ValidationError,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="optical-pos",
        description="Command-line tools for the Optical POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "set-stock": register_set_stock_command(subparsers),
        "issue-card": register_issue_card_command(subparsers),
        "work-order": register_work_order_command(subparsers),
        "modify-work-order": register_modify_work_order_command(subparsers),
        "sale": register_sale_command(subparsers),
        "modify-sale": register_modify_sale_command(subparsers),
        "request-change": register_request_change_command(subparsers),
        "review-request": register_review_request_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "quote": register_quote_command(subparsers),
        "stock": register_stock_command(subparsers),
        "card": register_card_command(subparsers),
        "requests": register_requests_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_item_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        required=True,
        metavar="PRODUCT_ID:QTY",
        help="Product and quantity; repeat for every line.",
    )


def _add_settlement_arguments(parser: argparse.ArgumentParser) -> None:
    _add_item_arguments(parser)
    parser.add_argument("--branch", default=None, help="Branch code (defaults to config).")
    parser.add_argument("--discount", default="0")
    parser.add_argument("--advance", default="0")
    parser.add_argument("--card-number", default=None)
    parser.add_argument("--redeem", default="0", help="Privilege points to redeem.")
    parser.add_argument("--work-order-id", default=None)
    parser.add_argument("--employee", default=None)
    parser.add_argument("--payment-method", default=None)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--mrp", required=True, help="Tax-inclusive retail price.")
        parser.add_argument("--hsn-code", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_set_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-stock``."""
    name = "set-stock"
    help_text = "Set the on-hand quantity of a product at a branch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.add_argument("--branch", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_stock)


def register_issue_card_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``issue-card``."""
    name = "issue-card"
    help_text = "Issue a privilege card."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--card-number", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--phone", required=True)
        parser.add_argument("--points", type=int, default=0)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_issue_card)


def register_work_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``work-order``."""
    name = "work-order"
    help_text = "Book a work order with an advance payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_item_arguments(parser)
        parser.add_argument("--branch", default=None)
        parser.add_argument("--advance", default="0")
        parser.add_argument("--discount", default="0")
        parser.add_argument("--due-date", default=None, help="ISO date, e.g. 2025-04-30.")
        parser.add_argument("--employee", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_work_order)


def register_modify_work_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``modify-work-order``."""
    name = "modify-work-order"
    help_text = "Apply an approved edit to an unbilled work order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("work_order_id")
        _add_item_arguments(parser)
        parser.add_argument("--advance", default=None, help="Replace the stored advance.")
        parser.add_argument("--discount", default="0")
        parser.add_argument("--due-date", default=None, help="ISO date, e.g. 2025-04-30.")
        parser.add_argument("--employee", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_modify_work_order)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Complete a sales order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_settlement_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_modify_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``modify-sale``."""
    name = "modify-sale"
    help_text = "Apply an approved edit to a sales order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sales-order-id", required=True)
        _add_item_arguments(parser)
        parser.add_argument("--discount", default="0")
        parser.add_argument("--redeem", default="0")
        parser.add_argument("--employee", default=None)
        parser.add_argument("--payment-method", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_modify_sale)


def register_request_change_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request-change``."""
    name = "request-change"
    help_text = "Ask an administrator for permission to edit an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument(
            "--order-kind",
            choices=[member.value for member in OrderKind],
            default=OrderKind.SALES_ORDER.value,
        )
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request_change)


def register_review_request_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``review-request``."""
    name = "review-request"
    help_text = "Approve or reject a pending modification request."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--request-id", required=True)
        parser.add_argument("--reviewer", required=True)
        decision = parser.add_mutually_exclusive_group(required=True)
        decision.add_argument("--approve", action="store_true")
        decision.add_argument("--reject", dest="rejection_reason", default=None, metavar="REASON")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_review_request)


def register_quote_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote``."""
    name = "quote"
    help_text = "Price a cart without saving anything."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_settlement_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote, mutates=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock levels for a branch."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--branch", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_card_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``card``."""
    name = "card"
    help_text = "Show a privilege card balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        lookup = parser.add_mutually_exclusive_group(required=True)
        lookup.add_argument("--card-number", default=None)
        lookup.add_argument("--phone", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_card_report, mutates=False)


def register_requests_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``requests``."""
    name = "requests"
    help_text = "List modification requests."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--status",
            choices=[member.value for member in ModificationStatus],
            default=ModificationStatus.PENDING.value,
        )
        parser.add_argument("--branch", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_requests_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_item(raw: str) -> tuple[str, int]:
    """Split ``PRODUCT_ID:QTY`` into its parts."""
    product_id, sep, quantity = raw.rpartition(":")
    if not sep or not product_id:
        raise ValidationError(f"Item '{raw}' must look like PRODUCT_ID:QTY")
    try:
        return product_id, int(quantity)
    except ValueError as exc:
        raise ValidationError(f"Item '{raw}' has a non-integer quantity") from exc


def translate_items(context: core_logic.RuntimeContext, raw_items: Sequence[str]) -> List[pricing.LineItem]:
    """Price CLI items from the catalog."""
    items = []
    for raw in raw_items:
        product_id, quantity = parse_item(raw)
        items.append(core_logic.line_item_for(context, product_id, quantity))
    return items


def _amount(raw: Optional[str]) -> Decimal:
    try:
        return pricing.to_decimal(raw)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _branch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "branch", None) or context.settings.default_branch


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.SalesOrderCommand:
    """Translate CLI args into a sales order command object."""
    return core_logic.SalesOrderCommand(
        branch=_branch(context, args),
        line_items=translate_items(context, args.items),
        discount_amount=_amount(args.discount),
        advance_paid=_amount(args.advance),
        card_number=args.card_number,
        redeem_requested=_amount(args.redeem),
        work_order_id=args.work_order_id,
        employee=args.employee,
        payment_method=args.payment_method,
    )


def translate_modify_sale(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.ModifySalesOrderCommand:
    return core_logic.ModifySalesOrderCommand(
        sales_order_id=args.sales_order_id,
        line_items=translate_items(context, args.items),
        discount_amount=_amount(args.discount),
        redeem_requested=_amount(args.redeem),
        employee=args.employee,
        payment_method=args.payment_method,
    )


def _due_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Due date '{raw}' is not an ISO date") from exc


def translate_work_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.WorkOrderCommand:
    return core_logic.WorkOrderCommand(
        branch=_branch(context, args),
        line_items=translate_items(context, args.items),
        advance_paid=_amount(args.advance),
        discount_amount=_amount(args.discount),
        due_date=_due_date(args.due_date),
        employee=args.employee,
    )


def translate_modify_work_order(
    context: core_logic.RuntimeContext, args: argparse.Namespace
) -> core_logic.ModifyWorkOrderCommand:
    return core_logic.ModifyWorkOrderCommand(
        work_order_id=args.work_order_id,
        line_items=translate_items(context, args.items),
        discount_amount=_amount(args.discount),
        advance_paid=_amount(args.advance) if args.advance is not None else None,
        due_date=_due_date(args.due_date),
        employee=args.employee,
    )


def format_pricing(result: pricing.PricingResult) -> str:
    rows = [
        ("Subtotal (excl. GST)", result.adjusted_subtotal),
        ("Advance", result.advance_paid),
        ("Discount", result.discount_applied),
        ("Privilege discount", result.privilege_discount_applied),
        ("Taxable balance", result.taxable_balance),
        ("CGST 6%", result.cgst),
        ("SGST 6%", result.sgst),
        ("Amount payable", result.final_amount),
    ]
    return "\n".join(f"{label:<22}{value:>12}" for label, value in rows)


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.add_product(
        context,
        product_id=args.product_id,
        product_name=args.product_name,
        mrp=_amount(args.mrp),
        hsn_code=args.hsn_code,
    )
    return 0


def run_set_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.set_stock(context, product_id=args.product_id, branch=_branch(context, args), quantity=args.quantity)
    return 0


def run_issue_card(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.issue_privilege_card(
        context,
        card_number=args.card_number,
        customer_name=args.customer_name,
        phone=args.phone,
        opening_points=args.points,
    )
    return 0


def run_work_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.record_work_order(context, translate_work_order(context, args))
    print(f"Work order {record['WorkOrderID']}: total {record['TotalAmount']}, advance {record['AdvancePaid']}")
    return 0


def run_modify_work_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.modify_work_order(context, translate_modify_work_order(context, args))
    print(f"Work order {args.work_order_id} updated: total {record['TotalAmount']}, advance {record['AdvancePaid']}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.complete_sales_order(context, translate_sale(context, args))
    print(f"Sales order {record['SalesOrderID']}: payable {record['FinalAmount']}")
    return 0


def run_modify_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.modify_sales_order(context, translate_modify_sale(context, args))
    print(f"Sales order {args.sales_order_id} updated: payable {record['FinalAmount']}")
    return 0


def run_request_change(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.raise_modification_request(
        context,
        order_id=args.order_id,
        order_kind=OrderKind(args.order_kind),
        reason=args.reason,
    )
    print(f"Request {record['RequestID']} is pending review")
    return 0


def run_review_request(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.approve:
        core_logic.approve_modification_request(context, args.request_id, reviewer=args.reviewer)
    else:
        core_logic.reject_modification_request(
            context, args.request_id, reviewer=args.reviewer, reason=args.rejection_reason
        )
    return 0


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    quote = core_logic.quote_sales_order(context, translate_sale(context, args))
    print(format_pricing(quote.pricing))
    if quote.loyalty.account is not None:
        print(
            f"Points: redeem {quote.loyalty.points_redeemed}, earn {quote.loyalty.points_accrued}, "
            f"new balance {quote.loyalty.new_point_balance}"
        )
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product_id, quantity in sorted(core_logic.get_stock_levels(context, _branch(context, args)).items()):
        print(f"{product_id:<20}{quantity:>8}")
    return 0


def run_card_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    account = core_logic.find_privilege_card(context, card_number=args.card_number, phone=args.phone)
    print(f"{account.card_number} {account.customer_name}: {account.current_points} points")
    return 0


def run_requests_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    requests = core_logic.list_modification_requests(
        context, status=ModificationStatus(args.status), branch=args.branch
    )
    for request in requests:
        print(f"{request['RequestID']}  {request['OrderID']:<20}{request['Reason']}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, (BusinessRuleViolation, ValidationError)):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, StockInsufficientError):
        return 4
    if isinstance(error, ConcurrencyConflictError):
        return 5
    if isinstance(error, ExternalStoreError):
        return 6
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise ExternalStoreError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
