"""Order pricing and loyalty settlement.

Every function here is pure: the caller hands in an explicit settlement value
object and receives an immutable result. Money is carried as
:class:`~decimal.Decimal` throughout and rounded to paise only once, when the
result is assembled, so the subtract-and-cap chain never accumulates binary
floating point drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence

from . import log
from .constants import (
    CGST_RATE,
    GST_INCLUSIVE_DIVISOR,
    LOYALTY_ACCRUAL_RATE,
    MONEY_QUANTUM,
    SGST_RATE,
    ZERO,
)
from .errors import ValidationError


@dataclass(frozen=True)
class LineItem:
    """One product line of an order, priced at its tax-inclusive MRP."""

    product_id: str
    unit_price_gross_of_tax: Decimal
    quantity: int
    hsn_code: str = ""
    product_name: str = ""

    @property
    def exclusive_unit_price(self) -> Decimal:
        return self.unit_price_gross_of_tax / GST_INCLUSIVE_DIVISOR

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "LineItem":
        """Build a line item from a JSON-style mapping.

        Prices are expected as strings (or anything :class:`Decimal` accepts)
        so currency never passes through a binary float.

        Raises:
            ValidationError: If a field is missing or cannot be converted.
        """
        try:
            product_id = str(raw["product_id"])
            price = to_decimal(raw["price"])
            quantity = int(raw["quantity"])
        except KeyError as exc:
            raise ValidationError(f"Line item is missing field {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed line item {dict(raw)!r}: {exc}") from exc
        return cls(
            product_id=product_id,
            unit_price_gross_of_tax=price,
            quantity=quantity,
            hsn_code=str(raw.get("hsn_code") or ""),
            product_name=str(raw.get("product_name") or ""),
        )

    def to_mapping(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "price": str(self.unit_price_gross_of_tax),
            "quantity": self.quantity,
            "hsn_code": self.hsn_code,
        }


@dataclass(frozen=True)
class LoyaltyAccount:
    """Read-only snapshot of a privilege card taken before settlement."""

    card_number: str
    current_points: int
    customer_name: str = ""
    phone: str = ""


@dataclass(frozen=True)
class SettlementInput:
    """Everything one pricing computation needs, passed explicitly."""

    line_items: Sequence[LineItem]
    advance_paid: Decimal = ZERO
    discount_amount: Decimal = ZERO
    loyalty_account: Optional[LoyaltyAccount] = None
    redeem_requested: Decimal = ZERO


@dataclass(frozen=True)
class PricingResult:
    """Immutable pricing breakdown for one settlement."""

    adjusted_subtotal: Decimal
    advance_paid: Decimal
    discount_applied: Decimal
    privilege_discount_applied: Decimal
    taxable_balance: Decimal
    cgst: Decimal
    sgst: Decimal
    final_amount: Decimal

    @property
    def total_tax(self) -> Decimal:
        return self.cgst + self.sgst


@dataclass(frozen=True)
class LoyaltySettlement:
    """Point movement for one settlement; the caller persists the balance."""

    new_point_balance: int
    points_redeemed: int
    points_accrued: int
    account: Optional[LoyaltyAccount] = field(default=None, compare=False)


def to_decimal(value: Any) -> Decimal:
    """Convert user or storage input into a :class:`Decimal`.

    Floats are routed through ``str`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion. ``None`` and empty strings read as zero.

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {value!r}") from exc


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def validate_settlement_input(settlement: SettlementInput) -> None:
    """Reject inputs that clamping cannot make meaningful.

    Out-of-range *amounts* (a discount bigger than the bill, a redemption
    bigger than the card) are clamped later; only negative values, malformed
    quantities and a redemption without a card are refused here.

    Raises:
        ValidationError: On the first offending field.
    """
    for item in settlement.line_items:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int):
            raise ValidationError(f"Quantity for '{item.product_id}' must be a whole number")
        if item.quantity < 0:
            raise ValidationError(f"Quantity for '{item.product_id}' cannot be negative")
        if item.unit_price_gross_of_tax < ZERO:
            raise ValidationError(f"Price for '{item.product_id}' cannot be negative")
    for label, amount in (
        ("Advance", settlement.advance_paid),
        ("Discount", settlement.discount_amount),
        ("Redemption", settlement.redeem_requested),
    ):
        if amount < ZERO:
            raise ValidationError(f"{label} amount cannot be negative")
    if settlement.redeem_requested > ZERO and settlement.loyalty_account is None:
        raise ValidationError("A privilege card is required to redeem points")
    account = settlement.loyalty_account
    if account is not None and account.current_points < 0:
        raise ValidationError(f"Privilege card '{account.card_number}' has a negative balance")


def adjusted_subtotal(line_items: Sequence[LineItem]) -> Decimal:
    """Sum of tax-exclusive line totals at full precision."""
    return sum(
        (item.exclusive_unit_price * item.quantity for item in line_items),
        ZERO,
    )


def compute_pricing(settlement: SettlementInput) -> PricingResult:
    """Price a cart after advance, discount and privilege redemption.

    The order of operations matters and is fixed:

    1. Strip the 12% GST out of each MRP and total the lines.
    2. Subtract the advance already collected.
    3. Apply the flat discount, capped at whatever balance the advance left.
    4. Redeem privilege points, capped by the request, the card balance and
       the balance the discount left. Nothing is redeemed against a zero or
       negative balance.
    5. Clamp the balance at zero and add 6% CGST plus 6% SGST.

    Args:
        settlement (SettlementInput): Cart and settlement amounts.

    Returns:
        PricingResult: Breakdown rounded half-up to paise.

    Raises:
        ValidationError: If :func:`validate_settlement_input` rejects the input.
    """
    validate_settlement_input(settlement)

    subtotal = adjusted_subtotal(settlement.line_items)
    remaining = subtotal - settlement.advance_paid

    discount_applied = min(settlement.discount_amount, max(remaining, ZERO))
    remaining -= discount_applied

    privilege_applied = ZERO
    account = settlement.loyalty_account
    if account is not None and settlement.redeem_requested > ZERO and remaining > ZERO:
        privilege_applied = min(
            settlement.redeem_requested,
            Decimal(account.current_points),
            remaining,
        )
        remaining -= privilege_applied

    remaining = max(remaining, ZERO)

    taxable = round_money(remaining)
    cgst = round_money(taxable * CGST_RATE)
    sgst = round_money(taxable * SGST_RATE)
    final_amount = max(taxable + cgst + sgst, ZERO)

    result = PricingResult(
        adjusted_subtotal=round_money(subtotal),
        advance_paid=round_money(settlement.advance_paid),
        discount_applied=round_money(discount_applied),
        privilege_discount_applied=round_money(privilege_applied),
        taxable_balance=taxable,
        cgst=cgst,
        sgst=sgst,
        final_amount=final_amount,
    )
    log.debug(
        "Priced %d lines: subtotal=%s discount=%s privilege=%s final=%s",
        len(settlement.line_items),
        result.adjusted_subtotal,
        result.discount_applied,
        result.privilege_discount_applied,
        result.final_amount,
    )
    return result


def settle_loyalty(
    subtotal_excl_tax: Decimal,
    redeem_requested: Decimal,
    account: Optional[LoyaltyAccount],
) -> LoyaltySettlement:
    """Compute the point movement for a settlement.

    Redemption is capped at the card balance; a fractional request rounds up
    to the next whole point. Accrual is 5% of the tax-exclusive subtotal,
    floored, and is granted whenever a card is attached even if nothing was
    redeemed.

    Args:
        subtotal_excl_tax (Decimal): ``PricingResult.adjusted_subtotal``.
        redeem_requested (Decimal): Points the customer wants to spend.
        account (LoyaltyAccount | None): Card snapshot, or ``None`` for a
            walk-in sale.

    Returns:
        LoyaltySettlement: New balance plus redeemed and accrued points. All
            zeros when no card is attached.
    """
    if account is None:
        return LoyaltySettlement(new_point_balance=0, points_redeemed=0, points_accrued=0)
    if redeem_requested < ZERO or subtotal_excl_tax < ZERO:
        raise ValidationError("Loyalty settlement amounts cannot be negative")

    points_redeemed = 0
    if redeem_requested > ZERO:
        requested_points = int(redeem_requested.to_integral_value(rounding=ROUND_CEILING))
        points_redeemed = min(requested_points, account.current_points)

    points_accrued = int((subtotal_excl_tax * LOYALTY_ACCRUAL_RATE).to_integral_value(rounding=ROUND_FLOOR))
    new_balance = account.current_points - points_redeemed + points_accrued
    log.debug(
        "Loyalty for card '%s': redeemed=%d accrued=%d balance=%d",
        account.card_number,
        points_redeemed,
        points_accrued,
        new_balance,
    )
    return LoyaltySettlement(
        new_point_balance=new_balance,
        points_redeemed=points_redeemed,
        points_accrued=points_accrued,
        account=account,
    )


__all__ = [
    "LineItem",
    "LoyaltyAccount",
    "SettlementInput",
    "PricingResult",
    "LoyaltySettlement",
    "to_decimal",
    "round_money",
    "validate_settlement_input",
    "adjusted_subtotal",
    "compute_pricing",
    "settle_loyalty",
]
