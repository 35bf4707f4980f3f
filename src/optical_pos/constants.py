"""Enumerations and fixed rates shared across the optical POS modules.

Keeps tax rates, loyalty rates, sheet names and identifier defaults in one
place so the pricing engine, the data layer and the CLI agree on them.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Combined GST rate baked into every MRP, and its even CGST/SGST split.
GST_INCLUSIVE_DIVISOR = Decimal("1.12")
CGST_RATE = Decimal("0.06")
SGST_RATE = Decimal("0.06")

# Loyalty points accrue on the tax-exclusive subtotal; one point redeems one rupee.
LOYALTY_ACCRUAL_RATE = Decimal("0.05")

MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0")


class OrderKind(str, Enum):
    """Enumerate the two order kinds that own identifier sequences."""

    WORK_ORDER = "work_order"
    SALES_ORDER = "sales_order"


class ModificationStatus(str, Enum):
    """Lifecycle states of an order modification request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    STOCK = "Stock"
    PRIVILEGE_CARDS = "PrivilegeCards"
    WORK_ORDERS = "WorkOrders"
    SALES_ORDERS = "SalesOrders"
    MODIFICATION_REQUESTS = "ModificationRequests"
    SEQUENCES = "Sequences"


WORK_ORDER_PREFIX = "WO"

# First work order number handed out per branch when the branch has no history.
BRANCH_WORK_ORDER_START = {
    "TVR": 3742,
    "NTA": 4701,
    "KOT1": 5701,
    "KOT2": 6701,
    "KAT": 7701,
}
DEFAULT_WORK_ORDER_START = 1001
DEFAULT_SALES_ORDER_START = 1


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "GST_INCLUSIVE_DIVISOR",
    "CGST_RATE",
    "SGST_RATE",
    "LOYALTY_ACCRUAL_RATE",
    "MONEY_QUANTUM",
    "ZERO",
    "OrderKind",
    "ModificationStatus",
    "SheetName",
    "WORK_ORDER_PREFIX",
    "BRANCH_WORK_ORDER_START",
    "DEFAULT_WORK_ORDER_START",
    "DEFAULT_SALES_ORDER_START",
]
