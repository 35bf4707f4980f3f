"""Utility for initializing the optical POS master workbook.

Runs as a script (``python -m optical_pos.setup_workbook``) and doubles as a
library for tests and tooling, so the bootstrap stays identical on every path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .constants import SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: ["ProductID", "ProductName", "MRP", "HSNCode"],
    SheetName.STOCK.value: ["ProductID", "BranchCode", "Quantity"],
    SheetName.PRIVILEGE_CARDS.value: ["CardNumber", "CustomerName", "Phone", "LoyaltyPoints"],
    SheetName.WORK_ORDERS.value: [
        "WorkOrderID",
        "Number",
        "Branch",
        "Items",
        "AdvancePaid",
        "Subtotal",
        "Discount",
        "CGST",
        "SGST",
        "TotalAmount",
        "DueDate",
        "Employee",
        "IsUsed",
        "CreatedAt",
    ],
    SheetName.SALES_ORDERS.value: [
        "SalesOrderID",
        "Number",
        "Branch",
        "WorkOrderID",
        "Items",
        "AdvancePaid",
        "Subtotal",
        "Discount",
        "PrivilegeDiscount",
        "CGST",
        "SGST",
        "FinalAmount",
        "CardNumber",
        "PointsRedeemed",
        "PointsAdded",
        "Employee",
        "PaymentMethod",
        "UpdatedAt",
    ],
    SheetName.MODIFICATION_REQUESTS.value: [
        "RequestID",
        "OrderID",
        "OrderKind",
        "Branch",
        "Reason",
        "Status",
        "Reviewer",
        "RejectionReason",
        "CreatedAt",
    ],
    SheetName.SEQUENCES.value: ["Branch", "Kind", "LastNumber"],
}

CONFIG_FILE = "config.ini"


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination`` with bold header rows.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the optical POS data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Optical POS Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
