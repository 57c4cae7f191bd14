"""Utility for initializing the inventory ledger workbook.

The module doubles as a script (``python -m inventory_ledger.setup_excel``)
and as a library used by tests or other tooling, so the workbook bootstrap
stays identical regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from .constants import SheetName

# Column order is relied upon by the data_manager (de)serializers.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductName",
        "ProductCode",
        "Status",
        "StockQuantity",
        "OpeningStock",
    ],
    SheetName.USERS.value: [
        "UserID",
        "UserName",
    ],
    SheetName.MOVEMENTS.value: [
        "MovementID",
        "ProductID",
        "Kind",
        "Quantity",
        "Reason",
        "OccurredOn",
        "RecordedAt",
        "ActorID",
        "Note",
        "Status",
        "VoidedAt",
        "VoidedBy",
        "VoidReason",
    ],
}

DEFAULT_WORKBOOK_NAME = "ledger_workbook.xlsx"


def create_ledger_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty ledger workbook with bold headers on every sheet.

    Args:
        destination (Path): Where the ``.xlsx`` file should be written.
        overwrite (bool): Replace an existing file instead of failing.

    Returns:
        Path: The resolved destination path.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Workbook already exists: {destination}")

    wb = openpyxl.Workbook()
    if "Sheet" in wb.sheetnames:
        del wb["Sheet"]

    bold_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        ws = wb.create_sheet(title=sheet_name)
        for col_idx, column_name in enumerate(columns, 1):
            cell = ws.cell(row=1, column=col_idx)
            cell.value = column_name
            cell.font = bold_font

    destination.parent.mkdir(parents=True, exist_ok=True)
    wb.save(destination)
    return destination


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create an empty inventory ledger workbook.")
    parser.add_argument("destination", nargs="?", default=DEFAULT_WORKBOOK_NAME, type=Path)
    parser.add_argument("--overwrite", action="store_true")
    args = parser.parse_args(argv)

    try:
        path = create_ledger_workbook(args.destination, overwrite=args.overwrite)
    except FileExistsError as exc:
        print(f"Error: {exc}. Pass --overwrite to re-initialize.", file=sys.stderr)
        return 1

    print(f"Created ledger workbook at '{path}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
