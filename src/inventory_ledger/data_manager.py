"""Data access layer for the inventory ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: the product registry (point reads and conditional stock
   writes), the user directory, and the movement store (insert, point update,
   point delete, and full scans).

Every helper here is a single request/response against the workbook. None of
them is safe to call concurrently on the same workbook; callers serialise
access themselves.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import MovementKind, MovementReason, MovementStatus, ProductStatus, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
USERS_SHEET = SheetName.USERS.value
MOVEMENTS_SHEET = SheetName.MOVEMENTS.value

DEFAULT_LOCK_TIMEOUT_SECONDS = 10.0


class StockConflictError(RuntimeError):
    """Raised when a conditional stock write finds an unexpected current value."""

    def __init__(self, product_id: str, expected: Decimal, actual: Decimal) -> None:
        super().__init__(
            f"Stock for product '{product_id}' changed concurrently "
            f"(expected {expected}, found {actual})"
        )
        self.product_id = product_id
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    allow_entry_on_inactive: bool = True
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    product_code: Optional[str]
    status: ProductStatus
    stock_quantity: Decimal
    opening_stock: Decimal

    @property
    def is_active(self) -> bool:
        return self.status is ProductStatus.ACTIVE


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: str
    user_name: str


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``Movements`` sheet.

    ``voided_at``, ``voided_by`` and ``void_reason`` form the structured audit
    record written when the movement is voided; ``note`` only ever holds the
    text entered by the user.
    """

    movement_id: str
    product_id: str
    kind: MovementKind
    quantity: Decimal
    reason: MovementReason
    occurred_on: date
    recorded_at: Optional[datetime]
    actor_id: Optional[str]
    note: Optional[str]
    status: MovementStatus = MovementStatus.ACTIVE
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None
    void_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is MovementStatus.ACTIVE

    @property
    def signed_quantity(self) -> Decimal:
        """Effect of the movement on stock: positive for entries, negative for exits."""
        return self.quantity if self.kind is MovementKind.ENTRY else -self.quantity


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Ledger]`` section is optional
    and falls back to allowing entries on inactive products and a ten second
    lock timeout. Relative ``DataFile`` entries are anchored to ``base_path``
    (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a ``[Ledger]`` option cannot be converted or the lock
            timeout is not positive.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    allow_entry_on_inactive = parser.getboolean("Ledger", "AllowEntryOnInactive", fallback=True)
    lock_timeout = parser.getfloat("Ledger", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    if lock_timeout <= 0:
        raise ValueError(f"LockTimeoutSeconds must be positive, got {lock_timeout}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        allow_entry_on_inactive=allow_entry_on_inactive,
        lock_timeout_seconds=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Product registry
# ---------------------------------------------------------------------------


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def get_product(workbook: Workbook, product_id: str) -> Optional[ProductRow]:
    """Read a single product, or ``None`` when the id is unknown."""

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        return None
    return deserialize_product(_row_values(workbook, PRODUCTS_SHEET, row_index))


def read_stock_quantity(workbook: Workbook, product_id: str) -> Decimal:
    """Return the cached stock aggregate of ``product_id``.

    Raises:
        KeyError: If the product does not exist.
    """

    product = get_product(workbook, product_id)
    if product is None:
        raise KeyError(f"Product not found: {product_id}")
    return product.stock_quantity


def read_product_status(workbook: Workbook, product_id: str) -> ProductStatus:
    """Return the registry status of ``product_id``.

    Raises:
        KeyError: If the product does not exist.
    """

    product = get_product(workbook, product_id)
    if product is None:
        raise KeyError(f"Product not found: {product_id}")
    return product.status


def write_stock_quantity(
    workbook: Workbook,
    product_id: str,
    new_stock: Decimal,
    *,
    expected: Decimal,
) -> None:
    """Conditionally replace the cached stock of ``product_id``.

    The write only happens when the stored value still equals ``expected``,
    which turns every read-modify-write performed by the engine into a
    compare-and-set.

    Raises:
        KeyError: If the product does not exist.
        StockConflictError: If the stored stock differs from ``expected``.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    current = deserialize_product(_row_values(workbook, PRODUCTS_SHEET, row_index)).stock_quantity
    if current != expected:
        log.warning(
            "Conditional stock write rejected for '%s': expected %s, found %s",
            product_id,
            expected,
            current,
        )
        raise StockConflictError(product_id, expected, current)

    _write_cells(workbook, PRODUCTS_SHEET, row_index, {"StockQuantity": _decimal_text(new_stock)})
    log.debug("Stock for '%s' written: %s -> %s", product_id, current, new_stock)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the specified fields are modified, leaving other columns untouched.
    Stock changes go through :func:`write_stock_quantity` instead.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")
    _write_cells(workbook, PRODUCTS_SHEET, row_index, field_values)


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Iterate over the ``Users`` worksheet and yield typed records."""

    sheet = workbook[USERS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_user(raw)


def append_user(workbook: Workbook, record: UserRow) -> None:
    """Append a user record to the ``Users`` worksheet."""

    sheet = workbook[USERS_SHEET]
    sheet.append(serialize_user(record))


# ---------------------------------------------------------------------------
# Movement store
# ---------------------------------------------------------------------------


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Stream movement records from the ``Movements`` worksheet in sheet order."""

    sheet = workbook[MOVEMENTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_movement(raw)


def get_movement(workbook: Workbook, movement_id: str) -> Optional[MovementRow]:
    """Read a single movement, or ``None`` when the id is unknown."""

    row_index = locate_row(workbook, MOVEMENTS_SHEET, "MovementID", movement_id)
    if row_index is None:
        return None
    return deserialize_movement(_row_values(workbook, MOVEMENTS_SHEET, row_index))


def append_movement(workbook: Workbook, record: MovementRow) -> None:
    """Insert a movement record at the end of the ``Movements`` worksheet."""

    sheet = workbook[MOVEMENTS_SHEET]
    sheet.append(serialize_movement(record))


def update_movement(workbook: Workbook, record: MovementRow) -> None:
    """Overwrite the stored row whose ``MovementID`` matches ``record``.

    Raises:
        KeyError: If no row carries ``record.movement_id``.
    """

    row_index = locate_row(workbook, MOVEMENTS_SHEET, "MovementID", record.movement_id)
    if row_index is None:
        raise KeyError(f"Movement not found: {record.movement_id}")

    sheet = workbook[MOVEMENTS_SHEET]
    for col_idx, value in enumerate(serialize_movement(record), start=1):
        sheet.cell(row=row_index, column=col_idx, value=value)


def delete_movement(workbook: Workbook, movement_id: str) -> None:
    """Physically remove a movement row.

    Only used to compensate an insert whose stock effect could not be applied.

    Raises:
        KeyError: If no row carries ``movement_id``.
    """

    row_index = locate_row(workbook, MOVEMENTS_SHEET, "MovementID", movement_id)
    if row_index is None:
        raise KeyError(f"Movement not found: {movement_id}")
    workbook[MOVEMENTS_SHEET].delete_rows(row_index)


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(workbook[sheet_name].iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _header_map(workbook: Workbook, sheet_name: str) -> dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _row_values(workbook: Workbook, sheet_name: str, row_index: int) -> tuple[object, ...]:
    sheet = workbook[sheet_name]
    return next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))


def _write_cells(workbook: Workbook, sheet_name: str, row_index: int, field_values: dict[str, Any]) -> None:
    header_map = _header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _decimal_text(value: Decimal) -> str:
    # Stored as text so Excel never rounds through a float.
    return format(value, "f")


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal value in workbook: {raw!r}") from exc


def _to_date(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _to_datetime(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: ``[ProductID, ProductName, ProductCode, Status,
        StockQuantity, OpeningStock]``.
    """

    return [
        record.product_id,
        record.product_name,
        record.product_code,
        record.status.value,
        _decimal_text(record.stock_quantity),
        _decimal_text(record.opening_stock),
    ]


def serialize_user(record: UserRow) -> list[object]:
    """Convert a user dataclass into ``[UserID, UserName]``."""

    return [record.user_id, record.user_name]


def serialize_movement(record: MovementRow) -> list[object]:
    """Convert a movement dataclass into the movement sheet column order."""

    return [
        record.movement_id,
        record.product_id,
        record.kind.value,
        _decimal_text(record.quantity),
        record.reason.value,
        record.occurred_on.isoformat(),
        record.recorded_at.isoformat() if record.recorded_at is not None else None,
        record.actor_id,
        record.note,
        record.status.value,
        record.voided_at.isoformat() if record.voided_at is not None else None,
        record.voided_by,
        record.void_reason,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifiers are coerced to ``str`` so Excel's number guessing never leaks
    into lookups; quantities become :class:`~decimal.Decimal`.
    """

    product_id, product_name, product_code, status, stock_raw, opening_raw = raw_row[:6]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        product_code=_optional_text(product_code),
        status=ProductStatus(str(status)) if status is not None else ProductStatus.ACTIVE,
        stock_quantity=_to_decimal(stock_raw),
        opening_stock=_to_decimal(opening_raw),
    )


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    """Convert a raw worksheet row into a :class:`UserRow`."""

    user_id, user_name = raw_row[:2]
    return UserRow(user_id=str(user_id), user_name=str(user_name) if user_name is not None else "")


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    """Convert a raw worksheet row into a strongly typed movement record."""

    (
        movement_id,
        product_id,
        kind,
        quantity_raw,
        reason,
        occurred_on,
        recorded_at,
        actor_id,
        note,
        status,
        voided_at,
        voided_by,
        void_reason,
    ) = raw_row[:13]

    return MovementRow(
        movement_id=str(movement_id),
        product_id=str(product_id),
        kind=MovementKind(str(kind)),
        quantity=_to_decimal(quantity_raw),
        reason=MovementReason(str(reason)),
        occurred_on=_to_date(occurred_on),
        recorded_at=_to_datetime(recorded_at),
        actor_id=_optional_text(actor_id),
        note=_optional_text(note),
        status=MovementStatus(str(status)) if status is not None else MovementStatus.ACTIVE,
        voided_at=_to_datetime(voided_at),
        voided_by=_optional_text(voided_by),
        void_reason=_optional_text(void_reason),
    )
