"""Enumerations shared across the inventory ledger modules.

Centralises domain constants so that the data access layer (DAL), the ledger
engine, the query layer, and the CLI rely on a single source of truth for the
values persisted in the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class MovementKind(str, Enum):
    """Direction of a ledger entry relative to on-hand stock."""

    ENTRY = "ENTRY"
    EXIT = "EXIT"


class MovementReason(str, Enum):
    """Business origin of a ledger entry."""

    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    PURCHASE = "PURCHASE"
    RETURN = "RETURN"


class MovementStatus(str, Enum):
    """Lifecycle state of a ledger entry. ``VOID`` is terminal."""

    ACTIVE = "ACTIVE"
    VOID = "VOID"


class ProductStatus(str, Enum):
    """Availability of a product in the registry."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ErrorKind(str, Enum):
    """Machine-readable identifiers attached to every ledger error."""

    VALIDATION = "VALIDATION"
    MOVEMENT_NOT_FOUND = "MOVEMENT_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    PRODUCT_INACTIVE = "PRODUCT_INACTIVE"
    ALREADY_VOID = "ALREADY_VOID"
    CANNOT_VOID_SALE_ORIGINATED = "CANNOT_VOID_SALE_ORIGINATED"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    WOULD_GO_NEGATIVE = "WOULD_GO_NEGATIVE"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    COMPENSATION_FAILED = "COMPENSATION_FAILED"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    USERS = "Users"
    MOVEMENTS = "Movements"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MovementKind",
    "MovementReason",
    "MovementStatus",
    "ProductStatus",
    "ErrorKind",
    "SheetName",
]
