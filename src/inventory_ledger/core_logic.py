"""Business logic layer for the inventory ledger.

This module is the ledger engine: it validates and orchestrates movement
creation, amendment, and voiding, computes the stock deltas, and keeps each
product's cached ``stock_quantity`` consistent with the ACTIVE movements
recorded against it. It consumes the Data Access Layer (DAL) for all I/O.

Every operation follows the same shape:

1. validate the request and the referenced rows (nothing is written yet),
2. hold the per-product locks for every product whose stock will change,
3. run the writes as a :class:`Saga`, each write registering the action that
   undoes it, so a failure half-way through is compensated before the error
   reaches the caller.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, queries
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    ErrorKind,
    MovementKind,
    MovementReason,
    MovementStatus,
    ProductStatus,
)
from .locking import ProductLocks


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LedgerError(Exception):
    """Base class of every error raised by the ledger engine.

    ``kind`` is a machine-readable :class:`ErrorKind` so callers can branch on
    the failure without parsing messages.
    """

    kind: ErrorKind = ErrorKind.VALIDATION


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint.

    Business rule violations are always detected before anything is written.
    """


class InvalidMovementError(BusinessRuleViolation, ValueError):
    """Raised when a command carries missing or malformed values."""

    kind = ErrorKind.VALIDATION


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or movement is unknown."""


class MovementNotFoundError(MissingReferenceError):
    kind = ErrorKind.MOVEMENT_NOT_FOUND


class ProductNotFoundError(MissingReferenceError):
    kind = ErrorKind.PRODUCT_NOT_FOUND


class DuplicateReferenceError(BusinessRuleViolation):
    kind = ErrorKind.DUPLICATE_REFERENCE


class ProductInactiveError(BusinessRuleViolation):
    kind = ErrorKind.PRODUCT_INACTIVE


class AlreadyVoidError(BusinessRuleViolation):
    kind = ErrorKind.ALREADY_VOID


class SaleOriginatedError(BusinessRuleViolation):
    """Raised when a SALE movement is amended or voided directly.

    Sale movements are only neutralised by cancelling the originating sale.
    """

    kind = ErrorKind.CANNOT_VOID_SALE_ORIGINATED


class InsufficientStockError(BusinessRuleViolation):
    """Raised when an exit or amendment would take stock below zero."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, product_id: str, available: Decimal, requested: Decimal) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': available {available}, requested {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class WouldGoNegativeError(BusinessRuleViolation):
    """Raised when voiding a movement would leave negative stock."""

    kind = ErrorKind.WOULD_GO_NEGATIVE

    def __init__(self, product_id: str, current: Decimal, resulting: Decimal) -> None:
        super().__init__(
            f"Voiding would leave product '{product_id}' with negative stock "
            f"({resulting}); current stock is {current}"
        )
        self.product_id = product_id
        self.current = current
        self.resulting = resulting


class LockTimeoutError(LedgerError, TimeoutError):
    """Raised when product locks could not be acquired. Nothing was written."""

    kind = ErrorKind.LOCK_TIMEOUT


class PartialWriteError(LedgerError):
    """A dependent write failed after an earlier one succeeded.

    The earlier writes were compensated, so the operation did not take effect.
    The original failure is available as ``cause`` and ``__cause__``.
    """

    kind = ErrorKind.PARTIAL_FAILURE

    def __init__(self, operation: str, subject: str, cause: BaseException) -> None:
        super().__init__(f"{operation} of '{subject}' failed and was rolled back: {cause}")
        self.operation = operation
        self.subject = subject
        self.cause = cause


class CompensationFailedError(LedgerError):
    """A compensating action failed: ledger and stock may now disagree.

    Operators must reconcile manually. ``failures`` lists the compensations
    that could not be applied with the exception each one raised.
    """

    kind = ErrorKind.COMPENSATION_FAILED

    def __init__(
        self,
        operation: str,
        subject: str,
        cause: BaseException,
        failures: List[Tuple[str, BaseException]],
    ) -> None:
        steps = "; ".join(f"{description}: {exc}" for description, exc in failures)
        super().__init__(
            f"{operation} of '{subject}' failed ({cause}) and could not be rolled back "
            f"({steps}). Manual stock reconciliation required."
        )
        self.operation = operation
        self.subject = subject
        self.cause = cause
        self.failures = failures


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook, and the shared locks.

    ``storage_lock`` serialises individual workbook calls; ``locks`` serialises
    whole stock read-modify-write sequences per product. One context may be
    shared by several threads.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    locks: ProductLocks = field(default_factory=ProductLocks, repr=False, compare=False)
    storage_lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the engine.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context whose lock registry honours the configured
            ``LockTimeoutSeconds``.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        locks=ProductLocks(timeout=settings.lock_timeout_seconds),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
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

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with context.storage_lock:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The lock registry and the storage lock are carried over so threads still
    holding either keep excluding each other.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        locks=context.locks,
        storage_lock=context.storage_lock,
    )


def _store_call(context: RuntimeContext, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run one DAL call against the context workbook under the storage lock."""
    with context.storage_lock:
        return func(context.workbook, *args, **kwargs)


@contextmanager
def _hold_products(context: RuntimeContext, *product_ids: str) -> Iterator[None]:
    try:
        acquired = context.locks.acquire(*product_ids)
    except TimeoutError as exc:
        raise LockTimeoutError(str(exc)) from exc
    try:
        yield
    finally:
        context.locks.release(acquired)


@contextmanager
def _lock_movement(context: RuntimeContext, movement_id: str, *extra_product_ids: str) -> Iterator[data_manager.MovementRow]:
    """Hold the lock of a movement's product and yield the movement as re-read under it.

    A concurrent amendment may move the movement to another product between
    the unlocked read and the lock acquisition; in that case the locks are
    released and the sequence starts over.
    """
    while True:
        movement = _load_movement(context, movement_id)
        with _hold_products(context, movement.product_id, *extra_product_ids):
            current = _load_movement(context, movement_id)
            if current.product_id == movement.product_id:
                yield current
                return
        log.debug("Movement '%s' changed product while waiting for its lock; retrying", movement_id)


# ---------------------------------------------------------------------------
# Saga
# ---------------------------------------------------------------------------


class Saga:
    """Sequence of writes where each completed write knows how to undo itself.

    Used as a context manager. When the block raises after at least one step
    completed, the registered compensations run newest first, then:

    * a :class:`BusinessRuleViolation` is re-raised unchanged,
    * any other failure is wrapped in :class:`PartialWriteError`,
    * a failing compensation turns the outcome into
      :class:`CompensationFailedError`.
    """

    def __init__(self, operation: str, subject: str) -> None:
        self.operation = operation
        self.subject = subject
        self._compensations: List[Tuple[str, Callable[[], Any]]] = []

    def step(self, description: str, action: Callable[[], Any], compensate: Optional[Callable[[], Any]] = None) -> Any:
        result = action()
        log.debug("%s '%s': %s done", self.operation, self.subject, description)
        if compensate is not None:
            self._compensations.append((description, compensate))
        return result

    def __enter__(self) -> "Saga":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None or not self._compensations:
            return False

        log.warning("%s '%s' failed (%s); compensating", self.operation, self.subject, exc)
        failures = self._compensate()
        if failures:
            log.critical(
                "%s '%s' left ledger and stock inconsistent; manual reconciliation required",
                self.operation,
                self.subject,
            )
            raise CompensationFailedError(self.operation, self.subject, exc, failures) from exc
        if isinstance(exc, BusinessRuleViolation):
            return False
        raise PartialWriteError(self.operation, self.subject, exc) from exc

    def _compensate(self) -> List[Tuple[str, BaseException]]:
        failures: List[Tuple[str, BaseException]] = []
        while self._compensations:
            description, undo = self._compensations.pop()
            try:
                undo()
            except Exception as undo_exc:
                log.critical("Compensation '%s' for %s '%s' failed: %s", description, self.operation, self.subject, undo_exc)
                failures.append((description, undo_exc))
            else:
                log.warning("Compensated '%s' for %s '%s'", description, self.operation, self.subject)
        return failures


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateMovementCommand:
    """User intent for recording a new movement."""

    product_id: str
    kind: MovementKind
    quantity: Decimal
    reason: MovementReason
    occurred_on: Optional[date] = None
    actor_id: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class AmendMovementCommand:
    """User intent for amending an ACTIVE movement. ``None`` leaves a field unchanged."""

    movement_id: str
    product_id: Optional[str] = None
    kind: Optional[MovementKind] = None
    quantity: Optional[Decimal] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class VoidMovementCommand:
    """User intent for voiding an ACTIVE movement."""

    movement_id: str
    voided_by: Optional[str] = None
    void_reason: Optional[str] = None
    timestamp: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _resolve_occurred_on(candidate: Optional[date]) -> date:
    # Business date is the caller's local calendar day.
    return candidate if candidate is not None else date.today()


def require_positive_quantity(quantity: Any) -> Decimal:
    """Validate that a quantity is a strictly positive decimal.

    Raises:
        InvalidMovementError: If ``quantity`` is missing, not a number, or not
            greater than zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, (Decimal, int)):
        log.error("Quantity validation failed: %r is not a decimal", quantity)
        raise InvalidMovementError(f"Quantity must be a decimal number, got {quantity!r}")
    quantity = Decimal(quantity)
    if not quantity.is_finite() or quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise InvalidMovementError("Quantity must be greater than zero")
    return quantity


def _require_enum(value: Any, enum_type: type, label: str) -> Any:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError as exc:
        log.error("Unsupported %s provided: %s", label, value)
        raise InvalidMovementError(f"Unsupported {label}: {value!r}") from exc


def _require_identifier(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidMovementError(f"{label} is required")
    return value


def _load_movement(context: RuntimeContext, movement_id: str) -> data_manager.MovementRow:
    movement = _store_call(context, data_manager.get_movement, movement_id)
    if movement is None:
        log.warning("Movement lookup failed for id '%s'", movement_id)
        raise MovementNotFoundError(f"Unknown movement id: {movement_id}")
    return movement


def _load_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    product = _store_call(context, data_manager.get_product, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFoundError(f"Unknown product id: {product_id}")
    return product


def require_active_product(product: data_manager.ProductRow) -> None:
    if not product.is_active:
        log.warning("Rejected stock change on inactive product '%s'", product.product_id)
        raise ProductInactiveError(f"Product '{product.product_id}' ({product.product_name}) is inactive")


def validate_mutable_target(movement: data_manager.MovementRow, *, action: str) -> None:
    """Confirm that a movement may still be amended or voided.

    Raises:
        AlreadyVoidError: If the movement is already VOID.
        SaleOriginatedError: If the movement was produced by a sale.
    """
    if movement.status is MovementStatus.VOID:
        log.error("Cannot %s movement '%s' because it is already void", action, movement.movement_id)
        raise AlreadyVoidError(f"Movement '{movement.movement_id}' is already void")
    if movement.reason is MovementReason.SALE:
        log.error("Cannot %s sale-originated movement '%s'", action, movement.movement_id)
        raise SaleOriginatedError(
            f"Movement '{movement.movement_id}' was generated by a sale; cancel the originating sale instead"
        )


def generate_movement_id(*, prefix: str = "M", when: Optional[datetime] = None) -> str:
    """Generate a sortable movement identifier.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}{random}``: the UTC
    timestamp keeps ids chronological and the random suffix keeps two
    movements recorded in the same microsecond by different threads apart.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6].upper()}"


# ---------------------------------------------------------------------------
# Stock arithmetic
# ---------------------------------------------------------------------------


def revert_then_apply(current: Decimal, original: data_manager.MovementRow, amended: data_manager.MovementRow) -> Decimal:
    """Stock after removing ``original``'s effect and applying ``amended``'s."""
    reverted = current - original.signed_quantity
    return reverted + amended.signed_quantity


def compute_amended_stock(current: Decimal, original: data_manager.MovementRow, amended: data_manager.MovementRow) -> Decimal:
    """Stock of a product after amending one of its movements in place.

    A pure kind flip with an unchanged quantity moves stock by twice the
    quantity in the new direction; every other change goes through
    :func:`revert_then_apply`. Both give the same number.

    Raises:
        InsufficientStockError: If the result would be negative.
    """
    if amended.kind is not original.kind and amended.quantity == original.quantity:
        final = current + 2 * amended.signed_quantity
    else:
        final = revert_then_apply(current, original, amended)

    if final < 0:
        available = current - original.signed_quantity
        log.warning(
            "Amendment of '%s' rejected: stock would become %s",
            original.movement_id,
            final,
        )
        raise InsufficientStockError(original.product_id, available, amended.quantity)
    return final


def _write_stock(context: RuntimeContext, product_id: str, new_stock: Decimal, expected: Decimal) -> None:
    _store_call(context, data_manager.write_stock_quantity, product_id, new_stock, expected=expected)


def _stock_step(saga: Saga, context: RuntimeContext, description: str, product_id: str, before: Decimal, after: Decimal) -> None:
    saga.step(
        description,
        lambda: _write_stock(context, product_id, after, before),
        compensate=lambda: _write_stock(context, product_id, before, after),
    )


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------


def create_movement(context: RuntimeContext, command: CreateMovementCommand) -> queries.MovementView:
    """Record a movement and apply its effect to the product's stock.

    The row is inserted first, then the product's stock is re-read and
    conditionally rewritten with ``± quantity``. When the stock write fails
    the inserted row is deleted again.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            locks.
        command (CreateMovementCommand): Structured intent.

    Returns:
        queries.MovementView: The created movement, enriched.

    Raises:
        InvalidMovementError: If the command is malformed.
        ProductNotFoundError: If the product is unknown.
        ProductInactiveError: For an EXIT (or, when the configuration forbids
            it, an ENTRY) against an inactive product.
        InsufficientStockError: If an EXIT exceeds the current stock.
        PartialWriteError: If the stock write failed and the row was removed.
        CompensationFailedError: If the row could not be removed either.
    """
    product_id = _require_identifier(command.product_id, "Product id")
    kind = _require_enum(command.kind, MovementKind, "movement kind")
    reason = _require_enum(command.reason, MovementReason, "movement reason")
    quantity = require_positive_quantity(command.quantity)
    occurred_on = _resolve_occurred_on(command.occurred_on)

    with _hold_products(context, product_id):
        product = _load_product(context, product_id)
        if kind is MovementKind.EXIT:
            require_active_product(product)
            if quantity > product.stock_quantity:
                log.warning(
                    "EXIT of %s rejected for '%s': only %s in stock",
                    quantity,
                    product_id,
                    product.stock_quantity,
                )
                raise InsufficientStockError(product_id, product.stock_quantity, quantity)
        elif not product.is_active and not context.settings.allow_entry_on_inactive:
            require_active_product(product)

        recorded_at = _resolve_timestamp(None)
        movement = data_manager.MovementRow(
            movement_id=generate_movement_id(when=recorded_at),
            product_id=product_id,
            kind=kind,
            quantity=quantity,
            reason=reason,
            occurred_on=occurred_on,
            recorded_at=recorded_at,
            actor_id=command.actor_id,
            note=command.note,
            status=MovementStatus.ACTIVE,
        )

        with Saga("create", movement.movement_id) as saga:
            saga.step(
                "insert movement",
                lambda: _store_call(context, data_manager.append_movement, movement),
                compensate=lambda: _store_call(context, data_manager.delete_movement, movement.movement_id),
            )
            current = _store_call(context, data_manager.read_stock_quantity, product_id)
            new_stock = current + movement.signed_quantity
            if new_stock < 0:
                raise InsufficientStockError(product_id, current, quantity)
            saga.step(
                "apply stock",
                lambda: _write_stock(context, product_id, new_stock, current),
            )

    log.info(
        "Recorded %s movement '%s' for product '%s' (quantity=%s, reason=%s, stock %s -> %s)",
        kind.value,
        movement.movement_id,
        product_id,
        quantity,
        reason.value,
        current,
        new_stock,
    )
    return queries.enrich_movements(context, [movement])[0]


def amend_movement(context: RuntimeContext, command: AmendMovementCommand) -> queries.MovementView:
    """Change the product, kind, quantity, and/or note of an ACTIVE movement.

    Because the cached stock is a running total, the old effect is undone and
    the new one applied: on the same product when only kind or quantity
    change, or across the old and the new product when the product changes.
    All checks run before the first write; the movement row itself is written
    last.

    Raises:
        InvalidMovementError: If a supplied field is malformed.
        MovementNotFoundError: If the movement is unknown.
        AlreadyVoidError: If the movement is VOID.
        SaleOriginatedError: If the movement came from a sale.
        ProductNotFoundError: If the old or new product is unknown.
        ProductInactiveError: If the target product is inactive and must not
            receive the change.
        InsufficientStockError: If either product would end below zero.
        PartialWriteError: If a write failed and earlier writes were undone.
        CompensationFailedError: If undoing earlier writes failed.
    """
    new_kind = _require_enum(command.kind, MovementKind, "movement kind") if command.kind is not None else None
    new_quantity = require_positive_quantity(command.quantity) if command.quantity is not None else None
    new_product_id = _require_identifier(command.product_id, "Product id") if command.product_id is not None else None
    extra = (new_product_id,) if new_product_id is not None else ()

    with _lock_movement(context, command.movement_id, *extra) as movement:
        validate_mutable_target(movement, action="amend")
        amended = replace(
            movement,
            product_id=new_product_id or movement.product_id,
            kind=new_kind or movement.kind,
            quantity=new_quantity if new_quantity is not None else movement.quantity,
            note=command.note if command.note is not None else movement.note,
        )

        if amended.product_id != movement.product_id:
            _amend_across_products(context, movement, amended)
        elif amended.kind is not movement.kind or amended.quantity != movement.quantity:
            _amend_in_place(context, movement, amended)
        elif amended != movement:
            _store_call(context, data_manager.update_movement, amended)
            log.info("Updated descriptive fields of movement '%s'", movement.movement_id)
        else:
            log.debug("Amendment of '%s' changes nothing", movement.movement_id)

    return queries.enrich_movements(context, [amended])[0]


def _amend_in_place(context: RuntimeContext, movement: data_manager.MovementRow, amended: data_manager.MovementRow) -> None:
    product = _load_product(context, movement.product_id)
    if amended.kind is MovementKind.EXIT:
        require_active_product(product)
    current = product.stock_quantity
    final = compute_amended_stock(current, movement, amended)

    with Saga("amend", movement.movement_id) as saga:
        _stock_step(saga, context, "apply amended stock", product.product_id, current, final)
        saga.step("update movement", lambda: _store_call(context, data_manager.update_movement, amended))

    log.info(
        "Amended movement '%s' (%s %s -> %s %s); stock of '%s' %s -> %s",
        movement.movement_id,
        movement.kind.value,
        movement.quantity,
        amended.kind.value,
        amended.quantity,
        product.product_id,
        current,
        final,
    )


def _amend_across_products(context: RuntimeContext, movement: data_manager.MovementRow, amended: data_manager.MovementRow) -> None:
    old_product = _load_product(context, movement.product_id)
    new_product = _load_product(context, amended.product_id)
    require_active_product(new_product)

    old_before = old_product.stock_quantity
    old_after = old_before - movement.signed_quantity
    if old_after < 0:
        log.warning(
            "Moving '%s' off product '%s' rejected: stock would become %s",
            movement.movement_id,
            old_product.product_id,
            old_after,
        )
        raise InsufficientStockError(old_product.product_id, old_before, movement.quantity)

    new_before = new_product.stock_quantity
    new_after = new_before + amended.signed_quantity
    if new_after < 0:
        log.warning(
            "Moving '%s' onto product '%s' rejected: only %s in stock",
            movement.movement_id,
            new_product.product_id,
            new_before,
        )
        raise InsufficientStockError(new_product.product_id, new_before, amended.quantity)

    with Saga("amend", movement.movement_id) as saga:
        _stock_step(saga, context, "revert previous product stock", old_product.product_id, old_before, old_after)
        _stock_step(saga, context, "apply new product stock", new_product.product_id, new_before, new_after)
        saga.step("update movement", lambda: _store_call(context, data_manager.update_movement, amended))

    log.info(
        "Moved movement '%s' from '%s' (%s -> %s) to '%s' (%s -> %s)",
        movement.movement_id,
        old_product.product_id,
        old_before,
        old_after,
        new_product.product_id,
        new_before,
        new_after,
    )


def build_voided_movement(
    movement: data_manager.MovementRow,
    *,
    voided_by: Optional[str],
    void_reason: Optional[str],
    timestamp: datetime,
) -> data_manager.MovementRow:
    """Return ``movement`` marked VOID with its structured audit record.

    The user note is kept untouched; the audit lives in its own fields.
    """
    return replace(
        movement,
        status=MovementStatus.VOID,
        voided_at=timestamp,
        voided_by=voided_by,
        void_reason=void_reason,
    )


def void_movement(context: RuntimeContext, command: VoidMovementCommand) -> queries.MovementView:
    """Cancel an ACTIVE movement and remove its effect from stock.

    Raises:
        MovementNotFoundError: If the movement is unknown.
        AlreadyVoidError: If the movement is already VOID.
        SaleOriginatedError: If the movement came from a sale.
        ProductNotFoundError: If the movement's product no longer exists.
        ProductInactiveError: If the movement's product is inactive.
        WouldGoNegativeError: If removing the movement leaves negative stock.
        PartialWriteError: If marking the row failed and the stock was restored.
        CompensationFailedError: If the stock could not be restored.
    """
    timestamp = _resolve_timestamp(command.timestamp)

    with _lock_movement(context, command.movement_id) as movement:
        validate_mutable_target(movement, action="void")
        product = _load_product(context, movement.product_id)
        require_active_product(product)

        current = product.stock_quantity
        reverted = current - movement.signed_quantity
        if reverted < 0:
            log.warning(
                "Void of '%s' rejected: stock of '%s' would become %s",
                movement.movement_id,
                product.product_id,
                reverted,
            )
            raise WouldGoNegativeError(product.product_id, current, reverted)

        voided = build_voided_movement(
            movement,
            voided_by=command.voided_by,
            void_reason=command.void_reason,
            timestamp=timestamp,
        )
        with Saga("void", movement.movement_id) as saga:
            _stock_step(saga, context, "revert stock", product.product_id, current, reverted)
            saga.step("mark movement void", lambda: _store_call(context, data_manager.update_movement, voided))

    log.info(
        "Voided movement '%s' by '%s'; stock of '%s' %s -> %s",
        movement.movement_id,
        command.voided_by or "System",
        product.product_id,
        current,
        reverted,
    )
    return queries.enrich_movements(context, [voided])[0]


# ---------------------------------------------------------------------------
# Registry maintenance
# ---------------------------------------------------------------------------


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by id.

    Raises:
        ProductNotFoundError: If the registry does not hold ``product_id``.
    """
    return _load_product(context, product_id)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return registry rows in sheet order, active ones only by default."""
    with context.storage_lock:
        products = list(data_manager.iter_products(context.workbook))
    if include_inactive:
        return products
    return [product for product in products if product.is_active]


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    product_name: str,
    product_code: Optional[str] = None,
    opening_stock: Decimal = Decimal("0"),
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Register a product whose cached stock starts at ``opening_stock``.

    Raises:
        InvalidMovementError: If the id or name is blank or the opening stock
            is negative.
        DuplicateReferenceError: If the id is already registered.
    """
    _require_identifier(product_id, "Product id")
    _require_identifier(product_name, "Product name")
    opening_stock = Decimal(opening_stock)
    if opening_stock < 0:
        raise InvalidMovementError("Opening stock cannot be negative")

    record = data_manager.ProductRow(
        product_id=product_id,
        product_name=product_name,
        product_code=product_code,
        status=ProductStatus.ACTIVE if is_active else ProductStatus.INACTIVE,
        stock_quantity=opening_stock,
        opening_stock=opening_stock,
    )
    with context.storage_lock:
        if data_manager.get_product(context.workbook, product_id) is not None:
            log.warning("Attempted to register duplicate product '%s'", product_id)
            raise DuplicateReferenceError(f"Product '{product_id}' already exists")
        data_manager.append_product(context.workbook, record)
    log.info("Registered product '%s' with opening stock %s", product_id, opening_stock)
    return record


def set_product_status(context: RuntimeContext, product_id: str, status: ProductStatus) -> data_manager.ProductRow:
    """Activate or deactivate a product.

    Raises:
        InvalidMovementError: If ``status`` is not a :class:`ProductStatus`.
        ProductNotFoundError: If the product is unknown.
    """
    status = _require_enum(status, ProductStatus, "product status")
    with _hold_products(context, product_id):
        product = _load_product(context, product_id)
        _store_call(context, data_manager.update_product, product_id, field_values={"Status": status.value})
    log.info("Product '%s' status %s -> %s", product_id, product.status.value, status.value)
    return replace(product, status=status)


def add_user(context: RuntimeContext, *, user_id: str, user_name: str) -> data_manager.UserRow:
    """Register a user so movements can display the actor's name.

    Raises:
        InvalidMovementError: If the id or name is blank.
        DuplicateReferenceError: If the id is already registered.
    """
    _require_identifier(user_id, "User id")
    _require_identifier(user_name, "User name")
    record = data_manager.UserRow(user_id=user_id, user_name=user_name)
    with context.storage_lock:
        if any(user.user_id == user_id for user in data_manager.iter_users(context.workbook)):
            log.warning("Attempted to register duplicate user '%s'", user_id)
            raise DuplicateReferenceError(f"User '{user_id}' already exists")
        data_manager.append_user(context.workbook, record)
    log.info("Registered user '%s'", user_id)
    return record
