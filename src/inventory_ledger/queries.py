"""Read-only access to the movement ledger.

Filtering, reconciliation ordering, and display enrichment for history
screens. Nothing in this module writes to the workbook; enrichment problems
are logged and degrade to missing display fields instead of failing the read.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from . import data_manager, log
from .constants import MovementKind, MovementReason, MovementStatus

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


@dataclass(frozen=True)
class MovementFilters:
    """Optional criteria for :func:`list_movements`. ``None`` means "any"."""

    date_from: Optional[date] = None
    date_to: Optional[date] = None
    product_id: Optional[str] = None
    kind: Optional[MovementKind] = None
    reason: Optional[MovementReason] = None
    status: Optional[MovementStatus] = None


@dataclass(frozen=True)
class MovementView:
    """A movement together with the display data of its references."""

    movement: data_manager.MovementRow
    product_name: Optional[str] = None
    product_code: Optional[str] = None
    actor_name: Optional[str] = None
    voided_by_name: Optional[str] = None

    @property
    def movement_id(self) -> str:
        return self.movement.movement_id

    @property
    def annotated_note(self) -> Optional[str]:
        """User note followed by a rendered void audit line, for display only."""
        movement = self.movement
        if movement.status is not MovementStatus.VOID:
            return movement.note
        actor = self.voided_by_name or movement.voided_by or "System"
        audit = f"[VOID] by {actor}"
        if movement.void_reason:
            audit += f": {movement.void_reason}"
        if movement.voided_at is not None:
            audit += f" ({movement.voided_at.isoformat()})"
        return f"{movement.note}\n{audit}" if movement.note else audit


@dataclass(frozen=True)
class StockDiscrepancy:
    """A product whose cached stock disagrees with its ledger history."""

    product_id: str
    cached_stock: Decimal
    ledger_stock: Decimal

    @property
    def difference(self) -> Decimal:
        return self.cached_stock - self.ledger_stock


def _scan(context: "RuntimeContext", func):
    with context.storage_lock:
        return list(func(context.workbook))


def matches_filters(movement: data_manager.MovementRow, filters: MovementFilters) -> bool:
    if filters.date_from is not None and movement.occurred_on < filters.date_from:
        return False
    if filters.date_to is not None and movement.occurred_on > filters.date_to:
        return False
    if filters.product_id is not None and movement.product_id != filters.product_id:
        return False
    if filters.kind is not None and movement.kind != filters.kind:
        return False
    if filters.reason is not None and movement.reason != filters.reason:
        return False
    if filters.status is not None and movement.status != filters.status:
        return False
    return True


def reconciliation_order(movements: Iterable[data_manager.MovementRow]) -> List[data_manager.MovementRow]:
    """Sort most recent activity first: ``occurred_on`` then ``recorded_at``, both descending.

    Rows without a recording time sort after the recorded rows of the same day.
    """
    return sorted(movements, key=_recency_key, reverse=True)


def _recency_key(movement: data_manager.MovementRow) -> tuple[date, bool, float]:
    recorded_at = movement.recorded_at
    return movement.occurred_on, recorded_at is not None, recorded_at.timestamp() if recorded_at is not None else 0.0


def enrich_movements(
    context: "RuntimeContext",
    movements: Iterable[data_manager.MovementRow],
) -> List[MovementView]:
    """Attach product and user display names to ``movements``.

    Products and users are each loaded once per call, whatever the number of
    rows, and only the ids actually referenced are kept. Unknown ids leave the
    display fields as ``None``.
    """

    rows = list(movements)
    if not rows:
        return []

    product_ids = {row.product_id for row in rows}
    user_ids = {uid for row in rows for uid in (row.actor_id, row.voided_by) if uid}

    products: Dict[str, data_manager.ProductRow] = {}
    try:
        products = {p.product_id: p for p in _scan(context, data_manager.iter_products) if p.product_id in product_ids}
    except KeyError as exc:
        log.error("Unable to resolve product names for enrichment: %s", exc)

    users: Dict[str, data_manager.UserRow] = {}
    if user_ids:
        try:
            users = {u.user_id: u for u in _scan(context, data_manager.iter_users) if u.user_id in user_ids}
        except KeyError as exc:
            log.error("Unable to resolve user names for enrichment: %s", exc)

    missing = product_ids - products.keys()
    if missing:
        log.debug("Enrichment found no product for ids: %s", ", ".join(sorted(missing)))

    views = []
    for row in rows:
        product = products.get(row.product_id)
        actor = users.get(row.actor_id) if row.actor_id else None
        voider = users.get(row.voided_by) if row.voided_by else None
        views.append(
            MovementView(
                movement=row,
                product_name=product.product_name if product else None,
                product_code=product.product_code if product else None,
                actor_name=actor.user_name if actor else None,
                voided_by_name=voider.user_name if voider else None,
            )
        )
    return views


def list_movements(context: "RuntimeContext", filters: Optional[MovementFilters] = None) -> List[MovementView]:
    """Return the movements matching ``filters``, most recent first, enriched.

    An empty list is returned when nothing matches.
    """

    filters = filters or MovementFilters()
    if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
        log.debug("Empty date range %s..%s", filters.date_from, filters.date_to)
        return []

    selected = [m for m in _scan(context, data_manager.iter_movements) if matches_filters(m, filters)]
    log.debug("Movement query matched %d rows", len(selected))
    return enrich_movements(context, reconciliation_order(selected))


def get_movement(context: "RuntimeContext", movement_id: str) -> Optional[MovementView]:
    """Return one enriched movement, or ``None`` when the id is unknown."""

    with context.storage_lock:
        row = data_manager.get_movement(context.workbook, movement_id)
    if row is None:
        return None
    return enrich_movements(context, [row])[0]


def calculate_ledger_balances(context: "RuntimeContext") -> Dict[str, Decimal]:
    """Rebuild every product's stock from its opening stock and ACTIVE movements."""

    balances = {p.product_id: p.opening_stock for p in _scan(context, data_manager.iter_products)}
    for movement in _scan(context, data_manager.iter_movements):
        if not movement.is_active:
            continue
        balances[movement.product_id] = balances.get(movement.product_id, Decimal("0")) + movement.signed_quantity
    return balances


def reconcile_stock(context: "RuntimeContext") -> List[StockDiscrepancy]:
    """Compare the cached stock aggregate with the ledger for every product.

    Returns:
        list[StockDiscrepancy]: One entry per product whose cached
            ``stock_quantity`` differs from its ledger balance; empty when the
            two agree everywhere. Movements pointing at unknown products are
            reported with a cached stock of zero.
    """

    with context.storage_lock:
        products = list(data_manager.iter_products(context.workbook))
        ledger = calculate_ledger_balances(context)

    cached = {p.product_id: p.stock_quantity for p in products}
    discrepancies = []
    for product_id in sorted(ledger.keys() | cached.keys()):
        cached_stock = cached.get(product_id, Decimal("0"))
        ledger_stock = ledger.get(product_id, Decimal("0"))
        if cached_stock != ledger_stock:
            discrepancies.append(StockDiscrepancy(product_id, cached_stock, ledger_stock))

    if discrepancies:
        log.warning("Reconciliation found %d stock discrepancies", len(discrepancies))
    else:
        log.info("Reconciliation found cached stock consistent with the ledger")
    return discrepancies
