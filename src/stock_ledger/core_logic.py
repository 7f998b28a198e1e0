"""Business logic layer for the stock ledger.

This module hosts the movement coordinator: the only code allowed to change a
product's quantity-on-hand. Every change is validated against the current
counter and applied together with its ledger entry inside a single unit of
work provided by :mod:`stock_ledger.stock_store`, so a failure at any point
leaves both the counter and the ledger untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, UNSET, MovementKind
from .errors import AlreadyReversed, BusinessRuleViolation, InsufficientStock, IrreversibleMovement
from .stock_store import LedgerStore, Transaction, WorkbookLedgerStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: LedgerStore


@dataclass(frozen=True)
class MovementCommand:
    """User intent for applying one stock movement to a product counter."""

    product_id: str
    kind: MovementKind
    quantity: int
    unit_price: Decimal
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling ``quantity`` units at the product's current price."""

    product_id: str
    quantity: int
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReversalCommand:
    """User intent for compensating a prior sale."""

    movement_id: str
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class NewProductCommand:
    """User intent for creating a product counter with its opening stock."""

    product_id: str
    product_name: str
    sell_price: Decimal
    quantity: int = 0
    cost_price: Optional[Decimal] = None
    reorder_level: int = 0
    category: Optional[str] = None
    supplier_id: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class MovementResult:
    """Outcome of a committed movement."""

    product_id: str
    kind: MovementKind
    new_stock: int
    movement_id: str


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """A product whose counter disagrees with its ledger."""

    product_id: str
    expected_quantity: int
    actual_quantity: int


_ID_PREFIXES = {
    MovementKind.SALE: "S",
    MovementKind.SALE_REVERSAL: "R",
    MovementKind.PURCHASE_RECEIPT: "P",
}

_REQUIRED_PRODUCT_FIELDS = frozenset({"product_name", "sell_price", "reorder_level", "is_active"})


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def resolve_actor(context: RuntimeContext, actor_id: Optional[str]) -> str:
    return actor_id if actor_id else context.settings.default_actor_id


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook-backed store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for the coordinator, purchase order and
            report functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options or sheets are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookLedgerStore(settings.data_file, lock_timeout=settings.lock_timeout)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
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


def generate_movement_id(*, prefix: str = "M", when: Optional[datetime] = None) -> str:
    """Generate a sortable movement identifier.

    Args:
        prefix (str): Designator prepended to the identifier; the coordinator
            uses one letter per movement kind.
        when (datetime | None): Timestamp encoded in the identifier. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{suffix}``.

    The random suffix keeps identifiers unique when concurrent movements share
    the same microsecond.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid4().hex[:6]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r is not an integer", quantity)
        raise ValueError("Quantity must be an integer")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def _validate_movement(command: MovementCommand) -> None:
    if not isinstance(command.kind, MovementKind):
        log.error("Unsupported movement kind provided: %s", command.kind)
        raise ValueError(f"Unsupported movement kind: {command.kind}")
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.unit_price)


def build_movement_row(
    command: MovementCommand,
    *,
    movement_id: str,
    timestamp: datetime,
    linked_movement_id: Optional[str] = None,
) -> data_manager.MovementRow:
    """Materialize a :class:`MovementCommand` into a ledger row.

    The delta carries the kind's sign. ``total_amount`` is the magnitude of the
    delta times the unit price, negated for reversals so that summing sale and
    reversal amounts yields net revenue. The sequence number is assigned by the
    store when the unit of work commits.
    """
    delta = command.kind.sign * command.quantity
    amount = abs(delta) * command.unit_price
    if command.kind is MovementKind.SALE_REVERSAL:
        amount = -amount
    return data_manager.MovementRow(
        movement_id=movement_id,
        sequence=0,
        timestamp_iso=timestamp.isoformat(),
        movement_kind=command.kind.value,
        product_id=command.product_id,
        quantity_delta=delta,
        unit_price=command.unit_price,
        total_amount=amount,
        actor_id=command.actor_id,
        linked_movement_id=linked_movement_id,
        notes=command.notes,
    )


def apply_movement_in(
    tx: Transaction,
    command: MovementCommand,
    *,
    linked_movement_id: Optional[str] = None,
) -> MovementResult:
    """Run the read-check-write-append sequence inside an open transaction.

    The product row is locked before its quantity is read, so two callers
    touching the same product serialize and the second one sees the first
    one's committed counter. Nothing is visible to other transactions until
    ``tx`` commits.

    Args:
        tx (Transaction): Unit of work the movement joins.
        command (MovementCommand): Movement to apply.
        linked_movement_id (str | None): Movement compensated by this one.

    Returns:
        MovementResult: The staged stock level and movement identifier.

    Raises:
        NotFound: If the product is unknown.
        InsufficientStock: If the delta would drive the counter below zero.
        ValueError: If the command fails validation.
        LockTimeout: If the product row cannot be locked in time.
    """
    _validate_movement(command)
    row = tx.lock_and_read(command.product_id)
    delta = command.kind.sign * command.quantity
    new_stock = row.quantity + delta
    if new_stock < 0:
        log.warning(
            "Rejected %s of %d for product '%s': only %d on hand",
            command.kind.value,
            command.quantity,
            command.product_id,
            row.quantity,
        )
        raise InsufficientStock(command.product_id, available=row.quantity, requested=command.quantity)

    timestamp = _resolve_timestamp(command.timestamp)
    movement = build_movement_row(
        command,
        movement_id=generate_movement_id(prefix=_ID_PREFIXES[command.kind], when=timestamp),
        timestamp=timestamp,
        linked_movement_id=linked_movement_id,
    )
    tx.write_quantity(row.token, new_stock)
    tx.append_movement(movement)
    return MovementResult(
        product_id=command.product_id,
        kind=command.kind,
        new_stock=new_stock,
        movement_id=movement.movement_id,
    )


def apply_movement(context: RuntimeContext, command: MovementCommand) -> MovementResult:
    """Apply one movement atomically and return the committed outcome.

    Either the counter update and the ledger append both become durable, or
    neither does.

    Raises:
        NotFound: If the product is unknown.
        InsufficientStock: If the decrement exceeds the quantity on hand.
        StorageFailure: If the unit of work cannot commit (retryable).
        ValueError: If the command fails validation.
    """
    result = context.store.with_transaction(lambda tx: apply_movement_in(tx, command))
    log.info(
        "Recorded %s movement '%s' for product '%s' (quantity=%s, new stock=%d)",
        command.kind.value,
        result.movement_id,
        command.product_id,
        command.quantity,
        result.new_stock,
    )
    return result


def record_sale(context: RuntimeContext, command: SaleCommand) -> MovementResult:
    """Sell units of an active product at its current sell price.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        MovementResult: New stock level and the sale movement identifier.

    Raises:
        BusinessRuleViolation: If the product is inactive.
        NotFound: If the product is unknown.
        InsufficientStock: If the sale exceeds the quantity on hand.
        ValueError: If the quantity is not a positive integer.
    """
    require_positive_quantity(command.quantity)
    actor_id = resolve_actor(context, command.actor_id)

    def _sell(tx: Transaction) -> MovementResult:
        product = tx.lock_product(command.product_id)
        if not product.is_active:
            log.warning("Attempted sale on inactive product '%s'", command.product_id)
            raise BusinessRuleViolation(f"Product '{command.product_id}' is inactive")
        movement = MovementCommand(
            product_id=command.product_id,
            kind=MovementKind.SALE,
            quantity=command.quantity,
            unit_price=product.sell_price,
            actor_id=actor_id,
            notes=command.notes,
            timestamp=command.timestamp,
        )
        return apply_movement_in(tx, movement)

    result = context.store.with_transaction(_sell)
    log.info(
        "Recorded SALE '%s' for product '%s' (quantity=%d, new stock=%d, actor=%s)",
        result.movement_id,
        command.product_id,
        command.quantity,
        result.new_stock,
        actor_id,
    )
    return result


def reverse_movement(context: RuntimeContext, command: ReversalCommand) -> MovementResult:
    """Compensate a prior sale with a linked ``SALE_REVERSAL``.

    The original entry is never edited. The reversal restores the sold units,
    carries the original unit price and the negated amount, and links back to
    the original so a second attempt is rejected.

    Raises:
        NotFound: If the movement is unknown.
        IrreversibleMovement: If the movement is not a sale.
        AlreadyReversed: If the sale was already reversed.
    """
    actor_id = resolve_actor(context, command.actor_id)

    def _reverse(tx: Transaction) -> MovementResult:
        original = tx.get_movement(command.movement_id)
        if original.movement_kind != MovementKind.SALE.value:
            log.warning(
                "Rejected reversal of %s movement '%s'",
                original.movement_kind,
                original.movement_id,
            )
            raise IrreversibleMovement(
                f"Movement '{original.movement_id}' of kind {original.movement_kind} cannot be reversed"
            )
        # reversal check must happen under the product lock
        tx.lock_product(original.product_id)
        existing = tx.reversal_of(original.movement_id)
        if existing is not None:
            log.warning(
                "Rejected second reversal of movement '%s' (already reversed by '%s')",
                original.movement_id,
                existing,
            )
            raise AlreadyReversed(original.movement_id, existing)
        movement = MovementCommand(
            product_id=original.product_id,
            kind=MovementKind.SALE_REVERSAL,
            quantity=abs(original.quantity_delta),
            unit_price=original.unit_price,
            actor_id=actor_id,
            notes=command.notes,
            timestamp=command.timestamp,
        )
        return apply_movement_in(tx, movement, linked_movement_id=original.movement_id)

    result = context.store.with_transaction(_reverse)
    log.info(
        "Reversed movement '%s' with '%s' (new stock=%d, actor=%s)",
        command.movement_id,
        result.movement_id,
        result.new_stock,
        actor_id,
    )
    return result


def delete_sale(
    context: RuntimeContext,
    movement_id: str,
    *,
    actor_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> MovementResult:
    """Undo a sale by reversing it; ``new_stock`` is the restored level."""
    return reverse_movement(context, ReversalCommand(movement_id=movement_id, actor_id=actor_id, notes=notes))


def receive_purchase_order(
    context: RuntimeContext,
    order_id: str,
    *,
    actor_id: Optional[str] = None,
) -> MovementResult:
    """Receive a pending purchase order into stock.

    See :func:`stock_ledger.purchase_orders.receive_order`.
    """
    from .purchase_orders import receive_order

    return receive_order(context, order_id, actor_id=actor_id)


def add_product(context: RuntimeContext, command: NewProductCommand) -> data_manager.ProductRow:
    """Create a product counter seeded with its opening stock.

    The opening quantity is recorded on the product itself rather than as a
    movement, and :func:`verify_ledger` audits every later change against it.

    Raises:
        BusinessRuleViolation: If the identifier is already taken.
        ValueError: If the quantity, prices or reorder level are invalid.
    """
    if isinstance(command.quantity, bool) or not isinstance(command.quantity, int) or command.quantity < 0:
        log.error("Opening stock validation failed: %r", command.quantity)
        raise ValueError("Opening stock must be a non-negative integer")
    if command.reorder_level < 0:
        raise ValueError("Reorder level must be zero or positive")
    if not command.product_id or not command.product_name:
        raise ValueError("Product id and name are required")
    require_nonnegative_money(command.sell_price)
    if command.cost_price is not None:
        require_nonnegative_money(command.cost_price)

    product = data_manager.ProductRow(
        product_id=command.product_id,
        product_name=command.product_name,
        sell_price=command.sell_price,
        cost_price=command.cost_price,
        quantity_on_hand=command.quantity,
        opening_stock=command.quantity,
        reorder_level=command.reorder_level,
        category=command.category,
        supplier_id=command.supplier_id,
        is_active=command.is_active,
    )
    context.store.with_transaction(lambda tx: tx.insert_product(product))
    log.info("Created product '%s' with opening stock %d", product.product_id, product.quantity_on_hand)
    return product


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    product_name: str = UNSET,
    sell_price: Decimal = UNSET,
    cost_price: Optional[Decimal] = UNSET,
    reorder_level: int = UNSET,
    category: Optional[str] = UNSET,
    supplier_id: Optional[str] = UNSET,
    is_active: bool = UNSET,
) -> data_manager.ProductRow:
    """Change descriptive fields of a product; omitted fields are left as is.

    ``cost_price``, ``category`` and ``supplier_id`` are optional on the
    product, so passing ``None`` clears them. Quantity-on-hand is deliberately
    absent: it only moves through :func:`apply_movement`.

    Raises:
        ValueError: If a required field is set to ``None`` or a value is invalid.
    """
    changes = {
        "product_name": product_name,
        "sell_price": sell_price,
        "cost_price": cost_price,
        "reorder_level": reorder_level,
        "category": category,
        "supplier_id": supplier_id,
        "is_active": is_active,
    }
    changes = {name: value for name, value in changes.items() if value is not UNSET}
    for name in _REQUIRED_PRODUCT_FIELDS & changes.keys():
        if changes[name] is None:
            raise ValueError(f"{name} cannot be cleared")
    if changes.get("sell_price") is not None:
        require_nonnegative_money(changes["sell_price"])
    if changes.get("cost_price") is not None:
        require_nonnegative_money(changes["cost_price"])
    if changes.get("reorder_level") is not None and changes["reorder_level"] < 0:
        raise ValueError("Reorder level must be zero or positive")

    def _update(tx: Transaction) -> data_manager.ProductRow:
        updated = replace(tx.lock_product(product_id), **changes)
        tx.put_product(updated)
        return updated

    updated = context.store.with_transaction(_update)
    log.info("Updated product '%s' fields: %s", product_id, ", ".join(sorted(changes)) or "none")
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product that no movement or purchase order references.

    Raises:
        NotFound: If the product is unknown.
        ProductInUse: If the ledger or an order still references it.
    """
    context.store.with_transaction(lambda tx: tx.remove_product(product_id))
    log.info("Deleted product '%s'", product_id)


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Return the committed state of a product.

    Raises:
        NotFound: If ``product_id`` is unknown.
    """
    return context.store.get_product(product_id)


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return committed products ordered by identifier."""
    products = sorted(context.store.snapshot().products, key=lambda p: p.product_id)
    if include_inactive:
        return products
    return [product for product in products if product.is_active]


def get_movement(context: RuntimeContext, movement_id: str) -> data_manager.MovementRow:
    return context.store.get_movement(movement_id)


def list_movements(context: RuntimeContext, *, product_id: Optional[str] = None) -> List[data_manager.MovementRow]:
    """Return the ledger in commit order, optionally for a single product."""
    movements = context.store.snapshot().movements
    if product_id is None:
        return list(movements)
    return [movement for movement in movements if movement.product_id == product_id]


def verify_ledger(context: RuntimeContext) -> List[LedgerDiscrepancy]:
    """Audit every counter against its opening stock plus the ledger deltas.

    Returns:
        list[LedgerDiscrepancy]: One entry per inconsistent product, empty
            when the ledger and the counters agree.
    """
    snapshot = context.store.snapshot()
    deltas: Dict[str, int] = {}
    for movement in snapshot.movements:
        deltas[movement.product_id] = deltas.get(movement.product_id, 0) + movement.quantity_delta

    discrepancies: List[LedgerDiscrepancy] = []
    for product in sorted(snapshot.products, key=lambda p: p.product_id):
        expected = product.opening_stock + deltas.get(product.product_id, 0)
        if expected != product.quantity_on_hand:
            discrepancies.append(
                LedgerDiscrepancy(
                    product_id=product.product_id,
                    expected_quantity=expected,
                    actual_quantity=product.quantity_on_hand,
                )
            )

    if discrepancies:
        log.warning("Ledger verification found %d inconsistent product(s)", len(discrepancies))
    else:
        log.info("Ledger verification passed for %d product(s)", len(snapshot.products))
    return discrepancies
