"""Purchase order lifecycle.

Orders start ``PENDING`` and end either ``RECEIVED`` or ``CANCELLED``; both end
states are final. Receiving an order joins the stock increment and the status
change in one unit of work, so a failed receipt leaves the order pending and
the counter unchanged.

Locks are always taken order first, then product, which keeps concurrent
receipts free of lock cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from . import log
from .constants import UNSET, MovementKind, OrderStatus
from .core_logic import (
    MovementCommand,
    MovementResult,
    RuntimeContext,
    apply_movement_in,
    require_nonnegative_money,
    require_positive_quantity,
    resolve_actor,
)
from .data_manager import PurchaseOrderRow
from .errors import InvalidStateTransition
from .stock_store import Transaction


@dataclass(frozen=True)
class CreateOrderCommand:
    """User intent for placing a replenishment order."""

    supplier_id: str
    product_id: str
    quantity: int
    unit_cost: Decimal
    expected_delivery: Optional[date] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


def generate_order_id(*, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(UTC)
    return f"PO{when.strftime('%Y%m%d%H%M%S%f')}-{uuid4().hex[:4]}"


def compute_total_cost(quantity: int, unit_cost: Decimal) -> Decimal:
    return quantity * unit_cost


def _require_pending(order: PurchaseOrderRow, target: str) -> None:
    current = OrderStatus(order.status)
    if current.is_terminal:
        log.warning(
            "Rejected purchase order '%s' transition %s -> %s",
            order.order_id,
            current.value,
            target,
        )
        raise InvalidStateTransition(order.order_id, current=current.value, target=target)


def create_order(context: RuntimeContext, command: CreateOrderCommand) -> PurchaseOrderRow:
    """Place a ``PENDING`` order and compute its total cost.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (CreateOrderCommand): Order details.

    Returns:
        PurchaseOrderRow: The committed order.

    Raises:
        NotFound: If the product is unknown.
        ValueError: If the quantity or unit cost is invalid.
    """
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.unit_cost)
    if not command.supplier_id:
        raise ValueError("Supplier id is required")

    timestamp = command.timestamp or datetime.now(UTC)
    order = PurchaseOrderRow(
        order_id=generate_order_id(when=timestamp),
        supplier_id=command.supplier_id,
        product_id=command.product_id,
        quantity=command.quantity,
        unit_cost=command.unit_cost,
        total_cost=compute_total_cost(command.quantity, command.unit_cost),
        status=OrderStatus.PENDING.value,
        order_timestamp_iso=timestamp.isoformat(),
        expected_delivery_iso=command.expected_delivery.isoformat() if command.expected_delivery else None,
        received_timestamp_iso=None,
        actor_id=resolve_actor(context, command.actor_id),
        notes=command.notes,
    )

    def _create(tx: Transaction) -> None:
        tx.get_product(command.product_id)
        tx.insert_order(order)

    context.store.with_transaction(_create)
    log.info(
        "Created purchase order '%s' for product '%s' (quantity=%d, total=%s)",
        order.order_id,
        order.product_id,
        order.quantity,
        order.total_cost,
    )
    return order


def update_order(
    context: RuntimeContext,
    order_id: str,
    *,
    quantity: int = UNSET,
    unit_cost: Decimal = UNSET,
    expected_delivery: Optional[date] = UNSET,
    notes: Optional[str] = UNSET,
) -> PurchaseOrderRow:
    """Amend a pending order; the total cost is recomputed from the result.

    Omitted fields keep their value; ``None`` clears the expected delivery
    date or the notes.

    Raises:
        InvalidStateTransition: If the order is no longer pending.
    """
    if quantity is not UNSET:
        require_positive_quantity(quantity)
    if unit_cost is not UNSET:
        require_nonnegative_money(unit_cost)

    def _update(tx: Transaction) -> PurchaseOrderRow:
        order = tx.lock_order(order_id)
        _require_pending(order, "AMENDED")
        new_quantity = order.quantity if quantity is UNSET else quantity
        new_cost = order.unit_cost if unit_cost is UNSET else unit_cost
        if expected_delivery is UNSET:
            delivery_iso = order.expected_delivery_iso
        else:
            delivery_iso = expected_delivery.isoformat() if expected_delivery else None
        updated = replace(
            order,
            quantity=new_quantity,
            unit_cost=new_cost,
            total_cost=compute_total_cost(new_quantity, new_cost),
            expected_delivery_iso=delivery_iso,
            notes=order.notes if notes is UNSET else notes,
        )
        tx.put_order(updated)
        return updated

    updated = context.store.with_transaction(_update)
    log.info("Updated purchase order '%s' (quantity=%d, total=%s)", order_id, updated.quantity, updated.total_cost)
    return updated


def cancel_order(context: RuntimeContext, order_id: str) -> PurchaseOrderRow:
    """Move a pending order to ``CANCELLED``; stock is not touched.

    Raises:
        NotFound: If the order is unknown.
        InvalidStateTransition: If the order is already received or cancelled.
    """

    def _cancel(tx: Transaction) -> PurchaseOrderRow:
        order = tx.lock_order(order_id)
        _require_pending(order, OrderStatus.CANCELLED.value)
        cancelled = replace(order, status=OrderStatus.CANCELLED.value)
        tx.put_order(cancelled)
        return cancelled

    cancelled = context.store.with_transaction(_cancel)
    log.info("Cancelled purchase order '%s'", order_id)
    return cancelled


def receive_order(
    context: RuntimeContext,
    order_id: str,
    *,
    actor_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> MovementResult:
    """Receive a pending order into stock.

    The ``PURCHASE_RECEIPT`` movement and the ``RECEIVED`` transition commit
    together. If the movement fails the order stays ``PENDING``.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        order_id (str): Order to receive.
        actor_id (str | None): Who received the goods. Defaults to the
            configured default actor.
        timestamp (datetime | None): Receipt time, mainly for tests.

    Returns:
        MovementResult: New stock level and the receipt movement identifier.

    Raises:
        NotFound: If the order or its product is unknown.
        InvalidStateTransition: If the order is not pending.
    """
    actor = resolve_actor(context, actor_id)
    received_at = timestamp or datetime.now(UTC)

    def _receive(tx: Transaction) -> MovementResult:
        order = tx.lock_order(order_id)
        _require_pending(order, OrderStatus.RECEIVED.value)
        result = apply_movement_in(
            tx,
            MovementCommand(
                product_id=order.product_id,
                kind=MovementKind.PURCHASE_RECEIPT,
                quantity=order.quantity,
                unit_price=order.unit_cost,
                actor_id=actor,
                notes=f"Purchase order {order.order_id}",
                timestamp=received_at,
            ),
        )
        tx.put_order(
            replace(
                order,
                status=OrderStatus.RECEIVED.value,
                received_timestamp_iso=received_at.isoformat(),
            )
        )
        return result

    result = context.store.with_transaction(_receive)
    log.info(
        "Received purchase order '%s' as movement '%s' (new stock=%d)",
        order_id,
        result.movement_id,
        result.new_stock,
    )
    return result


def delete_order(context: RuntimeContext, order_id: str) -> None:
    """Delete a pending order; received and cancelled orders are history.

    Raises:
        InvalidStateTransition: If the order is not pending.
    """

    def _delete(tx: Transaction) -> None:
        order = tx.lock_order(order_id)
        _require_pending(order, "DELETED")
        tx.remove_order(order_id)

    context.store.with_transaction(_delete)
    log.info("Deleted purchase order '%s'", order_id)


def get_order(context: RuntimeContext, order_id: str) -> PurchaseOrderRow:
    return context.store.get_order(order_id)


def list_orders(context: RuntimeContext, *, status: Optional[OrderStatus] = None) -> List[PurchaseOrderRow]:
    """Return orders newest first, optionally filtered by status."""
    orders = list(context.store.snapshot().orders)
    if status is not None:
        orders = [order for order in orders if order.status == OrderStatus(status).value]
    return sorted(orders, key=lambda order: (order.order_timestamp_iso, order.order_id), reverse=True)
