"""Transactional stock store and ledger event log.

The store owns three tables (products, stock movements, purchase orders) and
exposes them through a unit-of-work abstraction. Every write is staged on a
:class:`Transaction` and becomes visible only when the transaction commits;
any exception raised inside the unit of work discards the staged writes and
releases the row locks the transaction acquired.

Row locks are per product and per purchase order. A transaction that needs
to read-check-write a counter calls :meth:`Transaction.lock_and_read`, which
blocks until the row is free (bounded by the transaction timeout) and then
returns the latest committed quantity. Commits are applied while the row
locks are still held, so the next holder always observes the previous
holder's effect.

Two implementations are provided: :class:`InMemoryLedgerStore`, used by tests
and embedders, and :class:`WorkbookLedgerStore`, which persists each commit to
the openpyxl workbook before publishing it in memory. The workbook store also
takes a file lock per unit of work, because other processes may share the
workbook.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, TypeVar

from filelock import FileLock, Timeout
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_LOCK_TIMEOUT_SECONDS, MovementKind
from .data_manager import MovementRow, ProductRow, PurchaseOrderRow
from .errors import BusinessRuleViolation, LockTimeout, NotFound, ProductInUse, StorageFailure


T = TypeVar("T")


@dataclass(frozen=True, eq=False)
class RowToken:
    """Proof that a transaction holds the lock on a product row."""

    product_id: str
    owner: "Transaction" = field(repr=False)


@dataclass(frozen=True)
class LockedRow:
    """Result of :meth:`Transaction.lock_and_read`."""

    quantity: int
    token: RowToken


@dataclass(frozen=True)
class ChangeSet:
    """Writes accumulated by one transaction, ready to be published."""

    products: Tuple[ProductRow, ...]
    new_product_ids: frozenset[str]
    deleted_product_ids: frozenset[str]
    movements: Tuple[MovementRow, ...]
    orders: Tuple[PurchaseOrderRow, ...]
    new_order_ids: frozenset[str]
    deleted_order_ids: frozenset[str]

    @property
    def is_empty(self) -> bool:
        return not (
            self.products
            or self.deleted_product_ids
            or self.movements
            or self.orders
            or self.deleted_order_ids
        )


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable copy of the ledger taken between two commits."""

    products: Tuple[ProductRow, ...]
    movements: Tuple[MovementRow, ...]
    orders: Tuple[PurchaseOrderRow, ...]
    taken_at: datetime

    def product_map(self) -> Dict[str, ProductRow]:
        return {product.product_id: product for product in self.products}


class Transaction:
    """A single unit of work against a :class:`LedgerStore`.

    Instances are created by :meth:`LedgerStore.transaction`; callers never
    commit or roll back by hand. Reads see the transaction's own staged writes
    layered over the committed state.
    """

    def __init__(self, store: "LedgerStore", *, timeout: float) -> None:
        self._store = store
        self._deadline = time.monotonic() + timeout
        self._held: Dict[str, threading.Lock] = {}
        self._products: Dict[str, ProductRow] = {}
        self._new_product_ids: set[str] = set()
        self._deleted_product_ids: set[str] = set()
        self._movements: List[MovementRow] = []
        self._staged_reversals: Dict[str, str] = {}
        self._orders: Dict[str, PurchaseOrderRow] = {}
        self._new_order_ids: set[str] = set()
        self._deleted_order_ids: set[str] = set()
        self.active = True

    # -- locking ---------------------------------------------------------

    def _acquire(self, key: str) -> None:
        self._ensure_active()
        if key in self._held:
            return
        lock = self._store._checkout_row_lock(key)
        if not lock.acquire(timeout=self.remaining()):
            self._store._checkin_row_lock(key)
            log.warning("Timed out waiting for row lock '%s'", key)
            raise LockTimeout(f"Timed out waiting for lock on {key}")
        self._held[key] = lock
        log.debug("Acquired row lock '%s'", key)

    def remaining(self) -> float:
        """Seconds left before lock waits in this transaction time out."""
        return max(self._deadline - time.monotonic(), 0.0)

    def holds(self, key: str) -> bool:
        return key in self._held

    def _release(self) -> None:
        held, self._held = self._held, {}
        for key, lock in held.items():
            lock.release()
            self._store._checkin_row_lock(key)

    def _ensure_active(self) -> None:
        if not self.active:
            raise RuntimeError("Transaction is no longer active")

    # -- products --------------------------------------------------------

    def get_product(self, product_id: str) -> ProductRow:
        """Return the product as seen by this transaction, without locking."""
        self._ensure_active()
        if product_id in self._deleted_product_ids:
            raise NotFound(f"Unknown product id: {product_id}")
        if product_id in self._products:
            return self._products[product_id]
        product = self._store._products.get(product_id)
        if product is None:
            raise NotFound(f"Unknown product id: {product_id}")
        return product

    def lock_product(self, product_id: str) -> ProductRow:
        """Lock the product row and return its latest committed state."""
        self._acquire(_product_key(product_id))
        return self.get_product(product_id)

    def lock_and_read(self, product_id: str) -> LockedRow:
        """Lock the product row and return its quantity plus a write token."""
        product = self.lock_product(product_id)
        return LockedRow(quantity=product.quantity_on_hand, token=RowToken(product_id, self))

    def write_quantity(self, token: RowToken, quantity: int) -> ProductRow:
        """Stage a new quantity-on-hand for the row ``token`` was issued for."""
        if token.owner is not self or not self.holds(_product_key(token.product_id)):
            raise RuntimeError(f"Row token for '{token.product_id}' is not held by this transaction")
        if quantity < 0:
            raise ValueError("Quantity on hand cannot be negative")
        updated = replace(self.get_product(token.product_id), quantity_on_hand=quantity)
        self._products[token.product_id] = updated
        return updated

    def insert_product(self, product: ProductRow) -> None:
        self._acquire(_product_key(product.product_id))
        exists = (
            product.product_id in self._products or product.product_id in self._store._products
        ) and product.product_id not in self._deleted_product_ids
        if exists:
            raise BusinessRuleViolation(f"Product '{product.product_id}' already exists")
        self._products[product.product_id] = product
        self._new_product_ids.add(product.product_id)

    def put_product(self, product: ProductRow) -> None:
        """Stage non-quantity changes for a locked product row."""
        if not self.holds(_product_key(product.product_id)):
            raise RuntimeError(f"Product '{product.product_id}' must be locked before it is updated")
        current = self.get_product(product.product_id)
        if product.quantity_on_hand != current.quantity_on_hand:
            raise RuntimeError("Quantity on hand can only change through write_quantity")
        self._products[product.product_id] = product

    def remove_product(self, product_id: str) -> None:
        """Stage deletion of a product nothing references."""
        self.lock_product(product_id)
        if self._is_referenced(product_id):
            raise ProductInUse(f"Product '{product_id}' is referenced by movements or purchase orders")
        self._products.pop(product_id, None)
        if product_id in self._new_product_ids:
            self._new_product_ids.discard(product_id)
        else:
            self._deleted_product_ids.add(product_id)

    def _is_referenced(self, product_id: str) -> bool:
        if any(m.product_id == product_id for m in self._movements):
            return True
        if any(o.product_id == product_id for o in self._orders.values()):
            return True
        return self._store._is_referenced(product_id)

    # -- movements -------------------------------------------------------

    def get_movement(self, movement_id: str) -> MovementRow:
        self._ensure_active()
        for movement in self._movements:
            if movement.movement_id == movement_id:
                return movement
        movement = self._store._movement_index.get(movement_id)
        if movement is None:
            raise NotFound(f"Unknown movement id: {movement_id}")
        return movement

    def reversal_of(self, movement_id: str) -> Optional[str]:
        """Return the id of the reversal compensating ``movement_id``, if any."""
        self._ensure_active()
        return self._staged_reversals.get(movement_id) or self._store._reversals.get(movement_id)

    def append_movement(self, movement: MovementRow) -> None:
        """Stage a ledger entry; the product row must be locked."""
        if not self.holds(_product_key(movement.product_id)):
            raise RuntimeError(f"Product '{movement.product_id}' must be locked before appending movements")
        self._movements.append(movement)
        if movement.movement_kind == MovementKind.SALE_REVERSAL.value and movement.linked_movement_id:
            self._staged_reversals[movement.linked_movement_id] = movement.movement_id

    # -- purchase orders -------------------------------------------------

    def get_order(self, order_id: str) -> PurchaseOrderRow:
        self._ensure_active()
        if order_id in self._deleted_order_ids:
            raise NotFound(f"Unknown purchase order id: {order_id}")
        if order_id in self._orders:
            return self._orders[order_id]
        order = self._store._orders.get(order_id)
        if order is None:
            raise NotFound(f"Unknown purchase order id: {order_id}")
        return order

    def lock_order(self, order_id: str) -> PurchaseOrderRow:
        self._acquire(_order_key(order_id))
        return self.get_order(order_id)

    def insert_order(self, order: PurchaseOrderRow) -> None:
        self._acquire(_order_key(order.order_id))
        if order.order_id in self._orders or order.order_id in self._store._orders:
            raise BusinessRuleViolation(f"Purchase order '{order.order_id}' already exists")
        self._orders[order.order_id] = order
        self._new_order_ids.add(order.order_id)

    def put_order(self, order: PurchaseOrderRow) -> None:
        if not self.holds(_order_key(order.order_id)):
            raise RuntimeError(f"Purchase order '{order.order_id}' must be locked before it is updated")
        self.get_order(order.order_id)
        self._orders[order.order_id] = order

    def remove_order(self, order_id: str) -> None:
        self.lock_order(order_id)
        self._orders.pop(order_id, None)
        if order_id in self._new_order_ids:
            self._new_order_ids.discard(order_id)
        else:
            self._deleted_order_ids.add(order_id)

    # -- lifecycle -------------------------------------------------------

    def changes(self) -> ChangeSet:
        return ChangeSet(
            products=tuple(self._products.values()),
            new_product_ids=frozenset(self._new_product_ids),
            deleted_product_ids=frozenset(self._deleted_product_ids),
            movements=tuple(self._movements),
            orders=tuple(self._orders.values()),
            new_order_ids=frozenset(self._new_order_ids),
            deleted_order_ids=frozenset(self._deleted_order_ids),
        )

    def commit(self) -> ChangeSet:
        self._ensure_active()
        try:
            return self._store._commit(self.changes())
        finally:
            self.active = False
            self._release()

    def rollback(self) -> None:
        if not self.active:
            return
        self.active = False
        self._release()
        if self._movements or self._products or self._orders:
            log.info("Rolled back transaction with %d staged movement(s)", len(self._movements))


def _product_key(product_id: str) -> str:
    return f"product:{product_id}"


def _order_key(order_id: str) -> str:
    return f"order:{order_id}"


@dataclass
class _RowLockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class LedgerStore:
    """Shared transactional engine behind every store implementation."""

    def __init__(self, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        if lock_timeout <= 0:
            raise ValueError("lock_timeout must be greater than zero")
        self.lock_timeout = lock_timeout
        self._products: Dict[str, ProductRow] = {}
        self._movements: List[MovementRow] = []
        self._movement_index: Dict[str, MovementRow] = {}
        self._reversals: Dict[str, str] = {}
        self._orders: Dict[str, PurchaseOrderRow] = {}
        self._row_locks: Dict[str, _RowLockEntry] = {}
        self._registry_lock = threading.Lock()
        self._commit_lock = threading.Lock()
        self._next_sequence = 1

    def _load(
        self,
        products: Iterable[ProductRow],
        movements: Iterable[MovementRow],
        orders: Iterable[PurchaseOrderRow],
    ) -> None:
        self._products = {product.product_id: product for product in products}
        self._orders = {order.order_id: order for order in orders}
        self._movements = []
        self._movement_index = {}
        self._reversals = {}
        for movement in sorted(movements, key=lambda m: m.sequence):
            self._publish_movement(movement)
        self._next_sequence = max((m.sequence for m in self._movements), default=0) + 1

    def _publish_movement(self, movement: MovementRow) -> None:
        self._movements.append(movement)
        self._movement_index[movement.movement_id] = movement
        if movement.movement_kind == MovementKind.SALE_REVERSAL.value and movement.linked_movement_id:
            self._reversals[movement.linked_movement_id] = movement.movement_id

    def _checkout_row_lock(self, key: str) -> threading.Lock:
        """Return the lock for ``key``, registering the caller as a user."""
        with self._registry_lock:
            entry = self._row_locks.get(key)
            if entry is None:
                entry = self._row_locks[key] = _RowLockEntry()
            entry.users += 1
            return entry.lock

    def _checkin_row_lock(self, key: str) -> None:
        # entries live only while a transaction holds or waits on them
        with self._registry_lock:
            entry = self._row_locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._row_locks[key]

    def _is_referenced(self, product_id: str) -> bool:
        return any(m.product_id == product_id for m in self._movements) or any(
            o.product_id == product_id for o in self._orders.values()
        )

    @contextmanager
    def transaction(self, *, timeout: Optional[float] = None) -> Iterator[Transaction]:
        """Open a unit of work that commits on success and rolls back on error.

        Args:
            timeout (float | None): Upper bound, in seconds, on the time spent
                waiting for row locks. Defaults to :attr:`lock_timeout`.

        Raises:
            LockTimeout: If a row lock is not granted in time.
            StorageFailure: If the commit cannot be persisted.
        """
        tx = Transaction(self, timeout=timeout if timeout is not None else self.lock_timeout)
        self._begin(tx)
        try:
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise
            tx.commit()
        finally:
            self._end(tx)

    def with_transaction(self, fn: Callable[[Transaction], T], *, timeout: Optional[float] = None) -> T:
        """Run ``fn`` inside a unit of work and return its result."""
        with self.transaction(timeout=timeout) as tx:
            return fn(tx)

    def _commit(self, changes: ChangeSet) -> ChangeSet:
        if changes.is_empty:
            return changes
        with self._commit_lock:
            numbered = tuple(
                replace(movement, sequence=self._next_sequence + offset)
                for offset, movement in enumerate(changes.movements)
            )
            changes = replace(changes, movements=numbered)
            self._persist(changes)
            for product in changes.products:
                self._products[product.product_id] = product
            for product_id in changes.deleted_product_ids:
                self._products.pop(product_id, None)
            for movement in numbered:
                self._publish_movement(movement)
            for order in changes.orders:
                self._orders[order.order_id] = order
            for order_id in changes.deleted_order_ids:
                self._orders.pop(order_id, None)
            self._next_sequence += len(numbered)
        log.debug(
            "Committed %d product(s), %d movement(s), %d order(s)",
            len(changes.products),
            len(numbered),
            len(changes.orders),
        )
        return changes

    def _persist(self, changes: ChangeSet) -> None:
        """Make ``changes`` durable before they are published in memory."""

    def _begin(self, tx: Transaction) -> None:
        """Hook run before a unit of work reads anything."""

    def _end(self, tx: Transaction) -> None:
        """Hook run once a unit of work has committed or rolled back."""

    def _sync(self) -> None:
        """Bring the committed tables up to date with the backing store."""

    # -- committed reads -------------------------------------------------

    def snapshot(self) -> LedgerSnapshot:
        """Copy the committed tables without taking any row lock."""
        self._sync()
        with self._commit_lock:
            snapshot = LedgerSnapshot(
                products=tuple(self._products.values()),
                movements=tuple(self._movements),
                orders=tuple(self._orders.values()),
                taken_at=datetime.now(UTC),
            )
        log.debug(
            "Took ledger snapshot: %d products, %d movements, %d orders",
            len(snapshot.products),
            len(snapshot.movements),
            len(snapshot.orders),
        )
        return snapshot

    def get_product(self, product_id: str) -> ProductRow:
        self._sync()
        try:
            return self._products[product_id]
        except KeyError as exc:
            raise NotFound(f"Unknown product id: {product_id}") from exc

    def get_movement(self, movement_id: str) -> MovementRow:
        self._sync()
        try:
            return self._movement_index[movement_id]
        except KeyError as exc:
            raise NotFound(f"Unknown movement id: {movement_id}") from exc

    def get_order(self, order_id: str) -> PurchaseOrderRow:
        self._sync()
        try:
            return self._orders[order_id]
        except KeyError as exc:
            raise NotFound(f"Unknown purchase order id: {order_id}") from exc

    def reversal_of(self, movement_id: str) -> Optional[str]:
        self._sync()
        return self._reversals.get(movement_id)


class InMemoryLedgerStore(LedgerStore):
    """Volatile store; commits only ever fail through injected faults."""

    def __init__(
        self,
        *,
        products: Iterable[ProductRow] = (),
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(lock_timeout=lock_timeout)
        self._load(products, (), ())


class WorkbookLedgerStore(LedgerStore):
    """Store persisted to the ledger workbook managed by :mod:`data_manager`.

    Several processes may open the same workbook, so every unit of work holds
    an exclusive lock on ``<data_file>.lock`` from its first read until its
    save has finished. Once that lock is held, the tables are reloaded if the
    file changed since this store last read or wrote it; row checks therefore
    always run against the latest saved state.

    Each commit writes the staged rows into the live workbook and saves it
    atomically. When anything goes wrong the in-memory workbook is discarded
    and reloaded from disk on the next commit, and the unit of work fails with
    :class:`StorageFailure`; the published tables are left untouched.
    """

    def __init__(self, data_file: Path, *, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        super().__init__(lock_timeout=lock_timeout)
        self.data_file = Path(data_file).expanduser().resolve()
        self.lock_file = data_manager.lock_path_for(self.data_file)
        self._file_lock = FileLock(str(self.lock_file))
        self._signature = data_manager.workbook_signature(self.data_file)
        self.workbook: Optional[Workbook] = data_manager.open_workbook(self.data_file)
        self._load(
            data_manager.iter_products(self.workbook),
            data_manager.iter_movements(self.workbook),
            data_manager.iter_orders(self.workbook),
        )
        log.info(
            "Loaded workbook store '%s' (%d products, %d movements, %d orders)",
            self.data_file,
            len(self._products),
            len(self._movements),
            len(self._orders),
        )

    def _begin(self, tx: Transaction) -> None:
        try:
            self._file_lock.acquire(timeout=tx.remaining())
        except Timeout as exc:
            log.warning("Timed out waiting for workbook lock '%s'", self.lock_file)
            raise LockTimeout(f"Timed out waiting for lock on {self.data_file}") from exc
        try:
            self._sync()
        except BaseException:
            self._file_lock.release()
            raise

    def _end(self, tx: Transaction) -> None:
        self._file_lock.release()

    def _sync(self) -> None:
        with self._commit_lock:
            current = data_manager.workbook_signature(self.data_file)
            if self.workbook is not None and current == self._signature:
                return
            try:
                workbook = data_manager.refresh_workbook(self.data_file)
            except Exception as exc:
                self.workbook = None
                log.error("Failed to reload ledger workbook '%s': %s", self.data_file, exc)
                raise StorageFailure(f"Could not reload '{self.data_file}': {exc}") from exc
            self.workbook = workbook
            self._signature = current
            self._load(
                data_manager.iter_products(workbook),
                data_manager.iter_movements(workbook),
                data_manager.iter_orders(workbook),
            )
            log.debug("Reloaded workbook store '%s' after an external change", self.data_file)

    def _persist(self, changes: ChangeSet) -> None:
        try:
            if self.workbook is None:
                self.workbook = data_manager.refresh_workbook(self.data_file)
            workbook = self.workbook
            for product_id in changes.deleted_product_ids:
                data_manager.delete_product(workbook, product_id)
            for product in changes.products:
                if product.product_id in changes.new_product_ids:
                    data_manager.append_product(workbook, product)
                else:
                    data_manager.replace_product(workbook, product)
            for movement in changes.movements:
                data_manager.append_movement(workbook, movement)
            for order in changes.orders:
                if order.order_id in changes.new_order_ids:
                    data_manager.append_order(workbook, order)
                else:
                    data_manager.replace_order(workbook, order)
            for order_id in changes.deleted_order_ids:
                data_manager.delete_order(workbook, order_id)
            data_manager.save_workbook(workbook, self.data_file)
            self._signature = data_manager.workbook_signature(self.data_file)
        except Exception as exc:
            self.workbook = None
            log.error("Failed to persist ledger changes to '%s': %s", self.data_file, exc)
            raise StorageFailure(f"Could not persist ledger changes to '{self.data_file}': {exc}") from exc
