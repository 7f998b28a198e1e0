"""Exception taxonomy shared by the store, the BLL and the CLI.

Business-rule rejections derive from :class:`BusinessRuleViolation` and are
never retried. Storage problems derive from :class:`StorageFailure`, which
callers may retry with backoff because the cause is often transient (lock
contention, a workbook held open by another program).
"""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for every failure raised by the stock ledger."""


class BusinessRuleViolation(LedgerError):
    """Raised when a requested operation violates a domain constraint."""


class NotFound(BusinessRuleViolation):
    """Raised when a referenced product, order, or movement is unknown."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a decrement would drive quantity-on-hand below zero."""

    def __init__(self, product_id: str, *, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"available {available}, requested {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class AlreadyReversed(BusinessRuleViolation):
    """Raised on a second reversal attempt for the same movement."""

    def __init__(self, movement_id: str, reversal_id: Optional[str] = None) -> None:
        super().__init__(f"Movement '{movement_id}' has already been reversed")
        self.movement_id = movement_id
        self.reversal_id = reversal_id


class IrreversibleMovement(BusinessRuleViolation):
    """Raised when a movement kind has no compensating reversal."""


class InvalidStateTransition(BusinessRuleViolation):
    """Raised when a purchase order leaves a terminal state."""

    def __init__(self, order_id: str, *, current: str, target: str) -> None:
        super().__init__(
            f"Purchase order '{order_id}' cannot move from {current} to {target}"
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class ProductInUse(BusinessRuleViolation):
    """Raised when deleting a product that movements or orders reference."""


class StorageFailure(LedgerError):
    """Raised when a unit of work could not be committed."""

    retryable = True


class LockTimeout(StorageFailure):
    """Raised when a row lock was not granted before the deadline."""


__all__ = [
    "LedgerError",
    "BusinessRuleViolation",
    "NotFound",
    "InsufficientStock",
    "AlreadyReversed",
    "IrreversibleMovement",
    "InvalidStateTransition",
    "ProductInUse",
    "StorageFailure",
    "LockTimeout",
]
