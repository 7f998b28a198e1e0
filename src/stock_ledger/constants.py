"""Enumerations shared across the stock ledger modules.

Centralises domain constants so that the data access layer (DAL), the
transactional store, the business logic layer (BLL) and the CLI rely on a
single source of truth for ledger identifiers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_ACTOR_ID = "system"
UNCATEGORIZED = "Uncategorized"


class _Unset:
    """Default for keyword arguments the caller left out, so None stays a value."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class MovementKind(str, Enum):
    """Enumerate the stock-moving events recorded in the ledger."""

    SALE = "SALE"
    SALE_REVERSAL = "SALE_REVERSAL"
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"

    @property
    def sign(self) -> int:
        """Direction applied to the counter: only sales decrement stock."""
        return -1 if self is MovementKind.SALE else 1


class OrderStatus(str, Enum):
    """Enumerate the purchase order lifecycle states."""

    PENDING = "PENDING"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class ReportKind(str, Enum):
    """Enumerate the aggregate reports served by the reporting layer."""

    TOP_SELLING = "TopSelling"
    LOW_STOCK = "LowStock"
    REVENUE = "Revenue"
    PROFIT = "Profit"
    VALUATION = "Valuation"
    SALES_BY_CATEGORY = "SalesByCategory"
    PRODUCTS_BY_CATEGORY = "ProductsByCategory"
    DAILY_REVENUE = "DailyRevenue"
    DASHBOARD = "Dashboard"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    STOCK_MOVEMENTS = "StockMovements"
    PURCHASE_ORDERS = "PurchaseOrders"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_ACTOR_ID",
    "UNCATEGORIZED",
    "UNSET",
    "MovementKind",
    "OrderStatus",
    "ReportKind",
    "SheetName",
]
