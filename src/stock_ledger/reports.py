"""Read-only aggregate reports over the stock ledger.

Every report works on a :class:`~stock_ledger.stock_store.LedgerSnapshot`, so
it never takes a row lock and never blocks a movement. Reports that are
composed from several figures (the dashboard) share one snapshot so the
figures agree with each other.

Revenue is always net of reversals: a ``SALE_REVERSAL`` stores the negated
amount of the sale it compensates, so summing both kinds yields the net.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from . import log
from .constants import UNCATEGORIZED, MovementKind, OrderStatus, ReportKind
from .core_logic import RuntimeContext
from .data_manager import MovementRow, ProductRow
from .stock_store import LedgerSnapshot


_SALE_KINDS = frozenset({MovementKind.SALE.value, MovementKind.SALE_REVERSAL.value})


@dataclass(frozen=True)
class TopSeller:
    product_id: str
    product_name: str
    units_sold: int
    revenue: Decimal


@dataclass(frozen=True)
class CategoryRevenue:
    category: str
    revenue: Decimal


@dataclass(frozen=True)
class CategoryCount:
    category: str
    product_count: int


@dataclass(frozen=True)
class DashboardSummary:
    """Headline figures computed from one snapshot."""

    product_count: int
    sale_count: int
    low_stock_count: int
    pending_order_count: int
    inventory_value: Decimal
    total_revenue: Decimal


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _within(movement: MovementRow, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    moment = _as_utc(datetime.fromisoformat(movement.timestamp_iso))
    if start is not None and moment < _as_utc(start):
        return False
    if end is not None and moment > _as_utc(end):
        return False
    return True


def _sale_movements(
    snapshot: LedgerSnapshot,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Iterable[MovementRow]:
    for movement in snapshot.movements:
        if movement.movement_kind in _SALE_KINDS and _within(movement, start, end):
            yield movement


def _snapshot(context: RuntimeContext, snapshot: Optional[LedgerSnapshot]) -> LedgerSnapshot:
    return snapshot if snapshot is not None else context.store.snapshot()


def total_revenue(
    context: RuntimeContext,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    snapshot: Optional[LedgerSnapshot] = None,
) -> Decimal:
    """Return sales revenue net of reversals.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        start (datetime | None): Inclusive lower bound on movement time.
        end (datetime | None): Inclusive upper bound on movement time.
        snapshot (LedgerSnapshot | None): Snapshot to read instead of taking
            a new one.

    Naive bounds are interpreted as UTC.
    """
    data = _snapshot(context, snapshot)
    revenue = sum((m.total_amount for m in _sale_movements(data, start, end)), Decimal("0"))
    log.debug("Calculated total revenue %s (start=%s, end=%s)", revenue, start, end)
    return revenue


def total_profit(context: RuntimeContext, *, snapshot: Optional[LedgerSnapshot] = None) -> Decimal:
    """Return net sales margin using each product's current cost price.

    Historical cost prices are not tracked, so a cost change is applied
    retroactively to every past sale. A missing cost price counts as zero.
    """
    data = _snapshot(context, snapshot)
    products = data.product_map()
    profit = Decimal("0")
    for movement in _sale_movements(data):
        product = products.get(movement.product_id)
        cost = product.cost_price if product is not None and product.cost_price is not None else Decimal("0")
        profit += -movement.quantity_delta * (movement.unit_price - cost)
    log.debug("Calculated total profit %s", profit)
    return profit


def low_stock(
    context: RuntimeContext,
    threshold: Optional[int] = None,
    *,
    snapshot: Optional[LedgerSnapshot] = None,
) -> List[ProductRow]:
    """List products running low, lowest quantity first.

    With an explicit ``threshold`` a product is low when its quantity is
    strictly below it. Without one, each product is compared with its own
    reorder level and is low at or below it. Ties are ordered by product id.
    """
    data = _snapshot(context, snapshot)
    if threshold is None:
        matches = [p for p in data.products if p.quantity_on_hand <= p.reorder_level]
    else:
        matches = [p for p in data.products if p.quantity_on_hand < threshold]
    return sorted(matches, key=lambda p: (p.quantity_on_hand, p.product_id))


def top_selling(context: RuntimeContext, limit: int = 5, *, snapshot: Optional[LedgerSnapshot] = None) -> List[TopSeller]:
    """Rank products by net units sold, highest first.

    Products whose sales were all reversed are left out. Ties are ordered by
    product id ascending.

    Raises:
        ValueError: If ``limit`` is not a positive integer.
    """
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValueError("limit must be a positive integer")

    data = _snapshot(context, snapshot)
    products = data.product_map()
    units: Dict[str, int] = {}
    revenue: Dict[str, Decimal] = {}
    for movement in _sale_movements(data):
        units[movement.product_id] = units.get(movement.product_id, 0) - movement.quantity_delta
        revenue[movement.product_id] = revenue.get(movement.product_id, Decimal("0")) + movement.total_amount

    ranked = sorted(
        (product_id for product_id, sold in units.items() if sold > 0),
        key=lambda product_id: (-units[product_id], product_id),
    )
    return [
        TopSeller(
            product_id=product_id,
            product_name=products[product_id].product_name if product_id in products else "",
            units_sold=units[product_id],
            revenue=revenue[product_id],
        )
        for product_id in ranked[:limit]
    ]


def inventory_valuation(context: RuntimeContext, *, snapshot: Optional[LedgerSnapshot] = None) -> Decimal:
    """Return the stock on hand valued at sell price."""
    data = _snapshot(context, snapshot)
    return sum((p.quantity_on_hand * p.sell_price for p in data.products), Decimal("0"))


def sales_by_category(context: RuntimeContext, *, snapshot: Optional[LedgerSnapshot] = None) -> List[CategoryRevenue]:
    """Return net revenue per category, largest first, ties by name."""
    data = _snapshot(context, snapshot)
    products = data.product_map()
    totals: Dict[str, Decimal] = {}
    for movement in _sale_movements(data):
        product = products.get(movement.product_id)
        category = product.category if product is not None and product.category else UNCATEGORIZED
        totals[category] = totals.get(category, Decimal("0")) + movement.total_amount
    return [
        CategoryRevenue(category=name, revenue=amount)
        for name, amount in sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    ]


def products_by_category(context: RuntimeContext, *, snapshot: Optional[LedgerSnapshot] = None) -> List[CategoryCount]:
    """Return how many products each category holds, largest first, ties by name.

    Inactive products are counted; products without a category are grouped
    under :data:`UNCATEGORIZED`.
    """
    data = _snapshot(context, snapshot)
    counts: Dict[str, int] = {}
    for product in data.products:
        category = product.category or UNCATEGORIZED
        counts[category] = counts.get(category, 0) + 1
    return [
        CategoryCount(category=name, product_count=count)
        for name, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]

def daily_revenue(
    context: RuntimeContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    snapshot: Optional[LedgerSnapshot] = None,
) -> Dict[date, Decimal]:
    """Return net revenue per UTC calendar day, in day order."""
    data = _snapshot(context, snapshot)
    totals: Dict[date, Decimal] = {}
    for movement in _sale_movements(data, start, end):
        day = _as_utc(datetime.fromisoformat(movement.timestamp_iso)).astimezone(UTC).date()
        totals[day] = totals.get(day, Decimal("0")) + movement.total_amount
    return dict(sorted(totals.items()))


def dashboard_summary(context: RuntimeContext, threshold: Optional[int] = None) -> DashboardSummary:
    """Return the headline figures, all read from a single snapshot.

    ``sale_count`` is net of reversals.
    """
    data = context.store.snapshot()
    if threshold is None:
        threshold = context.settings.low_stock_threshold
    sales = sum(1 for m in data.movements if m.movement_kind == MovementKind.SALE.value)
    reversals = sum(1 for m in data.movements if m.movement_kind == MovementKind.SALE_REVERSAL.value)
    return DashboardSummary(
        product_count=len(data.products),
        sale_count=sales - reversals,
        low_stock_count=len(low_stock(context, threshold, snapshot=data)),
        pending_order_count=sum(1 for o in data.orders if o.status == OrderStatus.PENDING.value),
        inventory_value=inventory_valuation(context, snapshot=data),
        total_revenue=total_revenue(context, snapshot=data),
    )


_REPORTS: Dict[ReportKind, Callable[..., Any]] = {
    ReportKind.TOP_SELLING: top_selling,
    ReportKind.LOW_STOCK: low_stock,
    ReportKind.REVENUE: total_revenue,
    ReportKind.PROFIT: total_profit,
    ReportKind.VALUATION: inventory_valuation,
    ReportKind.SALES_BY_CATEGORY: sales_by_category,
    ReportKind.PRODUCTS_BY_CATEGORY: products_by_category,
    ReportKind.DAILY_REVENUE: daily_revenue,
    ReportKind.DASHBOARD: dashboard_summary,
}


def get_report(context: RuntimeContext, kind: Union[ReportKind, str], **params: Any) -> Any:
    """Dispatch a report by kind, forwarding ``params`` as keyword arguments.

    Raises:
        ValueError: If ``kind`` is not a known report.
    """
    try:
        report_kind = ReportKind(kind)
    except ValueError:
        log.error("Unknown report kind requested: %s", kind)
        raise
    log.info("Generating %s report", report_kind.value)
    return _REPORTS[report_kind](context, **params)
