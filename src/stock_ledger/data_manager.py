"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_ACTOR_ID,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOW_STOCK_THRESHOLD,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value
ORDERS_SHEET = SheetName.PURCHASE_ORDERS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "Category",
        "SupplierID",
        "SellPrice",
        "CostPrice",
        "QuantityOnHand",
        "OpeningStock",
        "ReorderLevel",
        "IsActive",
    ],
    MOVEMENTS_SHEET: [
        "MovementID",
        "Sequence",
        "Timestamp",
        "MovementKind",
        "ProductID",
        "QuantityDelta",
        "UnitPrice",
        "TotalAmount",
        "ActorID",
        "LinkedMovementID",
        "Notes",
    ],
    ORDERS_SHEET: [
        "OrderID",
        "SupplierID",
        "ProductID",
        "Quantity",
        "UnitCost",
        "TotalCost",
        "Status",
        "OrderTimestamp",
        "ExpectedDelivery",
        "ReceivedTimestamp",
        "ActorID",
        "Notes",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_actor_id: str = DEFAULT_ACTOR_ID
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    sell_price: Decimal
    cost_price: Optional[Decimal]
    quantity_on_hand: int
    opening_stock: int
    reorder_level: int
    category: Optional[str]
    supplier_id: Optional[str]
    is_active: bool


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``StockMovements`` sheet."""

    movement_id: str
    sequence: int
    timestamp_iso: str
    movement_kind: str
    product_id: str
    quantity_delta: int
    unit_price: Decimal
    total_amount: Decimal
    actor_id: Optional[str]
    linked_movement_id: Optional[str]
    notes: Optional[str]


@dataclass(frozen=True)
class PurchaseOrderRow:
    """In-memory view of a row from the ``PurchaseOrders`` sheet."""

    order_id: str
    supplier_id: str
    product_id: str
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    status: str
    order_timestamp_iso: str
    expected_delivery_iso: Optional[str]
    received_timestamp_iso: Optional[str]
    actor_id: Optional[str]
    notes: Optional[str]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Ledger]`` and ``[Defaults]`` are
    optional and fall back to the package defaults. Relative ``DataFile``
    entries are anchored to ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    lock_timeout = parser.getfloat(
        "Ledger", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    low_stock_threshold = parser.getint(
        "Ledger", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    default_actor = parser.get(
        "Defaults", "DefaultActor", fallback=DEFAULT_ACTOR_ID)

    if lock_timeout <= 0:
        raise ValueError("LockTimeoutSeconds must be greater than zero")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_actor_id=default_actor,
        lock_timeout=lock_timeout,
        low_stock_threshold=low_stock_threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and verify that every managed sheet exists.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If one of the sheets in :data:`SHEET_COLUMNS` is missing.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = missing_sheets(wb)
    if missing:
        log.error("Workbook '%s' is missing sheets: %s", data_file, ", ".join(missing))
        raise KeyError(f"Workbook '{data_file}' lacks sheets: {', '.join(missing)}")
    return wb


def missing_sheets(workbook: Workbook) -> list[str]:
    """Return the managed sheet names absent from ``workbook``."""

    return [name for name in SHEET_COLUMNS if name not in workbook.sheetnames]


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook atomically at ``destination``.

    The workbook is serialized into a temporary file in the destination folder
    and then moved over the target with :func:`os.replace`, so readers never
    observe a half-written file.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    log.debug("Saved workbook to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def lock_path_for(data_file: Path) -> Path:
    """Return the sibling lock file guarding writes to ``data_file``."""

    data_file = Path(data_file)
    return data_file.with_name(f"{data_file.name}.lock")


def workbook_signature(data_file: Path) -> Optional[tuple[int, int, int]]:
    """Identify the saved revision of ``data_file``.

    :func:`save_workbook` replaces the file, so the inode changes with every
    save; size and modification time catch edits made by other programs.
    Returns ``None`` when the file does not exist.
    """

    try:
        stat = Path(data_file).stat()
    except FileNotFoundError:
        return None
    return (stat.st_ino, stat.st_size, stat.st_mtime_ns)


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Yields:
        ProductRow: One structured row for each non-empty record in the sheet.
    """

    for raw in _iter_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Stream ledger entries from the ``StockMovements`` worksheet in sheet order."""

    for raw in _iter_rows(workbook, MOVEMENTS_SHEET):
        yield deserialize_movement(raw)


def iter_orders(workbook: Workbook) -> Iterable[PurchaseOrderRow]:
    """Stream purchase orders from the ``PurchaseOrders`` worksheet."""

    for raw in _iter_rows(workbook, ORDERS_SHEET):
        yield deserialize_order(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_movement(workbook: Workbook, record: MovementRow) -> None:
    """Append a ledger entry to the ``StockMovements`` worksheet.

    Monetary fields remain :class:`~decimal.Decimal` instances after
    serialization so Excel keeps their precision when the workbook is saved.
    """

    workbook[MOVEMENTS_SHEET].append(serialize_movement(record))


def append_order(workbook: Workbook, record: PurchaseOrderRow) -> None:
    """Append a purchase order to the ``PurchaseOrders`` worksheet."""

    workbook[ORDERS_SHEET].append(serialize_order(record))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values)


def update_order(workbook: Workbook, order_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing purchase order.

    Raises:
        KeyError: If the order or any referenced column is missing.
    """

    _update_row(workbook, ORDERS_SHEET, "OrderID", order_id, field_values)


def replace_product(workbook: Workbook, record: ProductRow) -> None:
    """Overwrite every column of the product row matching ``record``."""

    columns = SHEET_COLUMNS[PRODUCTS_SHEET]
    update_product(workbook, record.product_id, field_values=dict(zip(columns, serialize_product(record))))


def replace_order(workbook: Workbook, record: PurchaseOrderRow) -> None:
    """Overwrite every column of the purchase order row matching ``record``."""

    columns = SHEET_COLUMNS[ORDERS_SHEET]
    update_order(workbook, record.order_id, field_values=dict(zip(columns, serialize_order(record))))


def delete_product(workbook: Workbook, product_id: str) -> None:
    """Remove the product row keyed by ``product_id``.

    Raises:
        KeyError: If the product cannot be found.
    """

    _delete_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)


def delete_order(workbook: Workbook, order_id: str) -> None:
    """Remove the purchase order row keyed by ``order_id``.

    Raises:
        KeyError: If the order cannot be found.
    """

    _delete_row(workbook, ORDERS_SHEET, "OrderID", order_id)


def _header_map(workbook: Workbook, sheet_name: str) -> dict[str, int]:
    headers = list(workbook[sheet_name][1])
    return {cell.value: idx + 1 for idx, cell in enumerate(headers)}


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, field_values: dict[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in {sheet_name}: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def _delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in {sheet_name}: {key_value}")
    workbook[sheet_name].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the key column.
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
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.category,
        record.supplier_id,
        record.sell_price,
        record.cost_price,
        record.quantity_on_hand,
        record.opening_stock,
        record.reorder_level,
        record.is_active,
    ]


def serialize_movement(record: MovementRow) -> list[object]:
    """Convert a ledger entry into the ``StockMovements`` column ordering."""

    return [
        record.movement_id,
        record.sequence,
        record.timestamp_iso,
        record.movement_kind,
        record.product_id,
        record.quantity_delta,
        record.unit_price,
        record.total_amount,
        record.actor_id,
        record.linked_movement_id,
        record.notes,
    ]


def serialize_order(record: PurchaseOrderRow) -> list[object]:
    """Convert a purchase order into the ``PurchaseOrders`` column ordering."""

    return [
        record.order_id,
        record.supplier_id,
        record.product_id,
        record.quantity,
        record.unit_cost,
        record.total_cost,
        record.status,
        record.order_timestamp_iso,
        record.expected_delivery_iso,
        record.received_timestamp_iso,
        record.actor_id,
        record.notes,
    ]


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    return int(raw) if raw is not None else 0


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifiers are coerced to ``str`` because Excel happily turns numeric ids
    into numbers; money becomes :class:`~decimal.Decimal` and counters ``int``.
    """

    (
        product_id,
        product_name,
        category,
        supplier_id,
        sell_raw,
        cost_raw,
        quantity_raw,
        opening_raw,
        reorder_raw,
        is_active,
    ) = raw_row

    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        sell_price=_to_decimal(sell_raw),
        cost_price=Decimal(str(cost_raw)) if cost_raw is not None else None,
        quantity_on_hand=_to_int(quantity_raw),
        opening_stock=_to_int(opening_raw),
        reorder_level=_to_int(reorder_raw),
        category=_to_optional_str(category),
        supplier_id=_to_optional_str(supplier_id),
        is_active=bool(is_active),
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    """Convert a raw worksheet row into a strongly typed ledger entry."""

    (
        movement_id,
        sequence,
        timestamp_iso,
        movement_kind,
        product_id,
        delta_raw,
        unit_price_raw,
        total_raw,
        actor_id,
        linked_movement_id,
        notes,
    ) = raw_row

    return MovementRow(
        movement_id=str(movement_id),
        sequence=_to_int(sequence),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        movement_kind=str(movement_kind) if movement_kind is not None else "",
        product_id=str(product_id),
        quantity_delta=_to_int(delta_raw),
        unit_price=_to_decimal(unit_price_raw),
        total_amount=_to_decimal(total_raw),
        actor_id=_to_optional_str(actor_id),
        linked_movement_id=_to_optional_str(linked_movement_id),
        notes=_to_optional_str(notes),
    )


def deserialize_order(raw_row: Sequence[object]) -> PurchaseOrderRow:
    """Convert a raw worksheet row into a strongly typed purchase order."""

    (
        order_id,
        supplier_id,
        product_id,
        quantity_raw,
        unit_cost_raw,
        total_cost_raw,
        status,
        order_timestamp_iso,
        expected_delivery_iso,
        received_timestamp_iso,
        actor_id,
        notes,
    ) = raw_row

    return PurchaseOrderRow(
        order_id=str(order_id),
        supplier_id=str(supplier_id) if supplier_id is not None else "",
        product_id=str(product_id),
        quantity=_to_int(quantity_raw),
        unit_cost=_to_decimal(unit_cost_raw),
        total_cost=_to_decimal(total_cost_raw),
        status=str(status),
        order_timestamp_iso=str(order_timestamp_iso) if order_timestamp_iso is not None else "",
        expected_delivery_iso=_to_optional_str(expected_delivery_iso),
        received_timestamp_iso=_to_optional_str(received_timestamp_iso),
        actor_id=_to_optional_str(actor_id),
        notes=_to_optional_str(notes),
    )
