"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure the source package is importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from stock_ledger.setup_excel import create_master_workbook  # noqa: E402
from stock_ledger.stock_store import InMemoryLedgerStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR_ID = "clerk-default"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "LockTimeoutSeconds = 1.0\n"
    "LowStockThreshold = 10\n\n"
    "[Defaults]\n"
    "DefaultActor = {default_actor_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Paths and values written into one temporary config.ini."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_actor_id: str
    schema_version: str
    store_name: str


def make_product(
    product_id: str = "P1",
    *,
    quantity: int = 10,
    sell_price: str = "2.00",
    cost_price: Optional[str] = "1.25",
    reorder_level: int = 3,
    category: Optional[str] = "Snacks",
    is_active: bool = True,
) -> data_manager.ProductRow:
    """Build a product row whose opening stock equals its quantity."""

    return data_manager.ProductRow(
        product_id=product_id,
        product_name=f"Product {product_id}",
        sell_price=Decimal(sell_price),
        cost_price=Decimal(cost_price) if cost_price is not None else None,
        quantity_on_hand=quantity,
        opening_stock=quantity,
        reorder_level=reorder_level,
        category=category,
        supplier_id="SUP-1",
        is_active=is_active,
    )


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Put sys.path back the way the session found it."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    """Expose :func:`make_product` to tests."""

    return make_product


# ---------------------------------------------------------------------------
# Workbook and config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Write a config.ini plus an empty ledger workbook into a fresh directory."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_actor_id: str = DEFAULT_ACTOR_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_actor_id=default_actor_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_actor_id=default_actor_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Path of a config.ini pointing at an empty ledger workbook."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor_id=DEFAULT_ACTOR_ID,
        lock_timeout=2.0,
        low_stock_threshold=10,
    )


@pytest.fixture
def store() -> InMemoryLedgerStore:
    """Store seeded with two products: P1 (10 @ 2.00) and P2 (5 @ 4.00)."""

    return InMemoryLedgerStore(
        products=[
            make_product("P1"),
            make_product("P2", quantity=5, sell_price="4.00", cost_price="3.00", category="Drinks"),
        ],
        lock_timeout=2.0,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: InMemoryLedgerStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the seeded in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=store)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Bare parser without sub-commands."""

    return argparse.ArgumentParser(prog="stock-ledger", description="Stock ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Sub-command action hanging off ``cli_parser``."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Single command whose executor records that it ran."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("noop")

    spec = cli.CommandSpec(
        name="noop",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "noop", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three specs with distinct names."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
