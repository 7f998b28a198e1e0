"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping
from unittest.mock import Mock, call

import pytest

from stock_ledger import cli, core_logic, purchase_orders, reports
from stock_ledger.constants import MovementKind
from stock_ledger.errors import (
    BusinessRuleViolation,
    InsufficientStock,
    InvalidStateTransition,
    LockTimeout,
    NotFound,
    StorageFailure,
)


WRITE_COMMANDS = {
    "add-product",
    "sale",
    "delete-sale",
    "po-create",
    "po-receive",
    "po-cancel",
    "po-delete",
}

READ_COMMANDS = {
    "report",
    "log",
    "verify",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "stock-ledger"
    assert "stock ledger" in (parser.description or "")


def test_build_parser_global_options_have_defaults():
    """--config, --actor and --retries are optional."""

    parser = cli.build_parser()
    namespace = parser.parse_args([])
    assert namespace.config is None
    assert namespace.actor is None
    assert namespace.retries == cli.DEFAULT_RETRY_ATTEMPTS


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire both mutating and read-only commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    """register_write_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
    for name in WRITE_COMMANDS:
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_add_product_command_configures_arguments():
    """register_add_product_command should define the necessary arguments."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_add_product_command(subparsers)
    spec.register(subparsers)
    namespace = parser.parse_args(
        [
            "add-product",
            "--product-id",
            "P1001",
            "--product-name",
            "Chocolate Bar",
            "--sell-price",
            "3.50",
            "--quantity",
            "12",
            "--inactive",
        ]
    )
    assert spec.name == "add-product"
    assert namespace.command == "add-product"
    assert namespace.product_id == "P1001"
    assert namespace.quantity == 12
    assert namespace.reorder_level == 0
    assert namespace.cost_price is None
    assert namespace.inactive is True


def test_register_sale_command_configures_arguments():
    """register_sale_command should require product and quantity."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_sale_command(subparsers).register(subparsers)

    namespace = parser.parse_args(["sale", "--product-id", "P1", "--quantity", "3"])
    assert namespace.quantity == 3
    assert namespace.notes is None
    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--product-id", "P1"])


def test_register_po_create_command_parses_delivery_date():
    """Expected delivery dates are parsed as ISO dates."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_po_create_command(subparsers).register(subparsers)

    namespace = parser.parse_args(
        [
            "po-create",
            "--supplier-id",
            "SUP-1",
            "--product-id",
            "P1",
            "--quantity",
            "20",
            "--unit-cost",
            "1.10",
            "--expected-delivery",
            "2024-07-01",
        ]
    )
    assert namespace.expected_delivery == date(2024, 7, 1)


def test_register_order_command_binds_executor(subparsers_action):
    """Order commands share one registrar but keep their own executor."""

    spec = cli.register_order_command(subparsers_action, "po-cancel", "Cancel.", cli.run_po_cancel)
    parser = spec.register(subparsers_action)

    assert spec.execute is cli.run_po_cancel
    assert parser.parse_args(["--order-id", "PO1"]).order_id == "PO1"


def test_register_report_command_restricts_kinds():
    """Only known report kinds are accepted."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_report_command(subparsers).register(subparsers)

    namespace = parser.parse_args(["report", "Revenue", "--start", "2024-01-01T00:00:00"])
    assert namespace.kind == "Revenue"
    assert namespace.start == datetime(2024, 1, 1)
    with pytest.raises(SystemExit):
        parser.parse_args(["report", "Forecast"])


def test_register_log_command_configures_arguments(subparsers_action):
    spec = cli.register_log_command(subparsers_action)
    parser = spec.register(subparsers_action)

    assert parser.parse_args([]).product_id is None
    assert parser.parse_args(["--product-id", "P1"]).product_id == "P1"


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    context = Mock(name="context")
    context.settings.schema_version = cli.core_logic.EXPECTED_SCHEMA_VERSION

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is context


def test_load_runtime_context_rejects_schema_mismatch(config_factory):
    """A config declaring another schema version is refused."""

    bundle = config_factory(schema_version="1.0.0")
    with pytest.raises(RuntimeError, match="schema"):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context, command_table_entry):
    """dispatch_command should call the executor associated with the command."""

    command_name, spec = command_table_entry
    args = argparse.Namespace(command=command_name)
    result = cli.dispatch_command(context, args, {command_name: spec})
    assert result == 0
    assert spec.execute.__dict__["called"] is True


def test_dispatch_command_handles_unknown_commands(context):
    """dispatch_command should raise a clear error for unknown commands."""

    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should index specs by their command names."""

    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    """build_command_table should guard against duplicate command names."""

    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def test_run_with_retry_backs_off_exponentially():
    """Storage failures are retried with doubling delays."""

    operation = Mock(side_effect=[StorageFailure("busy"), LockTimeout("busy"), "done"])
    sleep = Mock()

    assert cli.run_with_retry(operation, attempts=3, base_delay=0.2, sleep=sleep) == "done"
    assert operation.call_count == 3
    assert sleep.call_args_list == [call(0.2), call(0.4)]


def test_run_with_retry_reraises_after_last_attempt():
    operation = Mock(side_effect=StorageFailure("still busy"))
    sleep = Mock()

    with pytest.raises(StorageFailure, match="still busy"):
        cli.run_with_retry(operation, attempts=2, sleep=sleep)
    assert operation.call_count == 2
    assert sleep.call_count == 1


def test_run_with_retry_does_not_retry_business_rules():
    """Rejections are final and surface immediately."""

    operation = Mock(side_effect=InsufficientStock("P1", available=1, requested=3))
    sleep = Mock()

    with pytest.raises(InsufficientStock):
        cli.run_with_retry(operation, sleep=sleep)
    assert operation.call_count == 1
    sleep.assert_not_called()


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_add_product_returns_command():
    args = argparse.Namespace(
        product_id="P1001",
        product_name="Chocolate Bar",
        sell_price="3.50",
        cost_price="2.10",
        quantity=12,
        reorder_level=4,
        category="Snacks",
        supplier_id="SUP-9",
        inactive=True,
    )

    command = cli.translate_add_product(args)

    assert command == core_logic.NewProductCommand(
        product_id="P1001",
        product_name="Chocolate Bar",
        sell_price=Decimal("3.50"),
        quantity=12,
        cost_price=Decimal("2.10"),
        reorder_level=4,
        category="Snacks",
        supplier_id="SUP-9",
        is_active=False,
    )


def test_translate_sale_carries_actor():
    args = argparse.Namespace(product_id="P1", quantity=2, actor="till-3", notes="promo")

    command = cli.translate_sale(args)

    assert command == core_logic.SaleCommand(product_id="P1", quantity=2, actor_id="till-3", notes="promo")


def test_translate_po_create_returns_command():
    args = argparse.Namespace(
        supplier_id="SUP-1",
        product_id="P1",
        quantity=20,
        unit_cost="1.10",
        expected_delivery=date(2024, 7, 1),
        actor=None,
        notes=None,
    )

    command = cli.translate_po_create(args)

    assert command.unit_cost == Decimal("1.10")
    assert command.expected_delivery == date(2024, 7, 1)
    assert command.actor_id is None


@pytest.mark.parametrize(
    "kind, expected",
    [
        ("TopSelling", {"limit": 3}),
        ("LowStock", {"threshold": 5}),
        ("Revenue", {"start": datetime(2024, 1, 1)}),
        ("Profit", {}),
    ],
)
def test_translate_report_keeps_relevant_options(kind, expected):
    args = argparse.Namespace(kind=kind, limit=3, threshold=5, start=datetime(2024, 1, 1), end=None)

    assert cli.translate_report(args) == expected


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_sale_invokes_bll(context, monkeypatch, capsys):
    """run_sale should delegate to the business logic layer."""

    command = core_logic.SaleCommand(product_id="P1", quantity=1)
    monkeypatch.setattr(cli, "translate_sale", lambda value: command)
    called = {}

    def fake_record(ctx: core_logic.RuntimeContext, cmd: core_logic.SaleCommand) -> core_logic.MovementResult:
        called["context"] = ctx
        called["cmd"] = cmd
        return core_logic.MovementResult("P1", MovementKind.SALE, 9, "S1")

    monkeypatch.setattr(cli.core_logic, "record_sale", fake_record)
    result = cli.run_sale(context, argparse.Namespace())

    assert result == 0
    assert called["context"] is context
    assert called["cmd"] is command
    assert "stock is now 9" in capsys.readouterr().out


def test_run_sale_retries_storage_failures(context, monkeypatch):
    """Writes are wrapped in the retry policy."""

    outcomes = Mock(side_effect=[StorageFailure("busy"), core_logic.MovementResult("P1", MovementKind.SALE, 9, "S1")])
    monkeypatch.setattr(cli.core_logic, "record_sale", lambda ctx, cmd: outcomes())
    monkeypatch.setattr(cli.time, "sleep", Mock())
    args = argparse.Namespace(product_id="P1", quantity=1, actor=None, notes=None, retries=3)

    assert cli.run_sale(context, args) == 0
    assert outcomes.call_count == 2


def test_run_delete_sale_reverses_movement(context, capsys):
    sale = core_logic.record_sale(context, core_logic.SaleCommand(product_id="P1", quantity=4))
    args = argparse.Namespace(movement_id=sale.movement_id, actor="manager", notes=None)

    assert cli.run_delete_sale(context, args) == 0
    assert context.store.get_product("P1").quantity_on_hand == 10
    assert "restored to 10" in capsys.readouterr().out


def test_run_po_commands_drive_the_order_lifecycle(context, capsys):
    create_args = argparse.Namespace(
        supplier_id="SUP-1",
        product_id="P1",
        quantity=20,
        unit_cost="1.10",
        expected_delivery=None,
        actor=None,
        notes=None,
    )
    assert cli.run_po_create(context, create_args) == 0
    (order,) = purchase_orders.list_orders(context)

    assert cli.run_po_receive(context, argparse.Namespace(order_id=order.order_id, actor=None)) == 0
    assert context.store.get_product("P1").quantity_on_hand == 30
    with pytest.raises(InvalidStateTransition):
        cli.run_po_cancel(context, argparse.Namespace(order_id=order.order_id))
    assert "stock is now 30" in capsys.readouterr().out


def test_run_report_invokes_reports(context, monkeypatch, capsys):
    """run_report should forward only the options the report understands."""

    called = {}

    def fake_get_report(ctx, kind, **params):
        called.update(context=ctx, kind=kind, params=params)
        return [reports.TopSeller("P1", "Product P1", 3, Decimal("6.00"))]

    monkeypatch.setattr(cli.reports, "get_report", fake_get_report)
    args = argparse.Namespace(kind="TopSelling", limit=2, threshold=None, start=None, end=None)

    assert cli.run_report(context, args) == 0
    assert called == {"context": context, "kind": "TopSelling", "params": {"limit": 2}}
    assert "product_id=P1 | product_name=Product P1 | units_sold=3 | revenue=6.00" in capsys.readouterr().out


def test_run_report_products_by_category(context, capsys):
    args = argparse.Namespace(kind="ProductsByCategory", limit=None, threshold=None, start=None, end=None)

    assert cli.run_report(context, args) == 0
    out = capsys.readouterr().out
    assert "category=Drinks | product_count=1" in out
    assert "category=Snacks | product_count=1" in out


def test_run_log_report_lists_movements(context, capsys):
    sale = core_logic.record_sale(context, core_logic.SaleCommand(product_id="P2", quantity=1))

    assert cli.run_log_report(context, argparse.Namespace(product_id="P2")) == 0
    assert sale.movement_id in capsys.readouterr().out


def test_run_verify_reports_discrepancies(context, capsys):
    assert cli.run_verify(context, argparse.Namespace()) == 0
    assert "agree" in capsys.readouterr().out

    from dataclasses import replace

    context.store._products["P2"] = replace(context.store._products["P2"], quantity_on_hand=1)
    assert cli.run_verify(context, argparse.Namespace()) == 1
    assert "product_id=P2" in capsys.readouterr().out


def test_print_result_handles_mappings_and_empty_lists(capsys):
    cli.print_result({date(2024, 1, 1): Decimal("4.00")})
    cli.print_result([])

    assert capsys.readouterr().out.splitlines() == ["2024-01-01: 4.00", "(no rows)"]


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (InsufficientStock("P1", available=2, requested=5), 2),
        (NotFound("missing"), 2),
        (BusinessRuleViolation("invalid"), 2),
        (FileNotFoundError("missing"), 3),
        (LockTimeout("busy"), 4),
        (StorageFailure("disk"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert caplog.records


def test_handle_cli_error_reports_available_stock(capsys):
    cli.handle_cli_error(InsufficientStock("P1", available=2, requested=5))

    assert "only 2 available" in capsys.readouterr().out


def test_handle_cli_error_asks_to_retry_storage_failures(capsys):
    cli.handle_cli_error(StorageFailure("workbook locked"))

    assert "try again" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, context):
    """main should execute the command parsed from argv."""

    parser = _stub_parser(command="verify")
    command_table = {"verify": cli.CommandSpec("verify", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    called = {}

    def fake_dispatch(ctx: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called.update(context=ctx, args=args, table=table)
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    assert cli.main(["verify"]) == 0
    assert called["context"] is context
    assert called["args"].command == "verify"
    assert called["table"] is command_table


def test_main_handles_bll_errors(monkeypatch, context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="sale")
    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    def fake_dispatch(*_: object) -> int:
        raise BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    assert cli.main(["sale"]) == 99
    assert isinstance(handled["error"], BusinessRuleViolation)


def test_main_end_to_end_against_workbook(config_file, capsys):
    """A full session: create, sell, oversell, report and verify."""

    base = ["--config", str(config_file), "--actor", "clerk-7"]

    assert cli.main(base + ["add-product", "--product-id", "P1", "--product-name", "Crisps",
                            "--sell-price", "2.00", "--cost-price", "1.25", "--quantity", "10"]) == 0
    assert cli.main(base + ["sale", "--product-id", "P1", "--quantity", "3"]) == 0
    assert cli.main(base + ["sale", "--product-id", "P1", "--quantity", "20"]) == 2
    assert cli.main(base + ["report", "Revenue"]) == 0
    assert cli.main(base + ["verify"]) == 0

    out = capsys.readouterr().out
    assert "stock is now 7" in out
    assert "only 7 available" in out
    assert "6" in out.splitlines()[-2]

    context = core_logic.load_runtime_context(config_file)
    (movement,) = core_logic.list_movements(context)
    assert movement.actor_id == "clerk-7"


def test_main_missing_config_returns_exit_code_three(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "verify"]) == 3


def test_main_unknown_product_is_business_rule(config_file):
    assert cli.main(["--config", str(config_file), "sale", "--product-id", "nope", "--quantity", "1"]) == 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
