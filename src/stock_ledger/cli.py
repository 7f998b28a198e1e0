"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Storage failures are retried here with
exponential backoff; business-rule rejections are reported immediately.
"""

from __future__ import annotations

import argparse
import time
from dataclasses import asdict, dataclass, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TypeVar

from . import core_logic, log, purchase_orders, reports
from .constants import ReportKind
from .errors import BusinessRuleViolation, InsufficientStock, StorageFailure


T = TypeVar("T")

DEFAULT_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 0.2

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BUSINESS_RULE = 2
EXIT_MISSING_FILE = 3
EXIT_STORAGE_FAILURE = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Command-line tools for the stock ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards).",
    )
    parser.add_argument(
        "--actor",
        default=None,
        help="Identifier recorded on every movement (defaults to [Defaults] DefaultActor).",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_RETRY_ATTEMPTS,
        help="Attempts for a write that hits a storage failure (default: 3).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and receipts."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "po-create": register_po_create_command(subparsers),
        "po-receive": register_order_command(
            subparsers, "po-receive", "Receive a pending purchase order into stock.", run_po_receive
        ),
        "po-cancel": register_order_command(
            subparsers, "po-cancel", "Cancel a pending purchase order.", run_po_cancel
        ),
        "po-delete": register_order_command(
            subparsers, "po-delete", "Delete a pending purchase order.", run_po_delete
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "report": register_report_command(subparsers),
        "log": register_log_command(subparsers),
        "verify": register_verify_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Create a product with its opening stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--sell-price", required=True)
        parser.add_argument("--cost-price", default=None)
        parser.add_argument("--quantity", type=int, default=0, help="Opening stock.")
        parser.add_argument("--reorder-level", type=int, default=0)
        parser.add_argument("--category", default=None)
        parser.add_argument("--supplier-id", default=None)
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale at the product's current price."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Reverse a sale and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--movement-id", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale)


def register_po_create_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``po-create``."""
    name = "po-create"
    help_text = "Place a purchase order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--unit-cost", required=True)
        parser.add_argument("--expected-delivery", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_po_create)


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Register a command that acts on a single purchase order."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display an aggregate report."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("kind", choices=[member.value for member in ReportKind])
        parser.add_argument("--threshold", type=int, default=None)
        parser.add_argument("--limit", type=int, default=None)
        parser.add_argument("--start", type=datetime.fromisoformat, default=None)
        parser.add_argument("--end", type=datetime.fromisoformat, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the stock movement ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_verify_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``verify``."""
    name = "verify"
    help_text = "Check every stock counter against the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def run_with_retry(
    operation: Callable[[], T],
    *,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY_SECONDS,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``operation``, retrying only :class:`StorageFailure` with backoff.

    The delay doubles after every failed attempt. The last failure is
    re-raised once ``attempts`` are exhausted.
    """
    sleep = sleep or time.sleep
    attempt = 1
    while True:
        try:
            return operation()
        except StorageFailure as error:
            if attempt >= attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            log.warning("Attempt %d/%d failed (%s); retrying in %.2fs", attempt, attempts, error, delay)
            sleep(delay)
            attempt += 1


def _retry(args: argparse.Namespace, operation: Callable[[], T]) -> T:
    return run_with_retry(operation, attempts=getattr(args, "retries", DEFAULT_RETRY_ATTEMPTS))


def translate_add_product(args: argparse.Namespace) -> core_logic.NewProductCommand:
    """Translate CLI args into an add-product command object."""
    return core_logic.NewProductCommand(
        product_id=args.product_id,
        product_name=args.product_name,
        sell_price=Decimal(args.sell_price),
        quantity=args.quantity,
        cost_price=Decimal(args.cost_price) if args.cost_price is not None else None,
        reorder_level=args.reorder_level,
        category=args.category,
        supplier_id=args.supplier_id,
        is_active=not getattr(args, "inactive", False),
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        actor_id=args.actor,
        notes=args.notes,
    )


def translate_po_create(args: argparse.Namespace) -> purchase_orders.CreateOrderCommand:
    """Translate CLI args into a purchase order command object."""
    return purchase_orders.CreateOrderCommand(
        supplier_id=args.supplier_id,
        product_id=args.product_id,
        quantity=args.quantity,
        unit_cost=Decimal(args.unit_cost),
        expected_delivery=args.expected_delivery,
        actor_id=args.actor,
        notes=args.notes,
    )


_REPORT_PARAMS: Mapping[ReportKind, Sequence[str]] = {
    ReportKind.TOP_SELLING: ("limit",),
    ReportKind.LOW_STOCK: ("threshold",),
    ReportKind.REVENUE: ("start", "end"),
    ReportKind.DAILY_REVENUE: ("start", "end"),
    ReportKind.DASHBOARD: ("threshold",),
}


def translate_report(args: argparse.Namespace) -> Dict[str, Any]:
    """Keep only the options the selected report understands."""
    names = _REPORT_PARAMS.get(ReportKind(args.kind), ())
    return {name: getattr(args, name) for name in names if getattr(args, name, None) is not None}


def format_value(value: Any) -> str:
    """Render a report value or row as one line of text."""
    if is_dataclass(value) and not isinstance(value, type):
        return " | ".join(f"{key}={item}" for key, item in asdict(value).items())
    return str(value)


def print_result(result: Any) -> None:
    if isinstance(result, Mapping):
        for key, value in result.items():
            print(f"{key}: {format_value(value)}")
    elif isinstance(result, list):
        if not result:
            print("(no rows)")
        for row in result:
            print(format_value(row))
    else:
        print(format_value(result))


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    command = translate_add_product(args)
    product = _retry(args, lambda: core_logic.add_product(context, command))
    print(f"Created product {product.product_id} with stock {product.quantity_on_hand}")
    return EXIT_OK


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    command = translate_sale(args)
    result = _retry(args, lambda: core_logic.record_sale(context, command))
    print(f"Sale {result.movement_id} recorded; stock is now {result.new_stock}")
    return EXIT_OK


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale reversal workflow via the BLL."""
    result = _retry(
        args,
        lambda: core_logic.delete_sale(context, args.movement_id, actor_id=args.actor, notes=args.notes),
    )
    print(f"Sale {args.movement_id} reversed by {result.movement_id}; stock restored to {result.new_stock}")
    return EXIT_OK


def run_po_create(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase order creation workflow."""
    command = translate_po_create(args)
    order = _retry(args, lambda: purchase_orders.create_order(context, command))
    print(f"Purchase order {order.order_id} created (total cost {order.total_cost})")
    return EXIT_OK


def run_po_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase order receipt workflow."""
    result = _retry(args, lambda: core_logic.receive_purchase_order(context, args.order_id, actor_id=args.actor))
    print(f"Purchase order {args.order_id} received; stock is now {result.new_stock}")
    return EXIT_OK


def run_po_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase order cancellation workflow."""
    _retry(args, lambda: purchase_orders.cancel_order(context, args.order_id))
    print(f"Purchase order {args.order_id} cancelled")
    return EXIT_OK


def run_po_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase order deletion workflow."""
    _retry(args, lambda: purchase_orders.delete_order(context, args.order_id))
    print(f"Purchase order {args.order_id} deleted")
    return EXIT_OK


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the requested aggregate report."""
    result = reports.get_report(context, args.kind, **translate_report(args))
    print_result(result)
    return EXIT_OK


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the movement ledger listing."""
    print_result(core_logic.list_movements(context, product_id=args.product_id))
    return EXIT_OK


def run_verify(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger consistency audit."""
    discrepancies = core_logic.verify_ledger(context)
    if not discrepancies:
        print("Ledger and stock counters agree.")
        return EXIT_OK
    print_result(discrepancies)
    return EXIT_ERROR


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, InsufficientStock):
        log.error("%s", error)
        print(f"Not enough stock: only {error.available} available.")
        return EXIT_BUSINESS_RULE
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        print(str(error))
        return EXIT_BUSINESS_RULE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    if isinstance(error, StorageFailure):
        log.error("%s", error)
        print("The ledger is busy or unavailable; please try again.")
        return EXIT_STORAGE_FAILURE
    log.error("%s", error)
    return EXIT_ERROR


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
