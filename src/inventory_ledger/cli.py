"""Command-line entry points for the inventory ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the engine, and
printing results. Keeping the CLI thin ensures the same parser configuration
can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO
import sys

from . import core_logic, log, queries
from .constants import MovementKind, MovementReason, MovementStatus, ProductStatus


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="inventory-ledger",
        description="Record, amend, void, and reconcile inventory movements.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
    """Declare mutating CLI commands."""
    specs = {
        "add-product": register_add_product_command(),
        "add-user": register_add_user_command(),
        "set-product-status": register_set_product_status_command(),
        "record": register_record_command(),
        "amend": register_amend_command(),
        "void": register_void_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "show": register_show_command(),
        "history": register_history_command(),
        "stock": register_stock_command(),
        "reconcile": register_reconcile_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def decimal_argument(value: str) -> Decimal:
    """argparse ``type`` for decimal quantities."""
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {value!r}") from exc


def date_argument(value: str) -> date:
    """argparse ``type`` for ISO ``YYYY-MM-DD`` dates."""
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {value!r}") from exc


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--product-code", default=None)
        parser.add_argument("--opening-stock", type=decimal_argument, default=Decimal("0"))
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, writes=True)


def register_add_user_command() -> CommandSpec:
    """Register the parser and executor for ``add-user``."""
    name = "add-user"
    help_text = "Register a user in the Users sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        parser.add_argument("--user-name", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user, writes=True)


def register_set_product_status_command() -> CommandSpec:
    """Register the parser and executor for ``set-product-status``."""
    name = "set-product-status"
    help_text = "Activate or deactivate a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in ProductStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_product_status, writes=True)


def register_record_command() -> CommandSpec:
    """Register the parser and executor for ``record``."""
    name = "record"
    help_text = "Record a stock entry or exit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--kind", choices=[member.value for member in MovementKind], required=True)
        parser.add_argument("--quantity", type=decimal_argument, required=True)
        parser.add_argument("--reason", choices=[member.value for member in MovementReason], required=True)
        parser.add_argument("--date", dest="occurred_on", type=date_argument, default=None)
        parser.add_argument("--actor-id", default=None)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record, writes=True)


def register_amend_command() -> CommandSpec:
    """Register the parser and executor for ``amend``."""
    name = "amend"
    help_text = "Amend the product, kind, quantity, or note of a movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--movement-id", required=True)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--kind", choices=[member.value for member in MovementKind], default=None)
        parser.add_argument("--quantity", type=decimal_argument, default=None)
        parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_amend, writes=True)


def register_void_command() -> CommandSpec:
    """Register the parser and executor for ``void``."""
    name = "void"
    help_text = "Void an existing movement and revert its stock effect."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--movement-id", required=True)
        parser.add_argument("--voided-by", default=None)
        parser.add_argument("--reason", dest="void_reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void, writes=True)


def register_show_command() -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display a single movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--movement-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_history_command() -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "List movements, most recent first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="date_from", type=date_argument, default=None)
        parser.add_argument("--to", dest="date_to", type=date_argument, default=None)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--kind", choices=[member.value for member in MovementKind], default=None)
        parser.add_argument("--reason", choices=[member.value for member in MovementReason], default=None)
        parser.add_argument("--status", choices=[member.value for member in MovementStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive products.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_reconcile_command() -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Compare cached stock with the ledger history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
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


def translate_record(args: argparse.Namespace) -> core_logic.CreateMovementCommand:
    """Translate CLI args into a create-movement command object."""
    return core_logic.CreateMovementCommand(
        product_id=args.product_id,
        kind=MovementKind(args.kind),
        quantity=args.quantity,
        reason=MovementReason(args.reason),
        occurred_on=args.occurred_on,
        actor_id=args.actor_id,
        note=args.note,
    )


def translate_amend(args: argparse.Namespace) -> core_logic.AmendMovementCommand:
    """Translate CLI args into an amend-movement command object."""
    return core_logic.AmendMovementCommand(
        movement_id=args.movement_id,
        product_id=args.product_id,
        kind=MovementKind(args.kind) if args.kind else None,
        quantity=args.quantity,
        note=args.note,
    )


def translate_void(args: argparse.Namespace) -> core_logic.VoidMovementCommand:
    """Translate CLI args into a void-movement command object."""
    return core_logic.VoidMovementCommand(
        movement_id=args.movement_id,
        voided_by=args.voided_by,
        void_reason=args.void_reason,
    )


def translate_history(args: argparse.Namespace) -> queries.MovementFilters:
    """Translate CLI args into history filters."""
    return queries.MovementFilters(
        date_from=args.date_from,
        date_to=args.date_to,
        product_id=args.product_id,
        kind=MovementKind(args.kind) if args.kind else None,
        reason=MovementReason(args.reason) if args.reason else None,
        status=MovementStatus(args.status) if args.status else None,
    )


def format_movement(view: queries.MovementView) -> str:
    """Render one movement as a single report line (plus its note, if any)."""
    movement = view.movement
    product = view.product_name or movement.product_id
    actor = view.actor_name or movement.actor_id or "-"
    line = (
        f"{movement.movement_id}  {movement.occurred_on.isoformat()}  {movement.status.value:<6}  "
        f"{movement.kind.value:<5}  {movement.quantity:>10}  {movement.reason.value:<10}  {product}  ({actor})"
    )
    note = view.annotated_note
    if note:
        line += "\n    " + note.replace("\n", "\n    ")
    return line


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Execute the add-product workflow."""
    product = core_logic.add_product(
        context,
        product_id=args.product_id,
        product_name=args.product_name,
        product_code=args.product_code,
        opening_stock=args.opening_stock,
        is_active=not getattr(args, "inactive", False),
    )
    print(f"Registered product {product.product_id} with stock {product.stock_quantity}.", file=out)
    return 0


def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Execute the add-user workflow."""
    user = core_logic.add_user(context, user_id=args.user_id, user_name=args.user_name)
    print(f"Registered user {user.user_id}.", file=out)
    return 0


def run_set_product_status(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Execute the set-product-status workflow."""
    product = core_logic.set_product_status(context, args.product_id, ProductStatus(args.status))
    print(f"Product {product.product_id} is now {product.status.value}.", file=out)
    return 0


def run_record(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Execute the create-movement workflow."""
    view = core_logic.create_movement(context, translate_record(args))
    print(format_movement(view), file=out)
    return 0


def run_amend(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Execute the amend-movement workflow."""
    view = core_logic.amend_movement(context, translate_amend(args))
    print(format_movement(view), file=out)
    return 0


def run_void(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Execute the void-movement workflow."""
    view = core_logic.void_movement(context, translate_void(args))
    print(format_movement(view), file=out)
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Display one movement."""
    view = queries.get_movement(context, args.movement_id)
    if view is None:
        raise core_logic.MovementNotFoundError(f"Unknown movement id: {args.movement_id}")
    print(format_movement(view), file=out)
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Display movements matching the supplied filters."""
    views = queries.list_movements(context, translate_history(args))
    if not views:
        print("No movements found.", file=out)
    for view in views:
        print(format_movement(view), file=out)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Display cached stock per product."""
    products = core_logic.list_products(context, include_inactive=getattr(args, "include_inactive", False))
    for product in products:
        print(
            f"{product.product_id:<12} {product.product_name:<30} {product.stock_quantity:>10}  {product.status.value}",
            file=out,
        )
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace, out: TextIO = sys.stdout) -> int:
    """Report products whose cached stock disagrees with the ledger.

    Returns 1 when discrepancies were found so scripts can alert on it.
    """
    discrepancies = queries.reconcile_stock(context)
    if not discrepancies:
        print("Cached stock matches the ledger for every product.", file=out)
        return 0
    for item in discrepancies:
        print(
            f"{item.product_id}: cached {item.cached_stock}, ledger {item.ledger_stock} (difference {item.difference})",
            file=out,
        )
    return 1


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.CompensationFailedError):
        log.critical("%s", error)
        log.critical("Run 'inventory-ledger reconcile' before recording further movements.")
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    sys.exit(main())
