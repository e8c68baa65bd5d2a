"""Command-line entry points for the room stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing read-only reports. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import MovementKind, RoomStatus, StockStatus
from .data_manager import CONFIG_FILE_NAME


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-cli",
        description="Command-line tools for the Room Stock Ledger workbook.",
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
    """Declare mutating CLI commands such as movements and room changes."""
    specs = {
        "add-room": register_add_room_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "room-status": register_room_status_command(subparsers),
        "delete-room": register_delete_room_command(subparsers),
        "stock-in": register_stock_in_command(subparsers),
        "stock-out": register_stock_out_command(subparsers),
        "transfer": register_transfer_command(subparsers),
        "reverse": register_reverse_command(subparsers),
        "edit-transaction": register_edit_transaction_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and audits."""
    specs = {
        "items": register_items_command(subparsers),
        "rooms": register_rooms_command(subparsers),
        "log": register_log_command(subparsers),
        "verify": register_verify_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_movement_metadata(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", dest="actor_id", required=True, help="Identifier of the person recording the movement.")
    parser.add_argument("--occurred-at", default=None, help="ISO 8601 timestamp; defaults to now (UTC).")
    parser.add_argument("--notes", dest="notes", default=None)
    parser.add_argument("--reference", dest="reference_number", default=None)


def register_add_room_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-room``."""
    name = "add-room"
    help_text = "Register a new room in the Rooms sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--room-id", required=True)
        parser.add_argument("--room-name", required=True)
        parser.add_argument("--location", required=True)
        parser.add_argument("--inactive", action="store_true", help="Mark the room as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_room, mutates=True)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a new item with zero quantity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--item-name", required=True)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--price", default="0.00")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item, mutates=True)


def register_room_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``room-status``."""
    name = "room-status"
    help_text = "Activate or deactivate a room."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--room-id", required=True)
        parser.add_argument(
            "--status",
            choices=[member.value for member in RoomStatus],
            required=True,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_room_status, mutates=True)


def register_delete_room_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-room``."""
    name = "delete-room"
    help_text = "Delete a room that holds no items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--room-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_room, mutates=True)


def register_stock_in_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-in``."""
    name = "stock-in"
    help_text = "Receive stock of an item into a room."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--to-room", dest="destination_room_id", required=True)
        _add_movement_metadata(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_in, mutates=True)


def register_stock_out_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-out``."""
    name = "stock-out"
    help_text = "Remove stock of an item from its current room."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--from-room", dest="source_room_id", required=True)
        _add_movement_metadata(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_out, mutates=True)


def register_transfer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transfer``."""
    name = "transfer"
    help_text = "Move an item from one room to another."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--from-room", dest="source_room_id", required=True)
        parser.add_argument("--to-room", dest="destination_room_id", required=True)
        _add_movement_metadata(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transfer, mutates=True)


def register_reverse_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reverse``."""
    name = "reverse"
    help_text = "Compensate a ledger entry with the opposite movement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--actor", dest="actor_id", required=True)
        parser.add_argument("--occurred-at", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reverse, mutates=True)


def register_edit_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-transaction``."""
    name = "edit-transaction"
    help_text = "Edit the timestamp, notes, or reference of a ledger entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--occurred-at", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.add_argument("--reference", dest="reference_number", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_edit_transaction, mutates=True)


def register_items_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``items``."""
    name = "items"
    help_text = "Display items with their room, quantity, and status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in StockStatus], default=None)
        parser.add_argument("--room-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_items_report)


def register_rooms_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``rooms``."""
    name = "rooms"
    help_text = "Display registered rooms."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive rooms.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rooms_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the transaction ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", default=None)
        parser.add_argument("--kind", choices=[member.value for member in MovementKind], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def register_verify_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``verify``."""
    name = "verify"
    help_text = "Replay the ledger and report items that disagree with it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_verify)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / CONFIG_FILE_NAME
    return core_logic.load_runtime_context(target)


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


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """Parse an optional ISO 8601 timestamp argument."""
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


def translate_add_room(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-room request."""
    return {
        "room_id": args.room_id,
        "room_name": args.room_name,
        "location": args.location,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-item request."""
    return {
        "item_id": args.item_id,
        "item_name": args.item_name,
        "category_id": args.category_id,
        "price": Decimal(args.price),
    }


def translate_stock_in(args: argparse.Namespace) -> core_logic.StockInCommand:
    """Translate CLI args into a stock-in command object."""
    return core_logic.StockInCommand(
        item_id=args.item_id,
        quantity=args.quantity,
        destination_room_id=args.destination_room_id,
        actor_id=args.actor_id,
        occurred_at=parse_timestamp(args.occurred_at),
        notes=args.notes,
        reference_number=args.reference_number,
    )


def translate_stock_out(args: argparse.Namespace) -> core_logic.StockOutCommand:
    """Translate CLI args into a stock-out command object."""
    return core_logic.StockOutCommand(
        item_id=args.item_id,
        quantity=args.quantity,
        source_room_id=args.source_room_id,
        actor_id=args.actor_id,
        occurred_at=parse_timestamp(args.occurred_at),
        notes=args.notes,
        reference_number=args.reference_number,
    )


def translate_transfer(args: argparse.Namespace) -> core_logic.TransferCommand:
    """Translate CLI args into a transfer command object."""
    return core_logic.TransferCommand(
        item_id=args.item_id,
        quantity=args.quantity,
        source_room_id=args.source_room_id,
        destination_room_id=args.destination_room_id,
        actor_id=args.actor_id,
        occurred_at=parse_timestamp(args.occurred_at),
        notes=args.notes,
        reference_number=args.reference_number,
    )


def translate_reverse(args: argparse.Namespace) -> core_logic.ReverseCommand:
    """Translate CLI args into a reverse command object."""
    return core_logic.ReverseCommand(
        transaction_id=args.transaction_id,
        actor_id=args.actor_id,
        occurred_at=parse_timestamp(args.occurred_at),
        notes=args.notes,
    )


def run_add_room(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-room workflow in the BLL."""
    payload = translate_add_room(args)
    room = core_logic.add_room(context, **payload)
    print(f"Registered room {room.room_id} ({room.status})")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    payload = translate_add_item(args)
    item = core_logic.add_item(context, **payload)
    print(f"Registered item {item.item_id} ({item.status})")
    return 0


def run_room_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    room = core_logic.set_room_status(context, args.room_id, RoomStatus(args.status))
    print(f"Room {room.room_id} is now {room.status}")
    return 0


def run_delete_room(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_room(context, args.room_id)
    print(f"Deleted room {args.room_id}")
    return 0


def run_stock_in(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock-in workflow via the engine."""
    result = core_logic.apply_stock_in(context, translate_stock_in(args))
    print(format_movement(result))
    return 0


def run_stock_out(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock-out workflow via the engine."""
    result = core_logic.apply_stock_out(context, translate_stock_out(args))
    print(format_movement(result))
    return 0


def run_transfer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transfer workflow via the engine."""
    result = core_logic.apply_transfer(context, translate_transfer(args))
    print(format_movement(result))
    return 0


def run_reverse(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reversal workflow via the engine."""
    result = core_logic.reverse_transaction(context, translate_reverse(args))
    print(format_movement(result))
    return 0


def run_edit_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transaction = core_logic.update_transaction_metadata(
        context,
        args.transaction_id,
        occurred_at=parse_timestamp(args.occurred_at),
        notes=args.notes,
        reference_number=args.reference_number,
    )
    print(f"Updated {transaction.transaction_id}")
    return 0


def run_items_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the item listing followed by a per-status summary."""
    status = StockStatus(args.status) if args.status else None
    for item in core_logic.list_items(context, status=status, room_id=args.room_id):
        print(f"{item.item_id}\t{item.item_name}\t{item.room_id or '-'}\t{item.quantity}\t{item.status}")
    summary = core_logic.summarize_stock_status(context)
    print(", ".join(f"{status.value}: {count}" for status, count in summary.items()))
    return 0


def run_rooms_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for room in core_logic.list_rooms(context, include_inactive=args.include_inactive):
        print(f"{room.room_id}\t{room.room_name}\t{room.location}\t{room.status}")
    return 0


def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the ledger in commit order."""
    kind = MovementKind(args.kind) if args.kind else None
    for transaction in core_logic.list_transactions(context, item_id=args.item_id, kind=kind):
        print(
            f"{transaction.transaction_id}\t{transaction.occurred_at_iso}\t{transaction.kind}\t"
            f"{transaction.item_id}\t{transaction.quantity}\t"
            f"{transaction.from_room_id or '-'} -> {transaction.to_room_id or '-'}\t{transaction.actor_id}"
        )
    return 0


def run_verify(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report ledger discrepancies; exit code 4 when any are found."""
    discrepancies = core_logic.find_ledger_discrepancies(context)
    for entry in discrepancies:
        print(
            f"{entry.item_id}: stored {entry.stored_quantity} in {entry.stored_room_id or '-'} "
            f"({entry.stored_status}), ledger {entry.replayed_quantity} in {entry.replayed_room_id or '-'} "
            f"({entry.expected_status})"
        )
    if discrepancies:
        return 4
    print("Ledger and item store agree.")
    return 0


def format_movement(result: core_logic.MovementResult) -> str:
    """Render a committed movement as a one-line confirmation."""
    transaction = result.transaction
    return (
        f"{transaction.transaction_id}: {transaction.kind} {transaction.quantity} x {transaction.item_id} "
        f"-> {result.item.quantity} in {result.item.room_id or '-'} ({result.item.status})"
    )


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerError):
        log.error("[%s] %s", error.code, error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
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
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates and not context.settings.autosave:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
