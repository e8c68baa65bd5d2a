"""Business logic layer for the room stock ledger.

This module contains the stock movement engine that keeps the ``Items`` sheet
and the append-only ``Transactions`` ledger consistent. It consumes the Data
Access Layer (DAL) for all I/O while ensuring every mutation of an item's
quantity or room passes through one commit protocol:

1. validate the command shape (no storage access),
2. take the item's lock (bounded wait),
3. read the item for update and the referenced rooms, validate state,
4. write the new item row and the ledger row as one unit, rolling both back
   if any part of the write fails.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    EXPECTED_SCHEMA_VERSION,
    FailureReason,
    MovementKind,
    RoomStatus,
    StockStatus,
)
from .locking import ItemLockRegistry, LockTimeout


class LedgerError(Exception):
    """Base class for every error raised by the stock ledger engine."""

    def __init__(self, reason: FailureReason, message: str) -> None:
        self.reason = reason
        self.code = reason.value
        super().__init__(message)


class ValidationError(LedgerError, ValueError):
    """The request itself is malformed (bad quantity, same rooms, duplicates)."""


class NotFoundError(LedgerError, LookupError):
    """A referenced item, room, or transaction does not exist."""


class StateConflictError(LedgerError):
    """The request is well formed but conflicts with the current stored state."""


class ConcurrencyError(LedgerError):
    """The target item could not be locked in time; retry the same request."""


class LedgerWriteError(LedgerError):
    """Storage failed mid-commit; the commit was rolled back before raising."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook, and shared coordination state."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    locks: ItemLockRegistry = field(default_factory=ItemLockRegistry, repr=False, compare=False)
    storage_lock: Any = field(default_factory=RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class StockInCommand:
    """Request to receive ``quantity`` units of an item into a room."""

    item_id: str
    quantity: int
    destination_room_id: str
    actor_id: str
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = None
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class StockOutCommand:
    """Request to remove ``quantity`` units of an item from its current room."""

    item_id: str
    quantity: int
    source_room_id: str
    actor_id: str
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = None
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class TransferCommand:
    """Request to relocate an item between two rooms."""

    item_id: str
    quantity: int
    source_room_id: str
    destination_room_id: str
    actor_id: str
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = None
    reference_number: Optional[str] = None


@dataclass(frozen=True)
class ReverseCommand:
    """Request to compensate a prior ledger entry with an opposite movement."""

    transaction_id: str
    actor_id: str
    occurred_at: Optional[datetime] = None
    notes: Optional[str] = None


MovementCommand = Union[StockInCommand, StockOutCommand, TransferCommand]


@dataclass(frozen=True)
class MovementResult:
    """Committed outcome of a movement: the new item state and its ledger entry."""

    item: data_manager.ItemRow
    transaction: data_manager.TransactionRow


@dataclass(frozen=True)
class ReplayedStock:
    """Quantity and room of one item as implied by the ledger alone."""

    quantity: int = 0
    room_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """An item whose stored state disagrees with the replayed ledger."""

    item_id: str
    stored_quantity: int
    replayed_quantity: int
    stored_room_id: Optional[str]
    replayed_room_id: Optional[str]
    stored_status: str
    expected_status: str


@dataclass(frozen=True)
class _Movement:
    kind: MovementKind
    item_id: str
    quantity: int
    from_room_id: Optional[str]
    to_room_id: Optional[str]
    actor_id: str
    occurred_at: datetime
    notes: Optional[str]
    reference_number: Optional[str]
    reverses_transaction_id: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` unchanged, or the current UTC time when ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


@contextmanager
def _hold_storage(context: RuntimeContext) -> Iterator[None]:
    """Hold the workbook lock, waiting no longer than the configured lock timeout.

    Raises:
        ConcurrencyError: ``BUSY`` when the workbook stays locked past the timeout.
    """
    timeout = context.settings.lock_timeout_seconds
    if not context.storage_lock.acquire(timeout=timeout):
        log.warning("Workbook access waited longer than %.2fs", timeout)
        raise ConcurrencyError(FailureReason.BUSY, "The workbook is busy; retry the operation")
    try:
        yield
    finally:
        context.storage_lock.release()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business layer keeps in-memory caches keyed by domain area (items,
    rooms, transactions) so listings do not rescan the workbook. Buckets are
    simple dictionaries.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_items_cache(context: RuntimeContext) -> Dict[str, Any]:
    with _hold_storage(context):
        bucket = _get_cache_bucket(context, "items")
        if "all" not in bucket:
            all_items = list(data_manager.iter_items(context.workbook))
            bucket["all"] = all_items
            bucket["by_id"] = {item.item_id: item for item in all_items}
            log.debug("Populated items cache with %d entries", len(all_items))
        return bucket


def _ensure_rooms_cache(context: RuntimeContext) -> Dict[str, Any]:
    with _hold_storage(context):
        bucket = _get_cache_bucket(context, "rooms")
        if "all" not in bucket:
            all_rooms = list(data_manager.iter_rooms(context.workbook))
            bucket["all"] = all_rooms
            bucket["active"] = [room for room in all_rooms if room.is_active]
            bucket["by_id"] = {room.room_id: room for room in all_rooms}
            log.debug(
                "Populated rooms cache with %d entries (%d active)",
                len(all_rooms),
                len(bucket["active"]),
            )
        return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the ledger cache bucket on demand.

    Ledger rows never change their causal fields, so caching the full list and
    a ``transaction_id`` index is safe until the next commit or metadata edit
    invalidates the bucket.
    """

    with _hold_storage(context):
        bucket = _get_cache_bucket(context, "transactions")
        if "all" not in bucket:
            all_transactions = list(data_manager.iter_transactions(context.workbook))
            bucket["all"] = all_transactions
            bucket["by_id"] = {transaction.transaction_id: transaction for transaction in all_transactions}
            log.debug("Populated transactions cache with %d entries", len(all_transactions))
        return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the business layer.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context with fresh lock registry and empty caches.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory workbook to the configured data file."""
    with _hold_storage(context):
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The returned context shares the lock registry and storage lock of
    ``context`` so callers that switch to the fresh context keep coordinating
    with those still holding the old one. Caches start empty.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        locks=context.locks,
        storage_lock=context.storage_lock,
    )


def _autosave(context: RuntimeContext) -> None:
    if context.settings.autosave:
        persist_context(context)


def _autosave_or_undo(context: RuntimeContext, undo: Callable[[], None], action: str) -> None:
    """Autosave an administrative change, reverting it in memory if the save fails.

    Runs under the storage lock, right after the change was written.

    Raises:
        LedgerWriteError: ``STORAGE_FAILURE``, chained from the save error.
    """
    try:
        _autosave(context)
    except Exception as exc:
        log.error("Saving %s failed, undoing the change: %s", action, exc)
        undo()
        raise LedgerWriteError(FailureReason.STORAGE_FAILURE, f"Could not save {action}: {exc}") from exc


def _delete_keyed_row(context: RuntimeContext, sheet_name: str, key_column: str, key_value: str) -> None:
    row_index = data_manager.locate_row(context.workbook, sheet_name, key_column, key_value)
    if row_index is not None:
        data_manager.delete_row(context.workbook, sheet_name, row_index)


# ---------------------------------------------------------------------------
# Status classification and input validation
# ---------------------------------------------------------------------------


def classify_quantity(quantity: int, threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> StockStatus:
    """Map an on-hand quantity to its stock status.

    ``quantity <= 0`` is out of stock, ``0 < quantity <= threshold`` is low
    stock, and anything above the threshold is in stock.
    """
    if quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def require_positive_quantity(quantity: int) -> None:
    """Validate that a movement quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an ``int`` or is zero or
            negative. ``bool`` is rejected even though it subclasses ``int``.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.warning("Quantity validation failed: %r", quantity)
        raise ValidationError(
            FailureReason.INVALID_QUANTITY,
            f"Quantity must be a positive integer, got {quantity!r}",
        )


def require_distinct_rooms(source_room_id: str, destination_room_id: str) -> None:
    """Reject transfers whose source and destination are the same room."""
    if source_room_id == destination_room_id:
        log.warning("Rejected transfer within room '%s'", source_room_id)
        raise ValidationError(
            FailureReason.SAME_ROOM_TRANSFER,
            f"Source and destination room are both '{source_room_id}'",
        )


# ---------------------------------------------------------------------------
# Item store, room directory, and ledger reads
# ---------------------------------------------------------------------------


def get_item_for_update(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Read the current item row straight from the workbook.

    The read bypasses the listing cache. Callers must hold the item's lock in
    :attr:`RuntimeContext.locks` so the value cannot change before they write.

    Raises:
        NotFoundError: If ``item_id`` is not in the ``Items`` sheet.
    """
    with _hold_storage(context):
        item = data_manager.read_item(context.workbook, item_id)
    if item is None:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise NotFoundError(FailureReason.ITEM_NOT_FOUND, f"Unknown item id: {item_id}")
    return item


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item record by its identifier from the items cache.

    Raises:
        NotFoundError: If ``item_id`` is absent from the workbook.
    """
    cache = _ensure_items_cache(context)
    try:
        return cache["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise NotFoundError(FailureReason.ITEM_NOT_FOUND, f"Unknown item id: {item_id}") from exc


def list_items(
    context: RuntimeContext,
    *,
    status: Optional[StockStatus] = None,
    room_id: Optional[str] = None,
) -> List[data_manager.ItemRow]:
    """Return item rows in sheet order, optionally filtered by status or room."""
    items = list(_ensure_items_cache(context)["all"])
    if status is not None:
        items = [item for item in items if item.status == status.value]
    if room_id is not None:
        items = [item for item in items if item.room_id == room_id]
    return items


def get_room(context: RuntimeContext, room_id: str) -> data_manager.RoomRow:
    """Resolve a room record by its identifier.

    Raises:
        NotFoundError: If ``room_id`` cannot be located.
    """
    cache = _ensure_rooms_cache(context)
    try:
        return cache["by_id"][room_id]
    except KeyError as exc:
        log.warning("Room lookup failed for id '%s'", room_id)
        raise NotFoundError(FailureReason.ROOM_NOT_FOUND, f"Unknown room id: {room_id}") from exc


def list_rooms(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.RoomRow]:
    """Return room rows, active ones only unless ``include_inactive`` is set."""
    cache = _ensure_rooms_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    return list(source)


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a ledger entry by its identifier.

    Raises:
        NotFoundError: If the ledger lacks the supplied identifier.
    """
    cache = _ensure_transactions_cache(context)
    try:
        return cache["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(
            FailureReason.TRANSACTION_NOT_FOUND,
            f"Unknown transaction id: {transaction_id}",
        ) from exc


def list_transactions(
    context: RuntimeContext,
    *,
    item_id: Optional[str] = None,
    kind: Optional[MovementKind] = None,
) -> List[data_manager.TransactionRow]:
    """Return a snapshot of the ledger in commit order.

    The list is a copy, so callers may sort or filter it freely.
    """
    transactions = list(_ensure_transactions_cache(context)["all"])
    if item_id is not None:
        transactions = [tx for tx in transactions if tx.item_id == item_id]
    if kind is not None:
        transactions = [tx for tx in transactions if tx.kind == kind.value]
    return transactions


def summarize_stock_status(context: RuntimeContext) -> Dict[StockStatus, int]:
    """Count items per stock status; every status appears, possibly with 0."""
    summary = {status: 0 for status in StockStatus}
    for item in _ensure_items_cache(context)["all"]:
        summary[StockStatus(item.status)] += 1
    return summary


# ---------------------------------------------------------------------------
# Administrative registration
# ---------------------------------------------------------------------------


def add_room(
    context: RuntimeContext,
    room_id: str,
    room_name: str,
    location: str,
    *,
    is_active: bool = True,
) -> data_manager.RoomRow:
    """Register a room in the ``Rooms`` sheet.

    Raises:
        ValidationError: If ``room_id`` is already registered.
        LedgerWriteError: If the autosave fails; the room is not kept.
    """
    now_iso = _resolve_timestamp(None).isoformat()
    room = data_manager.RoomRow(
        room_id=room_id,
        room_name=room_name,
        location=location,
        status=(RoomStatus.ACTIVE if is_active else RoomStatus.INACTIVE).value,
        created_at_iso=now_iso,
        updated_at_iso=now_iso,
    )
    with _hold_storage(context):
        if data_manager.read_room(context.workbook, room_id) is not None:
            raise ValidationError(FailureReason.DUPLICATE_IDENTIFIER, f"Room id already exists: {room_id}")
        data_manager.append_room(context.workbook, room)
        try:
            _autosave_or_undo(
                context, lambda: _delete_keyed_row(context, data_manager.ROOMS_SHEET, "RoomID", room_id),
                f"room '{room_id}'")
        finally:
            _invalidate_cache(context, "rooms")
    log.info("Registered room '%s' (%s)", room_id, room.status)
    return room


def set_room_status(context: RuntimeContext, room_id: str, status: RoomStatus) -> data_manager.RoomRow:
    """Activate or deactivate a room.

    Raises:
        NotFoundError: If the room does not exist.
        LedgerWriteError: If the autosave fails; the old status is restored.
    """
    with _hold_storage(context):
        room = get_room(context, room_id)
        updated = replace(room, status=status.value, updated_at_iso=_resolve_timestamp(None).isoformat())
        data_manager.update_room(
            context.workbook,
            room_id,
            field_values={"Status": updated.status, "UpdatedAt": updated.updated_at_iso},
        )

        def _restore() -> None:
            data_manager.update_room(
                context.workbook,
                room_id,
                field_values={"Status": room.status, "UpdatedAt": room.updated_at_iso},
            )

        try:
            _autosave_or_undo(context, _restore, f"status of room '{room_id}'")
        finally:
            _invalidate_cache(context, "rooms")
    log.info("Room '%s' is now %s", room_id, status.value)
    return updated


def delete_room(context: RuntimeContext, room_id: str) -> None:
    """Remove a room that no item currently occupies.

    Raises:
        NotFoundError: If the room does not exist.
        StateConflictError: If any item still references the room.
        LedgerWriteError: If the autosave fails; the room is put back.
    """
    with _hold_storage(context):
        row_index = data_manager.locate_row(context.workbook, data_manager.ROOMS_SHEET, "RoomID", room_id)
        if row_index is None:
            raise NotFoundError(FailureReason.ROOM_NOT_FOUND, f"Unknown room id: {room_id}")
        occupants = [item.item_id for item in data_manager.iter_items(context.workbook) if item.room_id == room_id]
        if occupants:
            log.warning("Refused to delete room '%s' holding %d item(s)", room_id, len(occupants))
            raise StateConflictError(
                FailureReason.ROOM_IN_USE,
                f"Cannot delete room '{room_id}': it holds {len(occupants)} item(s)",
            )
        room = data_manager.read_room(context.workbook, room_id)
        data_manager.delete_row(context.workbook, data_manager.ROOMS_SHEET, row_index)
        try:
            _autosave_or_undo(
                context, lambda: data_manager.insert_room(context.workbook, row_index, room),
                f"deletion of room '{room_id}'")
        finally:
            _invalidate_cache(context, "rooms")
    log.info("Deleted room '%s'", room_id)


def add_item(
    context: RuntimeContext,
    item_id: str,
    item_name: str,
    *,
    category_id: Optional[str] = None,
    price: Decimal = Decimal("0.00"),
) -> data_manager.ItemRow:
    """Register an item with zero quantity and no room.

    Initial stock is entered afterwards with :func:`apply_stock_in`, so the
    ledger alone always explains an item's quantity.

    Raises:
        ValidationError: If ``item_id`` is already registered.
        ValueError: If ``price`` is negative.
        LedgerWriteError: If the autosave fails; the item is not kept.
    """
    if price < Decimal("0"):
        raise ValueError("Price must be zero or positive")
    now_iso = _resolve_timestamp(None).isoformat()
    item = data_manager.ItemRow(
        item_id=item_id,
        item_name=item_name,
        category_id=category_id,
        room_id=None,
        quantity=0,
        status=classify_quantity(0, context.settings.low_stock_threshold).value,
        price=price,
        created_at_iso=now_iso,
        updated_at_iso=now_iso,
    )
    with _hold_storage(context):
        if data_manager.read_item(context.workbook, item_id) is not None:
            raise ValidationError(FailureReason.DUPLICATE_IDENTIFIER, f"Item id already exists: {item_id}")
        data_manager.append_item(context.workbook, item)
        try:
            _autosave_or_undo(
                context, lambda: _delete_keyed_row(context, data_manager.ITEMS_SHEET, "ItemID", item_id),
                f"item '{item_id}'")
        finally:
            _invalidate_cache(context, "items")
    log.info("Registered item '%s' (%s)", item_id, item_name)
    return item


# ---------------------------------------------------------------------------
# Stock movement engine
# ---------------------------------------------------------------------------


def apply_stock_in(context: RuntimeContext, command: StockInCommand) -> MovementResult:
    """Receive stock into a room and record an ``in`` ledger entry.

    The item's quantity grows by ``command.quantity`` and the item moves to the
    destination room, whatever room it was in before.

    Args:
        context (RuntimeContext): Runtime context providing workbook access,
            locks, and caches.
        command (StockInCommand): Structured stock-in intent.

    Returns:
        MovementResult: Updated item and the committed ledger entry.

    Raises:
        ValidationError: ``INVALID_QUANTITY``.
        NotFoundError: ``ITEM_NOT_FOUND`` or ``ROOM_NOT_FOUND``.
        StateConflictError: ``ROOM_INACTIVE``.
        ConcurrencyError: ``BUSY`` when the item lock is not obtained in time.
        LedgerWriteError: When storage fails; nothing is left applied.
    """
    require_positive_quantity(command.quantity)
    movement = _Movement(
        kind=MovementKind.IN,
        item_id=command.item_id,
        quantity=command.quantity,
        from_room_id=None,
        to_room_id=command.destination_room_id,
        actor_id=command.actor_id,
        occurred_at=_resolve_timestamp(command.occurred_at),
        notes=command.notes,
        reference_number=command.reference_number,
    )
    return _apply_movement(context, movement)


def apply_stock_out(context: RuntimeContext, command: StockOutCommand) -> MovementResult:
    """Remove stock from the item's current room and record an ``out`` entry.

    The caller must name the room the item is actually in; a mismatch is
    rejected rather than corrected. The room itself does not change.

    Raises:
        ValidationError: ``INVALID_QUANTITY``.
        NotFoundError: ``ITEM_NOT_FOUND`` or ``ROOM_NOT_FOUND``.
        StateConflictError: ``ROOM_INACTIVE``, ``ROOM_MISMATCH``, or
            ``INSUFFICIENT_QUANTITY``.
        ConcurrencyError: ``BUSY``.
        LedgerWriteError: When storage fails; nothing is left applied.
    """
    require_positive_quantity(command.quantity)
    movement = _Movement(
        kind=MovementKind.OUT,
        item_id=command.item_id,
        quantity=command.quantity,
        from_room_id=command.source_room_id,
        to_room_id=None,
        actor_id=command.actor_id,
        occurred_at=_resolve_timestamp(command.occurred_at),
        notes=command.notes,
        reference_number=command.reference_number,
    )
    return _apply_movement(context, movement)


def apply_transfer(context: RuntimeContext, command: TransferCommand) -> MovementResult:
    """Relocate an item to another room and record a ``transfer`` entry.

    Items occupy exactly one room, so the whole item moves even when
    ``command.quantity`` is smaller than the on-hand amount. The ledger entry
    keeps the requested quantity for audit; the item's quantity is unchanged.

    Raises:
        ValidationError: ``INVALID_QUANTITY`` or ``SAME_ROOM_TRANSFER``.
        NotFoundError: ``ITEM_NOT_FOUND`` or ``ROOM_NOT_FOUND``.
        StateConflictError: ``ROOM_INACTIVE``, ``DESTINATION_ROOM_INACTIVE``,
            ``ROOM_MISMATCH``, or ``INSUFFICIENT_QUANTITY``.
        ConcurrencyError: ``BUSY``.
        LedgerWriteError: When storage fails; nothing is left applied.
    """
    require_positive_quantity(command.quantity)
    require_distinct_rooms(command.source_room_id, command.destination_room_id)
    movement = _Movement(
        kind=MovementKind.TRANSFER,
        item_id=command.item_id,
        quantity=command.quantity,
        from_room_id=command.source_room_id,
        to_room_id=command.destination_room_id,
        actor_id=command.actor_id,
        occurred_at=_resolve_timestamp(command.occurred_at),
        notes=command.notes,
        reference_number=command.reference_number,
    )
    return _apply_movement(context, movement)


def apply_movement(context: RuntimeContext, command: MovementCommand) -> MovementResult:
    """Dispatch any movement command to its engine operation."""
    if isinstance(command, StockInCommand):
        return apply_stock_in(context, command)
    if isinstance(command, StockOutCommand):
        return apply_stock_out(context, command)
    if isinstance(command, TransferCommand):
        return apply_transfer(context, command)
    raise TypeError(f"Unsupported movement command: {type(command).__name__}")


def reverse_transaction(context: RuntimeContext, command: ReverseCommand) -> MovementResult:
    """Compensate a ledger entry with the opposite movement.

    Ledger entries are never deleted. Undoing one appends a new entry that
    moves the stock back: ``in`` becomes ``out`` from the same room, ``out``
    becomes ``in`` to the same room, and a transfer runs in the opposite
    direction. The new entry references the original through
    ``reverses_transaction_id`` and passes every regular engine check, so a
    stock-in whose units were already consumed cannot be reversed.

    Raises:
        ValidationError: ``INVALID_QUANTITY`` when the stored entry has no positive
            quantity to compensate.
        NotFoundError: ``TRANSACTION_NOT_FOUND`` plus any engine lookup error.
        StateConflictError: ``ALREADY_REVERSED``, ``REVERSAL_OF_REVERSAL``,
            plus any engine state error.
        ConcurrencyError: ``BUSY``.
    """
    target = get_transaction(context, command.transaction_id)
    require_positive_quantity(target.quantity)
    log.info("Reversing transaction '%s' (%s)", target.transaction_id, target.kind)

    kind = MovementKind(target.kind)
    if kind is MovementKind.IN:
        compensating_kind, from_room_id, to_room_id = MovementKind.OUT, target.to_room_id, None
    elif kind is MovementKind.OUT:
        compensating_kind, from_room_id, to_room_id = MovementKind.IN, None, target.from_room_id
    else:
        compensating_kind, from_room_id, to_room_id = MovementKind.TRANSFER, target.to_room_id, target.from_room_id

    movement = _Movement(
        kind=compensating_kind,
        item_id=target.item_id,
        quantity=target.quantity,
        from_room_id=from_room_id,
        to_room_id=to_room_id,
        actor_id=command.actor_id,
        occurred_at=_resolve_timestamp(command.occurred_at),
        notes=command.notes,
        reference_number=target.reference_number,
        reverses_transaction_id=target.transaction_id,
    )

    def _still_reversible(_item: data_manager.ItemRow) -> None:
        validate_reversal_target(context, target)

    return _apply_movement(context, movement, precheck=_still_reversible)


def validate_reversal_target(context: RuntimeContext, target: data_manager.TransactionRow) -> None:
    """Confirm ``target`` may still be reversed.

    Reversal entries are final, and each entry can be compensated once. The
    check reads the ledger directly so it is accurate under the item lock.

    Raises:
        StateConflictError: ``REVERSAL_OF_REVERSAL`` or ``ALREADY_REVERSED``.
    """
    if target.reverses_transaction_id is not None:
        log.error("Cannot reverse '%s' because it is itself a reversal", target.transaction_id)
        raise StateConflictError(
            FailureReason.REVERSAL_OF_REVERSAL,
            f"Transaction '{target.transaction_id}' is a reversal and cannot be reversed",
        )
    with _hold_storage(context):
        already = any(
            row.reverses_transaction_id == target.transaction_id
            for row in data_manager.iter_transactions(context.workbook)
        )
    if already:
        log.error("Transaction '%s' has already been reversed", target.transaction_id)
        raise StateConflictError(
            FailureReason.ALREADY_REVERSED,
            f"Transaction '{target.transaction_id}' has already been reversed",
        )


def update_transaction_metadata(
    context: RuntimeContext,
    transaction_id: str,
    *,
    occurred_at: Optional[datetime] = None,
    notes: Optional[str] = None,
    reference_number: Optional[str] = None,
) -> data_manager.TransactionRow:
    """Edit the non-causal fields of a ledger entry.

    Only the occurrence timestamp, notes, and reference number can change.
    Item, kind, quantity, and rooms drove an applied mutation and are fixed;
    corrections to them go through :func:`reverse_transaction`.

    Raises:
        NotFoundError: ``TRANSACTION_NOT_FOUND``.
        LedgerWriteError: If the autosave fails; the previous values are restored.
    """
    field_values: Dict[str, Any] = {}
    if occurred_at is not None:
        field_values["OccurredAt"] = occurred_at.isoformat()
    if notes is not None:
        field_values["Notes"] = notes
    if reference_number is not None:
        field_values["ReferenceNumber"] = reference_number

    with _hold_storage(context):
        current = get_transaction(context, transaction_id)
        if not field_values:
            return current
        data_manager.update_transaction(context.workbook, transaction_id, field_values=field_values)
        previous = {
            "OccurredAt": current.occurred_at_iso,
            "Notes": current.notes,
            "ReferenceNumber": current.reference_number,
        }

        def _restore() -> None:
            data_manager.update_transaction(
                context.workbook,
                transaction_id,
                field_values={name: previous[name] for name in field_values},
            )

        try:
            _autosave_or_undo(context, _restore, f"metadata of transaction '{transaction_id}'")
        finally:
            _invalidate_cache(context, "transactions")
        updated = get_transaction(context, transaction_id)
    log.info("Updated metadata of transaction '%s': %s", transaction_id, ", ".join(sorted(field_values)))
    return updated


def _apply_movement(
    context: RuntimeContext,
    movement: _Movement,
    *,
    precheck: Optional[Callable[[data_manager.ItemRow], None]] = None,
) -> MovementResult:
    timeout = context.settings.lock_timeout_seconds
    try:
        with context.locks.hold(movement.item_id, timeout):
            item = get_item_for_update(context, movement.item_id)
            if precheck is not None:
                precheck(item)
            new_quantity, new_room_id = _validate_movement(context, item, movement)
            return _commit(context, item, movement, new_quantity, new_room_id)
    except LockTimeout as exc:
        raise ConcurrencyError(
            FailureReason.BUSY,
            f"Item '{movement.item_id}' is busy; retry the movement",
        ) from exc


def _require_room(
    context: RuntimeContext,
    room_id: str,
    inactive_reason: FailureReason,
) -> data_manager.RoomRow:
    with _hold_storage(context):
        room = data_manager.read_room(context.workbook, room_id)
    if room is None:
        log.warning("Room lookup failed for id '%s'", room_id)
        raise NotFoundError(FailureReason.ROOM_NOT_FOUND, f"Unknown room id: {room_id}")
    if not room.is_active:
        log.warning("Rejected movement through inactive room '%s'", room_id)
        raise StateConflictError(inactive_reason, f"Room '{room_id}' is inactive")
    return room


def _validate_movement(
    context: RuntimeContext,
    item: data_manager.ItemRow,
    movement: _Movement,
) -> tuple[int, Optional[str]]:
    """Check ``movement`` against ``item`` and return its new quantity and room."""
    _check_rooms(context, movement)

    if movement.kind is MovementKind.IN:
        return item.quantity + movement.quantity, movement.to_room_id

    if item.room_id != movement.from_room_id:
        log.warning(
            "Item '%s' is in room '%s', not in claimed source '%s'",
            item.item_id,
            item.room_id,
            movement.from_room_id,
        )
        raise StateConflictError(
            FailureReason.ROOM_MISMATCH,
            f"Item '{item.item_id}' is not in room '{movement.from_room_id}'",
        )
    if item.quantity < movement.quantity:
        log.warning(
            "Insufficient quantity for item '%s': requested %d, on hand %d",
            item.item_id,
            movement.quantity,
            item.quantity,
        )
        raise StateConflictError(
            FailureReason.INSUFFICIENT_QUANTITY,
            f"Insufficient quantity for item '{item.item_id}' "
            f"(requested {movement.quantity}, on hand {item.quantity})",
        )

    if movement.kind is MovementKind.OUT:
        return item.quantity - movement.quantity, item.room_id

    if movement.quantity < item.quantity:
        log.warning(
            "Partial transfer of %d/%d for item '%s' relocates the whole item to '%s'",
            movement.quantity,
            item.quantity,
            item.item_id,
            movement.to_room_id,
        )
    return item.quantity, movement.to_room_id


def _check_rooms(context: RuntimeContext, movement: _Movement) -> None:
    if movement.from_room_id is not None:
        _require_room(context, movement.from_room_id, FailureReason.ROOM_INACTIVE)
    if movement.to_room_id is not None:
        inactive_reason = (
            FailureReason.DESTINATION_ROOM_INACTIVE
            if movement.kind is MovementKind.TRANSFER
            else FailureReason.ROOM_INACTIVE
        )
        _require_room(context, movement.to_room_id, inactive_reason)


def _commit(
    context: RuntimeContext,
    item: data_manager.ItemRow,
    movement: _Movement,
    new_quantity: int,
    new_room_id: Optional[str],
) -> MovementResult:
    """Write the item row and the ledger row as one unit.

    Runs under the item lock. Rooms are checked again under the storage lock
    because room administration does not take item locks.
    """
    if new_quantity < 0:
        raise RuntimeError(f"Refusing to store negative quantity for item '{item.item_id}'")

    recorded_at = _resolve_timestamp(None)
    status = classify_quantity(new_quantity, context.settings.low_stock_threshold)
    updated_item = replace(
        item,
        quantity=new_quantity,
        room_id=new_room_id,
        status=status.value,
        updated_at_iso=recorded_at.isoformat(),
    )

    with _hold_storage(context):
        _check_rooms(context, movement)
        transaction = build_transaction(
            movement,
            transaction_id=data_manager.next_transaction_id(context.workbook),
            recorded_at=recorded_at,
        )
        try:
            data_manager.save_item(context.workbook, updated_item)
            data_manager.append_transaction(context.workbook, transaction)
            _autosave(context)
        except Exception as exc:
            log.error(
                "Commit of %s movement for item '%s' failed, rolling back: %s",
                movement.kind.value,
                item.item_id,
                exc,
            )
            _rollback(context, item, transaction.transaction_id)
            raise LedgerWriteError(
                FailureReason.STORAGE_FAILURE,
                f"Could not record {movement.kind.value} movement for item '{item.item_id}': {exc}",
            ) from exc
        finally:
            _invalidate_cache(context, "items", "transactions")

    log.info(
        "Recorded %s transaction '%s' for item '%s' (quantity=%d, from=%s, to=%s, actor=%s) -> %d on hand, %s",
        transaction.kind,
        transaction.transaction_id,
        item.item_id,
        transaction.quantity,
        transaction.from_room_id,
        transaction.to_room_id,
        transaction.actor_id,
        updated_item.quantity,
        updated_item.status,
    )
    return MovementResult(item=updated_item, transaction=transaction)


def _rollback(context: RuntimeContext, original_item: data_manager.ItemRow, transaction_id: str) -> None:
    data_manager.save_item(context.workbook, original_item)
    _delete_keyed_row(context, data_manager.TRANSACTIONS_SHEET, "TransactionID", transaction_id)
    log.info("Rolled back item '%s' and ledger entry '%s'", original_item.item_id, transaction_id)


def build_transaction(
    movement: _Movement,
    *,
    transaction_id: str,
    recorded_at: datetime,
) -> data_manager.TransactionRow:
    """Materialize a validated movement into a DAL ledger row."""
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        item_id=movement.item_id,
        kind=movement.kind.value,
        quantity=movement.quantity,
        from_room_id=movement.from_room_id,
        to_room_id=movement.to_room_id,
        actor_id=movement.actor_id,
        occurred_at_iso=movement.occurred_at.isoformat(),
        notes=movement.notes,
        reference_number=movement.reference_number,
        reverses_transaction_id=movement.reverses_transaction_id,
        created_at_iso=recorded_at.isoformat(),
    )


# ---------------------------------------------------------------------------
# Ledger replay and audit
# ---------------------------------------------------------------------------


def replay_ledger(context: RuntimeContext) -> Dict[str, ReplayedStock]:
    """Fold the ledger, in commit order, into each item's quantity and room.

    Every item starts from quantity 0 and no room. ``in`` adds and relocates,
    ``out`` subtracts, and ``transfer`` only relocates.
    """
    state: Dict[str, ReplayedStock] = {}
    for transaction in _ensure_transactions_cache(context)["all"]:
        current = state.get(transaction.item_id, ReplayedStock())
        kind = MovementKind(transaction.kind)
        if kind is MovementKind.IN:
            current = ReplayedStock(current.quantity + transaction.quantity, transaction.to_room_id)
        elif kind is MovementKind.OUT:
            current = ReplayedStock(current.quantity - transaction.quantity, current.room_id)
        else:
            current = ReplayedStock(current.quantity, transaction.to_room_id)
        state[transaction.item_id] = current
    log.debug("Replayed ledger for %d items", len(state))
    return state


def find_ledger_discrepancies(context: RuntimeContext) -> List[LedgerDiscrepancy]:
    """Compare every stored item with the state the ledger implies.

    Returns an empty list when the item store and the ledger agree, including
    the status each quantity should classify to.
    """
    replayed = replay_ledger(context)
    threshold = context.settings.low_stock_threshold
    discrepancies: List[LedgerDiscrepancy] = []
    for item in _ensure_items_cache(context)["all"]:
        expected = replayed.get(item.item_id, ReplayedStock())
        expected_status = classify_quantity(expected.quantity, threshold).value
        if (
            item.quantity != expected.quantity
            or item.room_id != expected.room_id
            or item.status != expected_status
        ):
            discrepancies.append(
                LedgerDiscrepancy(
                    item_id=item.item_id,
                    stored_quantity=item.quantity,
                    replayed_quantity=expected.quantity,
                    stored_room_id=item.room_id,
                    replayed_room_id=expected.room_id,
                    stored_status=item.status,
                    expected_status=expected_status,
                )
            )
    if discrepancies:
        log.warning("Ledger audit found %d discrepant item(s)", len(discrepancies))
    else:
        log.info("Ledger audit found no discrepancies")
    return discrepancies
