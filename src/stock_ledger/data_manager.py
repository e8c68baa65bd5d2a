"""Data access layer for the room stock ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and atomically persisting the
   Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   removing individual rows.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_LOW_STOCK_THRESHOLD,
    RoomStatus,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
ROOMS_SHEET = SheetName.ROOMS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value

ITEM_COLUMNS: Sequence[str] = (
    "ItemID",
    "ItemName",
    "CategoryID",
    "RoomID",
    "Quantity",
    "Status",
    "Price",
    "CreatedAt",
    "UpdatedAt",
)
ROOM_COLUMNS: Sequence[str] = (
    "RoomID",
    "RoomName",
    "Location",
    "Status",
    "CreatedAt",
    "UpdatedAt",
)
TRANSACTION_COLUMNS: Sequence[str] = (
    "TransactionID",
    "ItemID",
    "Kind",
    "Quantity",
    "FromRoomID",
    "ToRoomID",
    "ActorID",
    "OccurredAt",
    "Notes",
    "ReferenceNumber",
    "ReversesTransactionID",
    "CreatedAt",
)

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    ITEMS_SHEET: ITEM_COLUMNS,
    ROOMS_SHEET: ROOM_COLUMNS,
    TRANSACTIONS_SHEET: TRANSACTION_COLUMNS,
}

TRANSACTION_ID_PREFIX = "T"
TRANSACTION_ID_WIDTH = 8


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    site_name: str
    schema_version: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    autosave: bool = True


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    item_name: str
    category_id: Optional[str]
    room_id: Optional[str]
    quantity: int
    status: str
    price: Decimal
    created_at_iso: str
    updated_at_iso: str


@dataclass(frozen=True)
class RoomRow:
    """In-memory view of a row from the ``Rooms`` sheet."""

    room_id: str
    room_name: str
    location: str
    status: str
    created_at_iso: str
    updated_at_iso: str

    @property
    def is_active(self) -> bool:
        return self.status == RoomStatus.ACTIVE.value


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    item_id: str
    kind: str
    quantity: int
    from_room_id: Optional[str]
    to_room_id: Optional[str]
    actor_id: str
    occurred_at_iso: str
    notes: Optional[str]
    reference_number: Optional[str]
    reverses_transaction_id: Optional[str]
    created_at_iso: str


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
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Stock]`` entries are optional and
    fall back to the package defaults. Relative ``DataFile`` entries are
    expanded against ``base_path`` (or the current working directory) and
    resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a ``[Stock]`` option cannot be converted or is out of
            range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        site_name = parser.get("System", "SiteName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    low_stock_threshold = parser.getint(
        "Stock", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    lock_timeout_seconds = parser.getfloat(
        "Stock", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS)
    autosave = parser.getboolean("Stock", "AutoSave", fallback=True)

    if low_stock_threshold < 0:
        raise ValueError("LowStockThreshold must be zero or positive")
    if lock_timeout_seconds <= 0:
        raise ValueError("LockTimeoutSeconds must be greater than zero")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        site_name=site_name,
        schema_version=schema_version,
        low_stock_threshold=low_stock_threshold,
        lock_timeout_seconds=lock_timeout_seconds,
        autosave=autosave,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing the destination atomically.

    The workbook is first written to a temporary file next to the destination
    and then moved over it with :func:`os.replace`, so readers of the file
    only ever see the previous or the new complete workbook.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_items(workbook: Workbook) -> Iterable[ItemRow]:
    """Iterate over item records stored on the ``Items`` worksheet.

    Header and fully empty rows are skipped; every other row is converted via
    :func:`deserialize_item`.
    """

    for raw in _iter_sheet(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_rooms(workbook: Workbook) -> Iterable[RoomRow]:
    """Iterate over the ``Rooms`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, ROOMS_SHEET):
        yield deserialize_room(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream ledger records from the ``Transactions`` worksheet in sheet order.

    Sheet order is append order, which is the order movements were committed.
    """

    for raw in _iter_sheet(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def read_item(workbook: Workbook, item_id: str) -> Optional[ItemRow]:
    """Read a single item row straight from the worksheet.

    Unlike the cached listings in the business layer this always reflects the
    current in-memory workbook contents.

    Returns:
        ItemRow | None: The item, or ``None`` when no row carries ``item_id``.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", item_id)
    if row_index is None:
        return None
    return deserialize_item(read_row_values(workbook, ITEMS_SHEET, row_index))


def read_room(workbook: Workbook, room_id: str) -> Optional[RoomRow]:
    """Read a single room row straight from the worksheet, or ``None``."""

    row_index = locate_row(workbook, ROOMS_SHEET, "RoomID", room_id)
    if row_index is None:
        return None
    return deserialize_room(read_row_values(workbook, ROOMS_SHEET, row_index))


def read_row_values(workbook: Workbook, sheet_name: str, row_index: int) -> list[object]:
    """Return the raw cell values of one row, padded to the sheet's columns."""

    width = len(SHEET_COLUMNS[sheet_name])
    sheet = workbook[sheet_name]
    values = [
        sheet.cell(row=row_index, column=column).value
        for column in range(1, width + 1)
    ]
    return values


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    sheet = workbook[ITEMS_SHEET]
    sheet.append(serialize_item(record))


def append_room(workbook: Workbook, record: RoomRow) -> None:
    """Append a room record to the ``Rooms`` worksheet."""

    sheet = workbook[ROOMS_SHEET]
    sheet.append(serialize_room(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a ledger record to the ``Transactions`` worksheet."""

    sheet = workbook[TRANSACTIONS_SHEET]
    sheet.append(serialize_transaction(record))


def save_item(workbook: Workbook, record: ItemRow) -> None:
    """Overwrite every column of an existing item row with ``record``.

    Raises:
        KeyError: If no row carries ``record.item_id``.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", record.item_id)
    if row_index is None:
        raise KeyError(f"Item not found: {record.item_id}")
    sheet = workbook[ITEMS_SHEET]
    for column, value in enumerate(serialize_item(record), start=1):
        sheet.cell(row=row_index, column=column).value = value


def update_room(workbook: Workbook, room_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing room.

    Raises:
        KeyError: If the room or any referenced column is missing.
    """

    _update_fields(workbook, ROOMS_SHEET, "RoomID", room_id, field_values)


def update_transaction(workbook: Workbook, transaction_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing ledger row.

    The data layer does not judge which columns may change; the business
    layer restricts callers to non-causal metadata.

    Raises:
        KeyError: If the transaction or any referenced column is missing.
    """

    _update_fields(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id, field_values)


def _update_fields(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: dict[str, Any],
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        col = header_map[field]
        sheet.cell(row=row_index, column=col).value = value


def delete_row(workbook: Workbook, sheet_name: str, row_index: int) -> None:
    """Remove a data row from ``sheet_name``; the header row is protected."""

    if row_index < 2:
        raise ValueError("Refusing to delete the header row")
    workbook[sheet_name].delete_rows(row_index)


def insert_room(workbook: Workbook, row_index: int, record: RoomRow) -> None:
    """Write ``record`` into a new row at ``row_index``, shifting later rows down."""

    if row_index < 2:
        raise ValueError("Refusing to insert above the header row")
    sheet = workbook[ROOMS_SHEET]
    sheet.insert_rows(row_index)
    for column, value in enumerate(serialize_room(record), start=1):
        sheet.cell(row=row_index, column=column).value = value


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def next_transaction_id(workbook: Workbook) -> str:
    """Allocate the next sequential ledger identifier (``T00000001`` style).

    The sequence continues from the highest identifier present, so it stays
    monotonic even if rows were removed by a rolled back commit.
    """

    highest = 0
    for raw in _iter_sheet(workbook, TRANSACTIONS_SHEET):
        identifier = str(raw[0] or "")
        if identifier.startswith(TRANSACTION_ID_PREFIX):
            suffix = identifier[len(TRANSACTION_ID_PREFIX):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
    return f"{TRANSACTION_ID_PREFIX}{highest + 1:0{TRANSACTION_ID_WIDTH}d}"


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the ``Items`` column ordering."""

    return [
        record.item_id,
        record.item_name,
        record.category_id,
        record.room_id,
        record.quantity,
        record.status,
        record.price,
        record.created_at_iso,
        record.updated_at_iso,
    ]


def serialize_room(record: RoomRow) -> list[object]:
    """Convert a room dataclass into the ``Rooms`` column ordering."""

    return [
        record.room_id,
        record.room_name,
        record.location,
        record.status,
        record.created_at_iso,
        record.updated_at_iso,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.item_id,
        record.kind,
        record.quantity,
        record.from_room_id,
        record.to_room_id,
        record.actor_id,
        record.occurred_at_iso,
        record.notes,
        record.reference_number,
        record.reverses_transaction_id,
        record.created_at_iso,
    ]


def _optional_text(value: object) -> Optional[str]:
    return str(value) if value is not None else None


def _to_int(value: object) -> int:
    if value is None:
        return 0
    try:
        return int(Decimal(str(value)))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid integer cell value: {value!r}") from exc


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw worksheet row into a strongly typed item record.

    Identifiers are coerced to ``str`` because Excel happily turns numeric
    looking ids into numbers; quantities become ``int`` and prices
    :class:`~decimal.Decimal`.
    """

    (
        item_id,
        item_name,
        category_id,
        room_id,
        quantity_raw,
        status,
        price_raw,
        created_at,
        updated_at,
    ) = tuple(raw_row)[:len(ITEM_COLUMNS)]

    price = Decimal(str(price_raw)) if price_raw is not None else Decimal("0.00")
    return ItemRow(
        item_id=str(item_id),
        item_name=str(item_name) if item_name is not None else "",
        category_id=_optional_text(category_id),
        room_id=_optional_text(room_id),
        quantity=_to_int(quantity_raw),
        status=str(status) if status is not None else "",
        price=price,
        created_at_iso=str(created_at) if created_at is not None else "",
        updated_at_iso=str(updated_at) if updated_at is not None else "",
    )


def deserialize_room(raw_row: Sequence[object]) -> RoomRow:
    """Convert a raw worksheet row into a strongly typed room record."""

    room_id, room_name, location, status, created_at, updated_at = tuple(raw_row)[:len(ROOM_COLUMNS)]
    return RoomRow(
        room_id=str(room_id),
        room_name=str(room_name) if room_name is not None else "",
        location=str(location) if location is not None else "",
        status=str(status) if status is not None else RoomStatus.INACTIVE.value,
        created_at_iso=str(created_at) if created_at is not None else "",
        updated_at_iso=str(updated_at) if updated_at is not None else "",
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    Optional columns remain ``None`` when the sheet leaves them blank and the
    quantity is normalized to ``int``.
    """

    (
        transaction_id,
        item_id,
        kind,
        quantity_raw,
        from_room_id,
        to_room_id,
        actor_id,
        occurred_at,
        notes,
        reference_number,
        reverses_transaction_id,
        created_at,
    ) = tuple(raw_row)[:len(TRANSACTION_COLUMNS)]

    return TransactionRow(
        transaction_id=str(transaction_id),
        item_id=str(item_id),
        kind=str(kind) if kind is not None else "",
        quantity=_to_int(quantity_raw),
        from_room_id=_optional_text(from_room_id),
        to_room_id=_optional_text(to_room_id),
        actor_id=str(actor_id) if actor_id is not None else "",
        occurred_at_iso=str(occurred_at) if occurred_at is not None else "",
        notes=_optional_text(notes),
        reference_number=_optional_text(reference_number),
        reverses_transaction_id=_optional_text(reverses_transaction_id),
        created_at_iso=str(created_at) if created_at is not None else "",
    )
