"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from stock_ledger import constants, data_manager


def _item(item_id: str = "I1", **overrides) -> data_manager.ItemRow:
    values = dict(
        item_id=item_id,
        item_name="Projector",
        category_id="AV",
        room_id="R1",
        quantity=3,
        status=constants.StockStatus.LOW_STOCK.value,
        price=Decimal("120.50"),
        created_at_iso="2025-01-01T08:00:00+00:00",
        updated_at_iso="2025-01-01T08:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.ItemRow(**values)


def _transaction(transaction_id: str = "T00000001", **overrides) -> data_manager.TransactionRow:
    values = dict(
        transaction_id=transaction_id,
        item_id="I1",
        kind=constants.MovementKind.IN.value,
        quantity=3,
        from_room_id=None,
        to_room_id="R1",
        actor_id="alice",
        occurred_at_iso="2025-01-01T08:00:00+00:00",
        notes=None,
        reference_number="PO-7",
        reverses_transaction_id=None,
        created_at_iso="2025-01-01T08:00:01+00:00",
    )
    values.update(overrides)
    return data_manager.TransactionRow(**values)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=stock_ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "SiteName") == "Test Campus"
    assert parser.getint("Stock", "LowStockThreshold") == 5


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, autosave=False, lock_timeout_seconds=2.5)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.site_name == "Test Campus"
    assert settings.lock_timeout_seconds == 2.5
    assert settings.autosave is False


def test_parse_settings_applies_stock_defaults(tmp_path):
    """The [Stock] section is optional and falls back to package defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\nSiteName = Site\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.low_stock_threshold == constants.DEFAULT_LOW_STOCK_THRESHOLD
    assert settings.lock_timeout_seconds == constants.DEFAULT_LOCK_TIMEOUT_SECONDS
    assert settings.autosave is True


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "stock_section",
    ["LowStockThreshold = -1", "LockTimeoutSeconds = 0"],
)
def test_parse_settings_rejects_out_of_range_stock_options(tmp_path, stock_section):
    """Negative thresholds and non-positive lock timeouts are configuration errors."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = l.xlsx\nSiteName = S\nSchemaVersion = 1.0.0\n"
        f"[Stock]\n{stock_section}\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {sheet.value for sheet in constants.SheetName}


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_persists_changes(master_workbook_path):
    """save_workbook should persist changes to the provided destination path."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item())
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    rows = list(data_manager.iter_items(reloaded))
    assert [row.item_id for row in rows] == ["I1"]
    assert rows[0].price == Decimal("120.50")


def test_save_workbook_leaves_no_temporary_files(master_workbook_path):
    """Atomic saves replace the destination and clean up after themselves."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.save_workbook(workbook, master_workbook_path)

    assert sorted(path.name for path in master_workbook_path.parent.iterdir()) == [master_workbook_path.name]


def test_save_workbook_failure_keeps_previous_file(master_workbook_path, monkeypatch):
    """A failing save should leave the old file intact and remove the temp file."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item())
    before = master_workbook_path.read_bytes()

    def _explode(path):
        Path(path).write_bytes(b"partial")
        raise OSError("disk full")

    monkeypatch.setattr(workbook, "save", _explode)

    with pytest.raises(OSError):
        data_manager.save_workbook(workbook, master_workbook_path)

    assert master_workbook_path.read_bytes() == before
    assert sorted(path.name for path in master_workbook_path.parent.iterdir()) == [master_workbook_path.name]


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_room(
        workbook,
        data_manager.RoomRow("R9", "Vault", "Basement", "active", "2025-01-01", "2025-01-01"),
    )
    copy_path = tmp_path / "copies" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[constants.SheetName.ROOMS.value].iter_rows(min_row=2, values_only=True))
    assert rows[0][:4] == ("R9", "Vault", "Basement", "active")


def test_refresh_workbook_returns_new_instance(master_workbook_path):
    """refresh_workbook should discard unsaved in-memory edits."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(original, _item())

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not original
    assert list(data_manager.iter_items(refreshed)) == []


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_iter_items_skips_blank_rows(master_workbook_path):
    """Fully empty rows between records should be ignored."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[data_manager.ITEMS_SHEET]
    sheet.append(data_manager.serialize_item(_item("I1")))
    sheet.append([None] * len(data_manager.ITEM_COLUMNS))
    sheet.append(data_manager.serialize_item(_item("I2")))

    assert [row.item_id for row in data_manager.iter_items(workbook)] == ["I1", "I2"]


def test_iter_rooms_yields_room_rows(master_workbook_path):
    """iter_rooms should expose RoomRow objects with an activity flag."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_room(workbook, data_manager.RoomRow("R1", "Lab", "B1", "active", "x", "x"))
    data_manager.append_room(workbook, data_manager.RoomRow("R2", "Annex", "B2", "inactive", "x", "x"))

    rows = list(data_manager.iter_rooms(workbook))

    assert [(row.room_id, row.is_active) for row in rows] == [("R1", True), ("R2", False)]


def test_iter_transactions_preserves_append_order(master_workbook_path):
    """Ledger rows come back in the order they were appended."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for index in (1, 2, 3):
        data_manager.append_transaction(workbook, _transaction(f"T0000000{index}"))
    data_manager.save_workbook(workbook, master_workbook_path)

    refreshed = data_manager.open_workbook(master_workbook_path)
    rows = list(data_manager.iter_transactions(refreshed))
    assert [row.transaction_id for row in rows] == ["T00000001", "T00000002", "T00000003"]
    assert rows[0].from_room_id is None
    assert rows[0].reference_number == "PO-7"


def test_read_item_returns_current_row(master_workbook_path):
    """read_item should reflect unsaved writes to the in-memory workbook."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item())
    data_manager.save_item(workbook, _item(quantity=7, status=constants.StockStatus.IN_STOCK.value))

    item = data_manager.read_item(workbook, "I1")

    assert item is not None
    assert item.quantity == 7
    assert item.status == constants.StockStatus.IN_STOCK.value


def test_read_item_returns_none_when_missing(master_workbook_path):
    """read_item should return None for unknown identifiers."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert data_manager.read_item(workbook, "NOPE") is None


def test_save_item_missing_raises(master_workbook_path):
    """Overwriting a nonexistent item row should raise KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.save_item(workbook, _item("GHOST"))


def test_save_item_clears_room_when_unset(master_workbook_path):
    """A None room should blank the RoomID cell rather than keep the old value."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item())
    data_manager.save_item(workbook, _item(room_id=None))

    assert data_manager.read_item(workbook, "I1").room_id is None


def test_update_room_modifies_existing_row(master_workbook_path):
    """update_room should change only the named columns."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_room(workbook, data_manager.RoomRow("R1", "Lab", "B1", "active", "c", "u"))

    data_manager.update_room(workbook, "R1", field_values={"Status": "inactive"})

    room = next(iter(data_manager.iter_rooms(workbook)))
    assert room.status == "inactive"
    assert room.room_name == "Lab"


def test_update_room_unknown_field_raises(master_workbook_path):
    """Referencing a column the sheet lacks should raise KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_room(workbook, data_manager.RoomRow("R1", "Lab", "B1", "active", "c", "u"))
    with pytest.raises(KeyError):
        data_manager.update_room(workbook, "R1", field_values={"Colour": "blue"})


def test_update_transaction_missing_raises(master_workbook_path):
    """Attempting to update a missing ledger row should raise KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_transaction(workbook, "T404", field_values={"Notes": "x"})


def test_delete_row_removes_row_and_allows_append(master_workbook_path):
    """Deleting the last ledger row should let the next append reuse its slot."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_transaction(workbook, _transaction("T00000001"))
    data_manager.append_transaction(workbook, _transaction("T00000002"))

    row_index = data_manager.locate_row(workbook, data_manager.TRANSACTIONS_SHEET, "TransactionID", "T00000002")
    data_manager.delete_row(workbook, data_manager.TRANSACTIONS_SHEET, row_index)
    data_manager.append_transaction(workbook, _transaction("T00000003"))

    ids = [row.transaction_id for row in data_manager.iter_transactions(workbook)]
    assert ids == ["T00000001", "T00000003"]
    assert data_manager.locate_row(workbook, data_manager.TRANSACTIONS_SHEET, "TransactionID", "T00000003") == 3


def test_delete_row_refuses_header(master_workbook_path):
    """The header row is never deletable."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(ValueError):
        data_manager.delete_row(workbook, data_manager.ROOMS_SHEET, 1)


def test_update_transaction_clears_cell_with_none(master_workbook_path):
    """Passing None for a field blanks the cell."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_transaction(workbook, _transaction("T00000001", notes="draft"))

    data_manager.update_transaction(workbook, "T00000001", field_values={"Notes": None})

    assert next(iter(data_manager.iter_transactions(workbook))).notes is None


def test_insert_room_restores_row_position(master_workbook_path):
    """insert_room should place the room at the given row and shift the rest down."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for room_id in ("R1", "R2", "R3"):
        data_manager.append_room(workbook, data_manager.RoomRow(room_id, "Lab", "B1", "active", "c", "u"))
    removed = data_manager.read_room(workbook, "R2")
    data_manager.delete_row(workbook, data_manager.ROOMS_SHEET, 3)

    data_manager.insert_room(workbook, 3, removed)

    assert [room.room_id for room in data_manager.iter_rooms(workbook)] == ["R1", "R2", "R3"]
    assert data_manager.read_room(workbook, "R2") == removed


def test_insert_room_refuses_header(master_workbook_path):
    """Nothing may be inserted above the header row."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(ValueError):
        data_manager.insert_room(workbook, 1, data_manager.RoomRow("R1", "Lab", "B1", "active", "c", "u"))


def test_locate_row_returns_row_index(master_workbook_path):
    """locate_row should return the worksheet index of the matching key."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_item(workbook, _item("I1"))
    data_manager.append_item(workbook, _item("I2"))

    assert data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "ItemID", "I2") == 3
    assert data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "ItemID", "NOPE") is None


def test_locate_row_unknown_column_raises(master_workbook_path):
    """Looking up by a column missing from the header should raise KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.ITEMS_SHEET, "Barcode", "X")


def test_next_transaction_id_starts_at_one(master_workbook_path):
    """An empty ledger allocates the first sequential identifier."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert data_manager.next_transaction_id(workbook) == "T00000001"


def test_next_transaction_id_continues_from_highest(master_workbook_path):
    """Allocation continues after the highest numeric suffix present."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_transaction(workbook, _transaction("T00000009"))
    data_manager.append_transaction(workbook, _transaction("T00000004"))
    data_manager.append_transaction(workbook, _transaction("LEGACY-1"))

    assert data_manager.next_transaction_id(workbook) == "T00000010"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def test_serialize_item_preserves_order():
    """serialize_item should follow the Items column ordering."""

    assert data_manager.serialize_item(_item()) == [
        "I1",
        "Projector",
        "AV",
        "R1",
        3,
        "Low Stock",
        Decimal("120.50"),
        "2025-01-01T08:00:00+00:00",
        "2025-01-01T08:00:00+00:00",
    ]


def test_serialize_transaction_preserves_order():
    """serialize_transaction should output the Transactions column order."""

    values = data_manager.serialize_transaction(_transaction(reverses_transaction_id="T00000000"))
    assert len(values) == len(data_manager.TRANSACTION_COLUMNS)
    assert values[:6] == ["T00000001", "I1", "in", 3, None, "R1"]
    assert values[10] == "T00000000"


def test_deserialize_item_coerces_numeric_cells():
    """Numeric-looking identifiers and float quantities are normalized."""

    record = data_manager.deserialize_item([101, "Chair", None, 7, 4.0, "Low Stock", 2.5, None, None])

    assert record.item_id == "101"
    assert record.room_id == "7"
    assert record.category_id is None
    assert record.quantity == 4
    assert record.price == Decimal("2.5")


def test_deserialize_item_rejects_non_numeric_quantity():
    """A garbage quantity cell should raise ValueError rather than guess."""

    with pytest.raises(ValueError):
        data_manager.deserialize_item(["I1", "Chair", None, None, "many", "", None, None, None])


def test_deserialize_room_defaults_missing_status_to_inactive():
    """A blank status cell should not silently make a room usable."""

    record = data_manager.deserialize_room(["R1", "Lab", "B1", None, None, None])
    assert record.is_active is False


def test_deserialize_transaction_constructs_dataclass():
    """deserialize_transaction should keep optional fields as None."""

    record = data_manager.deserialize_transaction(
        ["T9", "I9", "transfer", "2", "R1", "R2", "bob", "2025-01-02", None, None, "T8", "2025-01-02"]
    )
    assert record.quantity == 2
    assert record.notes is None
    assert record.reverses_transaction_id == "T8"
