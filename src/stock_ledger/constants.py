"""Enumerations and defaults shared across the stock ledger modules.

The data access layer, the movement engine, and the CLI all rely on these
identifiers, so the values stored in the workbook are defined exactly once.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Quantities at or below this value classify as LOW_STOCK unless configured.
DEFAULT_LOW_STOCK_THRESHOLD = 5

# Upper bound, in seconds, on the wait for a per-item lock.
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


class MovementKind(str, Enum):
    """Enumerate the movement kinds recorded in the transaction ledger."""

    IN = "in"
    OUT = "out"
    TRANSFER = "transfer"


class StockStatus(str, Enum):
    """Enumerate the derived stock classifications of an item."""

    IN_STOCK = "In Stock"
    LOW_STOCK = "Low Stock"
    OUT_OF_STOCK = "Out of Stock"


class RoomStatus(str, Enum):
    """Enumerate the activity states a room can be in."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class FailureReason(str, Enum):
    """Machine-readable reasons attached to every ledger error."""

    INVALID_QUANTITY = "INVALID_QUANTITY"
    SAME_ROOM_TRANSFER = "SAME_ROOM_TRANSFER"
    DUPLICATE_IDENTIFIER = "DUPLICATE_IDENTIFIER"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    ROOM_MISMATCH = "ROOM_MISMATCH"
    INSUFFICIENT_QUANTITY = "INSUFFICIENT_QUANTITY"
    ROOM_INACTIVE = "ROOM_INACTIVE"
    DESTINATION_ROOM_INACTIVE = "DESTINATION_ROOM_INACTIVE"
    ROOM_IN_USE = "ROOM_IN_USE"
    ALREADY_REVERSED = "ALREADY_REVERSED"
    REVERSAL_OF_REVERSAL = "REVERSAL_OF_REVERSAL"
    BUSY = "BUSY"
    STORAGE_FAILURE = "STORAGE_FAILURE"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ITEMS = "Items"
    ROOMS = "Rooms"
    TRANSACTIONS = "Transactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "MovementKind",
    "StockStatus",
    "RoomStatus",
    "FailureReason",
    "SheetName",
]
