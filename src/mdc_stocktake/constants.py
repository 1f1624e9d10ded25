"""Enumerations and defaults shared across the stocktake modules.

Centralises the recognition patterns, fixed file locations, and reserved
commands so the configuration layer, the session state machine, and the CLI
agree on a single source of truth.
"""

from __future__ import annotations

from enum import Enum


DEFAULT_LOG_FILE = "./mdc_stocktake.log"
DEFAULT_DATABASE_FILE = "./mdc_inventory.db"
DEFAULT_LOCATION_PATTERN = r"^[A-W]\d{1,2}$"
DEFAULT_QUANTITY_PATTERN = r"^\d{1,3}$"
DEFAULT_PROMPT = "MDC_ST $"

DEFAULT_NOTIFIER_HOST = "127.0.0.1"
DEFAULT_NOTIFIER_PORT = 7878
DEFAULT_CONNECT_TIMEOUT = 5.0

# Seconds to wait for each worker when a session is aborted.
ABORT_JOIN_TIMEOUT = 2.0

# Quantity attached to an item that is closed without an explicit count.
IMPLICIT_QUANTITY = 1

INVENTORY_TABLE = "inventory"
EXPORT_SHEET = "Inventory"
EXPORT_COLUMNS = ("Location", "Code", "SOH")


class Command(str, Enum):
    """Reserved literals intercepted before classification."""

    EXIT = "exit"
    UNDO = "undo"


class InputKind(str, Enum):
    """The three shapes an input line can take."""

    LOCATION = "LOCATION"
    QUANTITY = "QUANTITY"
    ITEM_CODE = "ITEM_CODE"


class Outcome(str, Enum):
    """Result of processing one input line."""

    CONTINUE = "CONTINUE"
    STOP = "STOP"


__all__ = [
    "DEFAULT_LOG_FILE",
    "DEFAULT_DATABASE_FILE",
    "DEFAULT_LOCATION_PATTERN",
    "DEFAULT_QUANTITY_PATTERN",
    "DEFAULT_PROMPT",
    "DEFAULT_NOTIFIER_HOST",
    "DEFAULT_NOTIFIER_PORT",
    "DEFAULT_CONNECT_TIMEOUT",
    "ABORT_JOIN_TIMEOUT",
    "IMPLICIT_QUANTITY",
    "INVENTORY_TABLE",
    "EXPORT_SHEET",
    "EXPORT_COLUMNS",
    "Command",
    "InputKind",
    "Outcome",
]
