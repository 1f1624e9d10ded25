"""Data access layer for the stocktake tool.

This module provides the low-level helpers that touch the outside world on
behalf of the session. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening the SQLite inventory database, applying
   upsert-increment writes, and reading stored counts back.
3. Export: writing the stored counts to an ``.xlsx`` workbook.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

import openpyxl
from openpyxl.styles import Font
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from . import log
from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_DATABASE_FILE,
    DEFAULT_LOCATION_PATTERN,
    DEFAULT_LOG_FILE,
    DEFAULT_NOTIFIER_HOST,
    DEFAULT_NOTIFIER_PORT,
    DEFAULT_PROMPT,
    DEFAULT_QUANTITY_PATTERN,
    EXPORT_COLUMNS,
    EXPORT_SHEET,
    INVENTORY_TABLE,
)
from .records import Transaction


CONFIG_FILE_NAME = "config.ini"
STOCKTAKE_SECTION = "Stocktake"
NOTIFIER_SECTION = "Notifier"

metadata = MetaData()

inventory = Table(
    INVENTORY_TABLE,
    metadata,
    Column("item_location", String, nullable=False),
    Column("item_code", String, nullable=False),
    Column("item_soh", Integer, nullable=False, server_default=text("0")),
    UniqueConstraint("item_location", "item_code", name="uq_inventory_location_code"),
)


@dataclass(frozen=True)
class NotifierSettings:
    """Endpoint of the optional remote listener."""

    enabled: bool
    host: str
    port: int
    connect_timeout: float


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    log_file: Path
    database_file: Path
    location_pattern: str
    quantity_pattern: str
    prompt: str
    notifier: NotifierSettings


@dataclass(frozen=True)
class CountRow:
    """In-memory view of a row from the ``inventory`` table."""

    location: str
    code: str
    soh: int


def find_config_file(explicit_path: Optional[Path] = None) -> Optional[Path]:
    """Locate the configuration file, if any.

    An explicit path is returned without verification so the caller can target
    a non-standard location; :func:`read_config` reports it if it is missing.
    Otherwise the function walks up from the current working directory toward
    the filesystem root looking for ``CONFIG_FILE_NAME``.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path | None: The supplied or discovered path, or ``None`` when no
            configuration file exists and built-in defaults should apply.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    log.debug("No %s found above %s, using defaults", CONFIG_FILE_NAME, current)
    return None


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Interpolation is disabled so recognition patterns may contain any
    character. Missing sections are tolerated here; defaults are applied by
    :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_path, encoding="utf-8")
    return parser


def default_settings() -> ConfigSettings:
    """Settings used when no configuration file is present."""
    return parse_settings(configparser.ConfigParser(interpolation=None))


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Every option is optional and falls back to the fixed defaults from
    :mod:`mdc_stocktake.constants`. Relative file paths are anchored to
    ``base_path`` when provided, or to the current working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``LogFile`` and ``Database`` entries.

    Returns:
        ConfigSettings: Immutable settings container with resolved paths.

    Raises:
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    def _get(section: str, option: str, fallback: str) -> str:
        return parser.get(section, option, fallback=fallback)

    try:
        enabled = parser.getboolean(NOTIFIER_SECTION, "Enabled", fallback=False)
        port = parser.getint(NOTIFIER_SECTION, "Port", fallback=DEFAULT_NOTIFIER_PORT)
        connect_timeout = parser.getfloat(
            NOTIFIER_SECTION, "ConnectTimeout", fallback=DEFAULT_CONNECT_TIMEOUT
        )
    except ValueError as exc:
        raise ValueError(f"Invalid [{NOTIFIER_SECTION}] configuration entry: {exc}") from exc

    if not 0 < port < 65536:
        raise ValueError(f"Invalid [{NOTIFIER_SECTION}] Port: {port}")

    anchor = base_path if base_path is not None else Path.cwd()

    return ConfigSettings(
        log_file=_anchor_path(_get(STOCKTAKE_SECTION, "LogFile", DEFAULT_LOG_FILE), anchor),
        database_file=_anchor_path(_get(STOCKTAKE_SECTION, "Database", DEFAULT_DATABASE_FILE), anchor),
        location_pattern=_get(STOCKTAKE_SECTION, "LocationPattern", DEFAULT_LOCATION_PATTERN),
        quantity_pattern=_get(STOCKTAKE_SECTION, "QuantityPattern", DEFAULT_QUANTITY_PATTERN),
        prompt=_get(STOCKTAKE_SECTION, "Prompt", DEFAULT_PROMPT),
        notifier=NotifierSettings(
            enabled=enabled,
            host=_get(NOTIFIER_SECTION, "Host", DEFAULT_NOTIFIER_HOST),
            port=port,
            connect_timeout=connect_timeout,
        ),
    )


def _anchor_path(raw: str, anchor: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = anchor / path
    return path.resolve()


def open_store(database_file: Path) -> Engine:
    """Open the SQLite inventory store and make sure the table exists.

    The engine allows its connections to be used from the persistence worker
    thread. A trivial query is issued so an unusable file is reported here,
    at startup, instead of inside the worker.

    Args:
        database_file (Path): Location of the SQLite file. It is created on
            first use.

    Returns:
        Engine: SQLAlchemy engine bound to the store.

    Raises:
        sqlalchemy.exc.SQLAlchemyError: If the file cannot be opened or the
            schema cannot be created.
    """

    path = Path(database_file).expanduser().resolve()
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    log.debug("Opened inventory store at '%s'", path)
    return engine


def upsert_count(connection: Connection, transaction: Transaction) -> None:
    """Add ``transaction.soh`` to the stored count for its (location, code).

    A missing row is inserted with the delta as its quantity. The statement
    runs inside whatever transaction ``connection`` currently holds; nothing
    is committed here.
    """

    stmt = sqlite_insert(inventory).values(
        item_location=transaction.location,
        item_code=transaction.code,
        item_soh=transaction.soh,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[inventory.c.item_location, inventory.c.item_code],
        set_={"item_soh": inventory.c.item_soh + stmt.excluded.item_soh},
    )
    connection.execute(stmt)


def fetch_counts(engine: Engine, *, location: Optional[str] = None) -> List[CountRow]:
    """Return stored counts ordered by location, then item code.

    Args:
        engine (Engine): Store engine returned by :func:`open_store`.
        location (str | None): Restrict the listing to one location.

    Returns:
        list[CountRow]: One row per (location, code) pair.
    """

    query = select(inventory.c.item_location, inventory.c.item_code, inventory.c.item_soh)
    if location is not None:
        query = query.where(inventory.c.item_location == location)
    query = query.order_by(inventory.c.item_location, inventory.c.item_code)

    with engine.connect() as conn:
        return [
            CountRow(location=row.item_location, code=row.item_code, soh=row.item_soh)
            for row in conn.execute(query)
        ]


def fetch_count(engine: Engine, location: str, code: str) -> Optional[int]:
    """Return the stored quantity for one pair, or ``None`` if never counted."""

    query = select(inventory.c.item_soh).where(
        inventory.c.item_location == location,
        inventory.c.item_code == code,
    )
    with engine.connect() as conn:
        return conn.execute(query).scalar_one_or_none()


def export_counts(rows: Iterable[CountRow], destination: Path) -> Path:
    """Write counts to a new ``.xlsx`` workbook with a bold header row.

    The destination path is expanded and resolved, and parent directories are
    created on demand. An existing file is overwritten.

    Args:
        rows (Iterable[CountRow]): Counts to write, in the order given.
        destination (Path): Filesystem path that should receive the workbook.

    Returns:
        Path: The resolved destination.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = EXPORT_SHEET

    bold_font = Font(bold=True)
    for col_idx, column_name in enumerate(EXPORT_COLUMNS, 1):
        cell = ws.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = bold_font

    written = 0
    for row in rows:
        ws.append(serialize_count(row))
        written += 1

    wb.save(dest)
    log.info("Exported %d counts to '%s'", written, dest)
    return dest


def serialize_count(record: CountRow) -> list[object]:
    """Convert a count into the worksheet column ordering ``[Location, Code, SOH]``."""

    return [record.location, record.code, record.soh]
