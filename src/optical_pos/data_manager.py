"""Data access layer for the optical POS.

This module owns every read and write against the master workbook. Business
rules belong elsewhere.

The public API is organised around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record access: :class:`WorkbookStore` exposes sheets as tables with
   equality filters, and stock rows with compare-and-swap updates.
"""


from __future__ import annotations

import configparser
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Hashable, List, Mapping, Optional, Protocol

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import SheetName
from .errors import ExternalStoreError, MissingReferenceError


CONFIG_FILE_NAME = "config.ini"
STOCK_SHEET = SheetName.STOCK.value

Record = Dict[str, Any]


@dataclass(frozen=True)
class RetrySettings:
    """Bounded retry policy applied around store calls."""

    attempts: int = 3
    backoff_initial: float = 0.1
    backoff_factor: float = 2.0
    backoff_max: float = 2.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_branch: str
    retry: RetrySettings = field(default_factory=RetrySettings)


class RecordStore(Protocol):
    """Table-style access used for orders, cards and requests."""

    def find(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> List[Record]: ...

    def find_latest(self, table: str, filters: Mapping[str, Any], order_by: str) -> Optional[Record]: ...

    def insert(self, table: str, record: Mapping[str, Any]) -> Record: ...

    def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> Record: ...

    def delete(self, table: str, filters: Mapping[str, Any]) -> int: ...

    def compare_and_set(
        self, table: str, filters: Mapping[str, Any], field: str, expected: Any, new: Any
    ) -> bool: ...

    def key_lock(self, *key: Hashable) -> threading.Lock: ...


class StockStore(Protocol):
    """Per-branch stock levels."""

    def get_quantity(self, product_id: str, branch_code: str) -> int: ...

    def set_quantity(self, product_id: str, branch_code: str, quantity: int) -> None: ...

    def compare_and_set_quantity(self, product_id: str, branch_code: str, *, expected: int, new: int) -> bool: ...

    def adjust_quantity(self, product_id: str, branch_code: str, amount: int) -> int: ...


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    An explicit path is returned as-is. Otherwise the search walks up from
    the current working directory and the first ``config.ini`` found wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of searching.

    Returns:
        Path: The supplied or discovered configuration path.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
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
    """Load ``config.ini`` into a ``ConfigParser``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_retry_settings(parser: configparser.ConfigParser) -> RetrySettings:
    """Read the optional ``[Retry]`` section, falling back to defaults."""

    defaults = RetrySettings()
    if not parser.has_section("Retry"):
        return defaults
    try:
        settings = RetrySettings(
            attempts=parser.getint("Retry", "Attempts", fallback=defaults.attempts),
            backoff_initial=parser.getfloat("Retry", "BackoffInitial", fallback=defaults.backoff_initial),
            backoff_factor=parser.getfloat("Retry", "BackoffFactor", fallback=defaults.backoff_factor),
            backoff_max=parser.getfloat("Retry", "BackoffMax", fallback=defaults.backoff_max),
        )
    except ValueError as exc:
        raise KeyError(f"Invalid retry configuration: {exc}") from exc
    if settings.attempts < 1:
        raise KeyError("Retry Attempts must be at least 1")
    return settings


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (the config
    directory in practice) or the current working directory.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_branch = parser.get("Defaults", "Branch")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_branch=default_branch,
        retry=parse_retry_settings(parser),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _same(left: Any, right: Any) -> bool:
    # Cells round-trip through Excel, so "4701" and 4701 must compare equal.
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) or isinstance(right, bool):
        return bool(left) == bool(right)
    return str(left) == str(right)


def _sort_key(value: Any) -> tuple:
    if value is None:
        return (0, 0, "")
    try:
        return (1, int(str(value)), "")
    except ValueError:
        return (1, -1, str(value))


class WorkbookStore:
    """Record and stock store backed by an ``openpyxl`` workbook.

    Each worksheet is a table whose first row holds the column names. All
    access is serialised by one re-entrant lock because ``openpyxl`` is not
    thread safe; read-modify-write sequences that span several calls take a
    per-key lock from :meth:`key_lock` instead.
    """

    def __init__(self, workbook: Workbook):
        self.workbook = workbook
        self._lock = threading.RLock()
        self._key_locks: Dict[tuple, threading.Lock] = {}

    def key_lock(self, *key: Hashable) -> threading.Lock:
        """Return the lock dedicated to ``key``, creating it on first use."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _sheet(self, table: str) -> Worksheet:
        try:
            return self.workbook[table]
        except KeyError as exc:
            raise ExternalStoreError(f"Workbook has no '{table}' sheet") from exc

    def _headers(self, sheet: Worksheet) -> List[str]:
        return [cell.value for cell in sheet[1] if cell.value is not None]

    def _rows(self, table: str, filters: Optional[Mapping[str, Any]]):
        sheet = self._sheet(table)
        headers = self._headers(sheet)
        for column in filters or {}:
            if column not in headers:
                raise KeyError(f"Unknown column '{column}' in '{table}'")
        for row_index, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if not any(cell is not None for cell in raw):
                continue
            record = dict(zip(headers, raw))
            if all(_same(record.get(key), value) for key, value in (filters or {}).items()):
                yield row_index, record

    def find(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> List[Record]:
        with self._lock:
            return [record for _, record in self._rows(table, filters)]

    def find_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Record]:
        matches = self.find(table, filters)
        return matches[0] if matches else None

    def find_latest(self, table: str, filters: Mapping[str, Any], order_by: str) -> Optional[Record]:
        """Return the record with the highest ``order_by`` value, numerically when possible."""
        with self._lock:
            records = [record for _, record in self._rows(table, filters)]
        if not records:
            return None
        return max(records, key=lambda record: _sort_key(record.get(order_by)))

    def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        with self._lock:
            sheet = self._sheet(table)
            headers = self._headers(sheet)
            unknown = set(record) - set(headers)
            if unknown:
                raise KeyError(f"Unknown columns for '{table}': {sorted(unknown)}")
            sheet.append([record.get(header) for header in headers])
            return {header: record.get(header) for header in headers}

    def update(self, table: str, filters: Mapping[str, Any], patch: Mapping[str, Any]) -> Record:
        """Patch the first row matching ``filters`` and return it.

        Raises:
            MissingReferenceError: If no row matches.
            KeyError: If ``patch`` names an unknown column.
        """
        with self._lock:
            sheet = self._sheet(table)
            headers = self._headers(sheet)
            for row_index, record in self._rows(table, filters):
                for column, value in patch.items():
                    if column not in headers:
                        raise KeyError(f"Unknown column '{column}' in '{table}'")
                    sheet.cell(row=row_index, column=headers.index(column) + 1, value=value)
                    record[column] = value
                return record
        raise MissingReferenceError(f"No '{table}' row matches {dict(filters)}")

    def delete(self, table: str, filters: Mapping[str, Any]) -> int:
        with self._lock:
            sheet = self._sheet(table)
            doomed = [row_index for row_index, _ in self._rows(table, filters)]
            for row_index in reversed(doomed):
                sheet.delete_rows(row_index)
            return len(doomed)

    def compare_and_set(
        self, table: str, filters: Mapping[str, Any], field: str, expected: Any, new: Any
    ) -> bool:
        """Write ``new`` into ``field`` only if it still holds ``expected``.

        A missing row counts as holding ``None`` and is created on success.
        """
        with self._lock:
            matches = list(self._rows(table, filters))
            current = matches[0][1].get(field) if matches else None
            if not _same(current, expected):
                return False
            if matches:
                self.update(table, filters, {field: new})
            else:
                self.insert(table, {**filters, field: new})
            return True

    # Stock -----------------------------------------------------------------

    def get_quantity(self, product_id: str, branch_code: str) -> int:
        record = self.find_one(STOCK_SHEET, {"ProductID": product_id, "BranchCode": branch_code})
        if record is None or record.get("Quantity") is None:
            return 0
        return int(record["Quantity"])

    def set_quantity(self, product_id: str, branch_code: str, quantity: int) -> None:
        key = {"ProductID": product_id, "BranchCode": branch_code}
        with self._lock:
            if self.find_one(STOCK_SHEET, key) is None:
                self.insert(STOCK_SHEET, {**key, "Quantity": int(quantity)})
            else:
                self.update(STOCK_SHEET, key, {"Quantity": int(quantity)})

    def compare_and_set_quantity(self, product_id: str, branch_code: str, *, expected: int, new: int) -> bool:
        with self._lock:
            if self.get_quantity(product_id, branch_code) != expected:
                return False
            self.set_quantity(product_id, branch_code, new)
            return True

    def adjust_quantity(self, product_id: str, branch_code: str, amount: int) -> int:
        """Add ``amount`` (which may be negative) to a stock row atomically."""
        with self._lock:
            quantity = self.get_quantity(product_id, branch_code) + amount
            self.set_quantity(product_id, branch_code, quantity)
            return quantity


def require_record(store: RecordStore, table: str, filters: Mapping[str, Any]) -> Record:
    """Fetch exactly the first row matching ``filters`` or raise."""
    matches = store.find(table, filters)
    if not matches:
        log.warning("Lookup in '%s' found nothing for %s", table, dict(filters))
        raise MissingReferenceError(f"No '{table}' row matches {dict(filters)}")
    return matches[0]
