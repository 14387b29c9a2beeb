"""
Cursor Resolver
===============

Works out where a local table left off so the next download only asks
DeepLynx for newer rows.

The resume position is read from the newest row of the table and turned
into the single string form DeepLynx accepts as ``startTime``, whatever
DuckDB type the timestamp column was inferred as.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import numpy

from .config import DataSourceConfiguration
from .connectors.duckdb_connector import DuckDBConnector, quote_identifier
from .errors import InvalidCursorEncoding, InvalidSecondaryIndex, StoreError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


class ValueKind(Enum):
    """Stored value variants a cursor can be built from."""

    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    TIMESTAMP = "timestamp"
    DATE = "date"
    TIME = "time"
    TEXT = "text"
    BLOB = "blob"
    OTHER = "other"


class TimeUnit(Enum):
    SECOND = 1
    MILLISECOND = 1_000
    MICROSECOND = 1_000_000
    NANOSECOND = 1_000_000_000


_INTEGER_TYPES = {
    "TINYINT", "SMALLINT", "INTEGER", "BIGINT", "HUGEINT",
    "UTINYINT", "USMALLINT", "UINTEGER", "UBIGINT", "UHUGEINT",
}
_TIMESTAMP_UNITS = {
    "TIMESTAMP_S": TimeUnit.SECOND,
    "TIMESTAMP_MS": TimeUnit.MILLISECOND,
    "TIMESTAMP": TimeUnit.MICROSECOND,
    "TIMESTAMP WITH TIME ZONE": TimeUnit.MICROSECOND,
    "TIMESTAMP_NS": TimeUnit.NANOSECOND,
}
_TIME_UNITS = {
    "TIME": TimeUnit.MICROSECOND,
    "TIME WITH TIME ZONE": TimeUnit.MICROSECOND,
    "TIME_NS": TimeUnit.NANOSECOND,
}


@dataclass(frozen=True)
class StoredValue:
    """A value read from the store together with its variant."""

    kind: ValueKind
    value: Any
    unit: Optional[TimeUnit] = None

    @classmethod
    def from_store(cls, value: Any, type_name: str) -> "StoredValue":
        """
        Classify a value by the DuckDB type name ``typeof()`` reported for it.

        Args:
            value: Python value returned by the driver
            type_name: DuckDB logical type name, e.g. TIMESTAMP_MS or DECIMAL(18,3)

        Returns:
            StoredValue tagged with its variant and, for temporal types, unit
        """
        if value is None:
            return cls(ValueKind.NULL, None)

        name = (type_name or "").strip().upper()
        if name == "BOOLEAN":
            return cls(ValueKind.BOOLEAN, value)
        if name in _INTEGER_TYPES:
            return cls(ValueKind.INTEGER, value)
        if name == "FLOAT":
            return cls(ValueKind.FLOAT, value)
        if name == "DOUBLE":
            return cls(ValueKind.DOUBLE, value)
        if name.startswith("DECIMAL"):
            return cls(ValueKind.DECIMAL, value)
        if name in _TIMESTAMP_UNITS:
            return cls(ValueKind.TIMESTAMP, value, _TIMESTAMP_UNITS[name])
        if name in _TIME_UNITS:
            return cls(ValueKind.TIME, value, _TIME_UNITS[name])
        if name == "DATE":
            return cls(ValueKind.DATE, value)
        if name == "VARCHAR":
            return cls(ValueKind.TEXT, value)
        if name == "BLOB":
            return cls(ValueKind.BLOB, value)
        return cls(ValueKind.OTHER, value)


def _to_instant(value: Any, unit: TimeUnit) -> Optional[datetime]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, time):
        return datetime.combine(EPOCH.date(), value.replace(tzinfo=None))
    if isinstance(value, int) and not isinstance(value, bool):
        # epoch count in the column's unit
        seconds, remainder = divmod(value, unit.value)
        try:
            return EPOCH + timedelta(seconds=seconds, microseconds=remainder * 1_000_000 // unit.value)
        except OverflowError as e:
            raise StoreError(f"stored timestamp {value} is out of range") from e
    return None


def to_cursor_string(stored: StoredValue) -> Optional[str]:
    """
    Convert a stored value into the cursor string DeepLynx understands.

    Args:
        stored: Classified value from the timestamp column

    Returns:
        Cursor string, or None when no usable cursor can be derived
        (null, nanosecond precision or an unsupported type)

    Raises:
        InvalidCursorEncoding: if a blob is not valid UTF-8
    """
    kind, value = stored.kind, stored.value
    if kind is ValueKind.NULL or value is None:
        return None

    if kind is ValueKind.BOOLEAN:
        return "true" if value else "false"
    if kind is ValueKind.INTEGER:
        return str(int(value))
    if kind is ValueKind.FLOAT:
        # single precision values come back widened to a double
        return str(numpy.float32(value))
    if kind is ValueKind.DOUBLE:
        return repr(float(value))
    if kind is ValueKind.DECIMAL:
        return format(value, "f")

    if kind in (ValueKind.TIMESTAMP, ValueKind.TIME):
        if stored.unit is TimeUnit.NANOSECOND:
            return None
        instant = _to_instant(value, stored.unit or TimeUnit.MICROSECOND)
        if instant is None:
            return None
        return instant.isoformat(sep=" ", timespec="seconds")

    if kind is ValueKind.TEXT:
        return str(value)
    if kind is ValueKind.BLOB:
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidCursorEncoding(f"cursor blob is not valid UTF-8: {e}") from e

    if kind is ValueKind.DATE:
        if isinstance(value, int) and not isinstance(value, bool):
            value = EPOCH.date() + timedelta(days=value)
        if isinstance(value, date):
            return value.isoformat()
        return None

    return None


@dataclass(frozen=True)
class ResumeCursor:
    """Where the next download should start."""

    position: str
    secondary_index: Optional[int] = None


class CursorStatus(Enum):
    TABLE_ABSENT = "table_absent"
    NO_CURSOR = "no_cursor"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class CursorResolution:
    status: CursorStatus
    cursor: Optional[ResumeCursor] = None

    @property
    def requires_full_load(self) -> bool:
        return self.status is not CursorStatus.RESOLVED


class CursorResolver:
    """Resolves resume cursors for configured data sources."""

    def __init__(self, connector: DuckDBConnector):
        self.connector = connector

    @staticmethod
    def last_row_query(data_source: DataSourceConfiguration) -> str:
        """
        Build the query selecting the newest row of a table.

        Row order in storage says nothing about recency, so the newest row
        is picked by an explicit descending sort on the timestamp column,
        then on the secondary index when one is configured.
        """
        timestamp = quote_identifier(data_source.timestamp_column_name)
        table = quote_identifier(data_source.table_name)

        columns = [timestamp, f"typeof({timestamp})"]
        order_by = [f"{timestamp} DESC NULLS LAST"]
        if data_source.secondary_index:
            secondary = quote_identifier(data_source.secondary_index)
            columns.append(secondary)
            order_by.append(f"{secondary} DESC NULLS LAST")

        return f"SELECT {', '.join(columns)} FROM {table} ORDER BY {', '.join(order_by)} LIMIT 1"

    @staticmethod
    def _secondary_index_value(data_source: DataSourceConfiguration, value: Any) -> int:
        if value is None:
            raise InvalidSecondaryIndex(
                f"secondary index {data_source.secondary_index} of {data_source.table_name} is null"
            )
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidSecondaryIndex(
                f"secondary index {data_source.secondary_index} of {data_source.table_name} "
                f"is not an unsigned integer: {value!r}"
            )
        return value

    def resolve(self, data_source: DataSourceConfiguration) -> CursorResolution:
        """
        Resolve the resume cursor for a data source.

        Args:
            data_source: Data source configuration

        Returns:
            CursorResolution; TABLE_ABSENT and NO_CURSOR both mean the
            table must be fully (re)loaded
        """
        table = data_source.table_name
        if not self.connector.table_exists(table):
            logger.debug(f"Table {table} does not exist")
            return CursorResolution(CursorStatus.TABLE_ABSENT)

        row = self.connector.fetch_one(self.last_row_query(data_source))
        if row is None:
            logger.debug(f"Table {table} is empty")
            return CursorResolution(CursorStatus.NO_CURSOR)

        stored = StoredValue.from_store(row[0], row[1])
        position = to_cursor_string(stored)
        if position is None:
            logger.debug(f"No usable cursor in {table} ({row[1]} value {row[0]!r})")
            return CursorResolution(CursorStatus.NO_CURSOR)

        secondary_index = None
        if data_source.secondary_index:
            secondary_index = self._secondary_index_value(data_source, row[2])

        return CursorResolution(CursorStatus.RESOLVED, ResumeCursor(position, secondary_index))
