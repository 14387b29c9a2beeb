"""
DuckDB Target Connector
=======================

Connector for the local DuckDB analytical store.
Supports catalog lookups, creating tables from CSV extracts with an
inferred schema, appending CSV extracts to existing tables and simple
parameterized reads and deletes.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

import duckdb
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StoreError

logger = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    """Quote a table or column name for interpolation into SQL."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal for interpolation into SQL."""
    return "'" + value.replace("'", "''") + "'"


class DuckDBConnector:
    """
    DuckDB database connector for loading extracts.

    The connection is opened per synchronization pass and disposed
    afterwards so other processes can use the database file in between.
    """

    def __init__(self, db_path: str):
        """
        Initialize DuckDB connector.

        Args:
            db_path: Path to the DuckDB database file
        """
        self.db_path = db_path
        self.engine = None

    @property
    def is_connected(self) -> bool:
        return self.engine is not None

    def connect(self):
        """Open the database, creating the file if needed."""
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"unable to create directory for {self.db_path}: {e}") from e

        self.engine = create_engine(f"duckdb:///{self.db_path}")

        # Test connection
        with self._store_errors(f"connecting to {self.db_path}"):
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

        logger.info(f"Connected to DuckDB: {self.db_path}")

    def disconnect(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            self.engine = None
            logger.info("DuckDB connection closed")

    @contextmanager
    def _store_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except (SQLAlchemyError, duckdb.Error) as e:
            raise StoreError(f"{action} failed: {e}") from e

    def _require_engine(self):
        if self.engine is None:
            raise StoreError("DuckDB connector is not connected")
        return self.engine

    @contextmanager
    def transaction(self, action: str = "transaction") -> Iterator[Connection]:
        """
        Run statements in a single transaction.

        Args:
            action: Description used in error messages

        Yields:
            SQLAlchemy connection bound to the open transaction
        """
        engine = self._require_engine()
        with self._store_errors(action):
            with engine.begin() as conn:
                yield conn

    def fetch_one(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[Tuple]:
        """
        Run a query and return its first row.

        Args:
            sql: SQL query string with :name placeholders
            params: Bound parameters

        Returns:
            Row as a tuple, or None when the query returned no rows
        """
        engine = self._require_engine()
        with self._store_errors("query"):
            with engine.connect() as conn:
                row = conn.execute(text(sql), params or {}).fetchone()
        return None if row is None else tuple(row)

    def execute(self, sql: str, params: Optional[Dict[str, Any]] = None):
        """Run a statement in its own transaction."""
        with self.transaction("statement") as conn:
            conn.execute(text(sql), params or {})

    def table_exists(self, table: str) -> bool:
        """
        Check the catalog for a table.

        Args:
            table: Table name

        Returns:
            True if exists, False otherwise
        """
        row = self.fetch_one(
            "SELECT table_name FROM duckdb_tables() WHERE table_name = :table_name",
            {"table_name": table},
        )
        return row is not None

    def row_count(self, table: str) -> int:
        """Get row count for a table."""
        row = self.fetch_one(f"SELECT COUNT(*) FROM {quote_identifier(table)}")
        return int(row[0])

    def drop_table(self, table: str):
        """Drop a table if it exists."""
        self.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")

    def create_table_from_csv(self, table: str, csv_path: Union[str, Path]) -> int:
        """
        Create a table from a CSV file, inferring its schema.

        Args:
            table: Table to create
            csv_path: CSV file with a header row

        Returns:
            Number of rows in the new table
        """
        quoted = quote_identifier(table)
        with self.transaction(f"creating {table} from {csv_path}") as conn:
            conn.execute(text(
                f"CREATE TABLE {quoted} AS "
                f"SELECT * FROM read_csv_auto({quote_literal(str(csv_path))}, header=true)"
            ))
            rows = conn.execute(text(f"SELECT COUNT(*) FROM {quoted}")).scalar()

        logger.debug(f"Created {table} with {rows} rows from {csv_path}")
        return int(rows)

    def append_csv(self, table: str, csv_path: Union[str, Path]) -> int:
        """
        Append a CSV file's rows to an existing table.

        Args:
            table: Existing table
            csv_path: CSV file with a header row

        Returns:
            Number of rows appended
        """
        quoted = quote_identifier(table)
        with self.transaction(f"appending {csv_path} to {table}") as conn:
            before = conn.execute(text(f"SELECT COUNT(*) FROM {quoted}")).scalar()
            conn.execute(text(f"COPY {quoted} FROM {quote_literal(str(csv_path))} (HEADER TRUE)"))
            after = conn.execute(text(f"SELECT COUNT(*) FROM {quoted}")).scalar()

        logger.debug(f"Appended {after - before} rows to {table} from {csv_path}")
        return int(after - before)
