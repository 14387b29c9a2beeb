"""
Retention Cleaner
=================

Deletes rows that have aged out of the retention window.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import text

from .config import DataSourceConfiguration
from .connectors.duckdb_connector import DuckDBConnector, quote_identifier
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class RetentionCleaner:
    """Enforces the retention window on loaded tables."""

    def __init__(self, connector: DuckDBConnector):
        self.connector = connector

    def clean(
        self,
        data_source: DataSourceConfiguration,
        retention_days: int,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete rows older than the retention window.

        Args:
            data_source: Data source whose table is cleaned
            retention_days: Window size in whole days
            now: Reference time, defaults to the current local time

        Returns:
            Number of rows deleted
        """
        if retention_days < 0:
            raise ConfigurationError("retention window must not be negative")

        cutoff = (now or datetime.now()) - timedelta(days=retention_days)
        table = quote_identifier(data_source.table_name)
        column = quote_identifier(data_source.timestamp_column_name)
        where = f"WHERE {column} < :cutoff"

        with self.connector.transaction(f"cleaning {data_source.table_name}") as conn:
            deleted = conn.execute(
                text(f"SELECT COUNT(*) FROM {table} {where}"), {"cutoff": cutoff}
            ).scalar()
            if deleted:
                conn.execute(text(f"DELETE FROM {table} {where}"), {"cutoff": cutoff})

        if deleted:
            logger.info(f"  Removed {deleted} rows older than {cutoff:%Y-%m-%d %H:%M:%S} from {data_source.table_name}")
        return int(deleted)
