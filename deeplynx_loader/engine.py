"""
Synchronization Engine
======================

Main orchestrator for mirroring DeepLynx data sources into DuckDB.
Supports Full Load and Continuation modes.

For every configured data source, in order:
1. Resolve the resume cursor from the local table
2. Full load (table absent or no usable cursor) or continuation
3. Stage the downloaded extract to a temporary CSV file
4. Create or append the table from the staged file
5. Remove rows older than the retention window (continuation only)
"""

import logging
import shutil
import tempfile
import uuid
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from observability import log_context, new_run_id

from .config import Configuration, DataSourceConfiguration
from .connectors.deeplynx_connector import DeepLynxConnector, DownloadHandle, DownloadQuery
from .connectors.duckdb_connector import DuckDBConnector
from .cursor import CursorResolver, CursorStatus, ResumeCursor
from .errors import FilesystemError, LoaderError
from .retention import RetentionCleaner

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Synchronization engine for DeepLynx data sources.

    Supports:
    - Full Load: drop the table and rebuild it from a complete extract
    - Continuation: append rows newer than the table's resume cursor

    Data sources are processed one at a time; the first failure aborts the
    pass and is raised to the caller.
    """

    def __init__(
        self,
        config: Configuration,
        client: DeepLynxConnector,
        connector: Optional[DuckDBConnector] = None,
    ):
        """
        Initialize the synchronization engine.

        Args:
            config: Loader configuration
            client: DeepLynx API client
            connector: DuckDB connector, built from ``config.db_path`` if omitted
        """
        self.config = config
        self.client = client
        self.connector = connector or DuckDBConnector(config.db_path)
        self.resolver = CursorResolver(self.connector)
        self.cleaner = RetentionCleaner(self.connector)
        self.staging_dir = Path(config.staging_dir or tempfile.gettempdir())

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def _check_disk_space(self, handle: DownloadHandle):
        try:
            free = shutil.disk_usage(self.staging_dir).free
        except OSError as e:
            raise FilesystemError(f"unable to inspect staging directory {self.staging_dir}: {e}") from e

        if handle.file_size > free:
            raise FilesystemError(
                f"not enough disk space in {self.staging_dir} for {handle.file_name}: "
                f"{handle.file_size:.0f} bytes needed, {free} available"
            )

    def _discard(self, path: Path):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise FilesystemError(f"unable to remove staging file {path}: {e}") from e

    def _abandon(self, path: Path):
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"  Could not remove partial staging file {path}: {e}")

    def _stage_download(
        self,
        data_source: DataSourceConfiguration,
        query: DownloadQuery,
    ) -> Tuple[Path, DownloadHandle]:
        """
        Request an extract and copy it to a uniquely named CSV file.

        Args:
            data_source: Data source configuration
            query: Download query options

        Returns:
            Tuple of (staged file path, download handle)
        """
        handle = self.client.initiate_download(
            data_source.container_id,
            data_source.data_source_id,
            query,
        )
        logger.info(f"  Download prepared: {handle.file_name} ({handle.file_size:.0f} bytes)")

        try:
            self.staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"unable to create staging directory {self.staging_dir}: {e}") from e
        self._check_disk_space(handle)

        chunks = self.client.download_file(data_source.container_id, handle.id, delete_after=True)

        path = self.staging_dir / f"{uuid.uuid4()}.csv"
        try:
            with closing(chunks), open(path, "wb") as staged:
                for chunk in chunks:
                    staged.write(chunk)
        except OSError as e:
            self._abandon(path)
            raise FilesystemError(f"unable to write staging file {path}: {e}") from e
        except LoaderError:
            self._abandon(path)
            raise

        return path, handle

    @staticmethod
    def _is_empty(path: Path) -> bool:
        try:
            return path.stat().st_size == 0
        except OSError as e:
            raise FilesystemError(f"unable to inspect staging file {path}: {e}") from e

    # ------------------------------------------------------------------
    # Load modes
    # ------------------------------------------------------------------

    def _new_result(self, data_source: DataSourceConfiguration, mode: str, start_cursor: Optional[str]) -> Dict:
        return {
            "table": data_source.table_name,
            "data_source_id": data_source.data_source_id,
            "mode": mode,
            "status": "pending",
            "start_cursor": start_cursor,
            "file_name": None,
            "rows_loaded": 0,
            "rows_deleted": 0,
            "start_time": datetime.now().isoformat(),
            "end_time": None,
        }

    def full_load(self, data_source: DataSourceConfiguration) -> Dict:
        """
        Drop and rebuild a table from a complete extract.

        The table's schema is inferred from the extract; when the extract
        holds no rows the new table is dropped again, as a schema inferred
        from nothing cannot be trusted.

        Args:
            data_source: Data source configuration

        Returns:
            Result dictionary with status and metrics
        """
        table = data_source.table_name
        logger.info(f"Starting FULL LOAD for data source {data_source.data_source_id} -> {table}")
        result = self._new_result(data_source, "full_load", data_source.initial_timestamp)

        self.connector.drop_table(table)

        query = DownloadQuery(
            start_time=data_source.initial_timestamp,
            secondary_index_name=data_source.secondary_index,
            secondary_index_start_value=data_source.initial_index_start or 0,
        )
        staged, handle = self._stage_download(data_source, query)
        result["file_name"] = handle.file_name

        try:
            rows = 0
            if not self._is_empty(staged):
                rows = self.connector.create_table_from_csv(table, staged)
                if rows == 0:
                    self.connector.drop_table(table)
        finally:
            self._discard(staged)

        if rows == 0:
            logger.info(f"  No data fetched for data source {data_source.data_source_id}, {table} not created")
        else:
            logger.info(f"  ✓ Full load complete: {rows} rows loaded into {table}")

        result["rows_loaded"] = rows
        result["status"] = "success"
        result["end_time"] = datetime.now().isoformat()
        return result

    def continuous_load(self, data_source: DataSourceConfiguration, cursor: ResumeCursor) -> Dict:
        """
        Append rows newer than the resume cursor to an existing table.

        Args:
            data_source: Data source configuration
            cursor: Resume cursor resolved from the table

        Returns:
            Result dictionary with status and metrics
        """
        table = data_source.table_name
        logger.info(f"Starting CONTINUATION for data source {data_source.data_source_id} -> {table}")
        logger.info(f"  Fetching rows since: {cursor.position} (secondary index: {cursor.secondary_index})")
        result = self._new_result(data_source, "continuation", cursor.position)

        query = DownloadQuery(
            start_time=cursor.position,
            secondary_index_name=data_source.secondary_index,
            secondary_index_start_value=cursor.secondary_index if cursor.secondary_index is not None else 0,
        )
        staged, handle = self._stage_download(data_source, query)
        result["file_name"] = handle.file_name

        try:
            rows = 0
            if not self._is_empty(staged):
                rows = self.connector.append_csv(table, staged)
        finally:
            self._discard(staged)

        if rows == 0:
            logger.info(f"  No new data for data source {data_source.data_source_id}, {table} unchanged")
        else:
            logger.info(f"  ✓ Continuation complete: {rows} rows appended to {table}")

        result["rows_loaded"] = rows
        result["status"] = "success"
        result["end_time"] = datetime.now().isoformat()
        return result

    def sync_data_source(self, data_source: DataSourceConfiguration) -> Dict:
        """
        Bring one table up to date with its data source.

        Args:
            data_source: Data source configuration

        Returns:
            Result dictionary with status and metrics
        """
        resolution = self.resolver.resolve(data_source)

        if resolution.status is CursorStatus.TABLE_ABSENT:
            logger.debug(f"Table {data_source.table_name} does not exist, running full load")
            return self.full_load(data_source)
        if resolution.status is CursorStatus.NO_CURSOR:
            logger.debug(f"Table {data_source.table_name} has no usable cursor, running full load")
            return self.full_load(data_source)

        result = self.continuous_load(data_source, resolution.cursor)
        result["rows_deleted"] = self.cleaner.clean(data_source, self.config.data_retention_days)
        return result

    def run(self) -> List[Dict]:
        """
        Run one synchronization pass over all configured data sources.

        Returns:
            List of result dictionaries
        """
        run_id = new_run_id()
        data_sources = self.config.data_sources

        logger.info("=" * 60)
        logger.info("STARTING SYNCHRONIZATION PASS")
        logger.info(f"Run ID: {run_id}")
        logger.info(f"Data sources: {len(data_sources)}")
        logger.info("=" * 60)

        opened_here = not self.connector.is_connected
        if opened_here:
            self.connector.connect()

        results = []
        try:
            for data_source in data_sources:
                with log_context(
                    run_id=run_id,
                    table=data_source.table_name,
                    data_source_id=data_source.data_source_id,
                ):
                    try:
                        results.append(self.sync_data_source(data_source))
                    except LoaderError as e:
                        logger.error(f"  ✗ Synchronization of {data_source.table_name} failed: {e}")
                        raise
        finally:
            if opened_here:
                self.connector.disconnect()

        total_rows = sum(r["rows_loaded"] for r in results)
        total_deleted = sum(r["rows_deleted"] for r in results)

        logger.info("=" * 60)
        logger.info("SYNCHRONIZATION PASS COMPLETE")
        logger.info(f"  Tables: {len(results)}")
        logger.info(f"  Rows loaded: {total_rows}")
        logger.info(f"  Rows removed by retention: {total_deleted}")
        logger.info("=" * 60)

        return results
