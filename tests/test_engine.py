"""
Tests for the synchronization engine, run against a real DuckDB file.
"""

from unittest.mock import MagicMock, mock_open, patch

import pytest

from deeplynx_loader.config import DataSourceConfiguration
from deeplynx_loader.connectors.duckdb_connector import DuckDBConnector
from deeplynx_loader.engine import SyncEngine
from deeplynx_loader.errors import FilesystemError, RemoteServiceError, StoreError

THREE_ROWS = (
    b"ts,seq,value\n"
    b"2024-01-01 00:00:00,40,1.5\n"
    b"2024-01-01 00:00:00,41,2.5\n"
    b"2024-01-01 00:00:00,42,3.5\n"
)

HEADER_ONLY = b"ts,seq,value\n"


class TrackedStream:
    """Chunk iterator that records whether it was closed."""

    def __init__(self, chunks):
        self._chunks = iter(chunks)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._chunks)

    def close(self):
        self.closed = True


def _seed(store):
    store.execute("CREATE TABLE sensor_a (ts TIMESTAMP, seq BIGINT, value DOUBLE)")
    store.execute(
        "INSERT INTO sensor_a VALUES "
        "(TIMESTAMP '2023-12-31 23:00:00', 41, 0.5), "
        "(TIMESTAMP '2024-01-01 00:00:00', 42, 1.5), "
        "(TIMESTAMP '2024-01-01 00:00:00', 7, 2.5)"
    )


class TestFullLoad:

    def test_absent_table_is_created(self, store, sensor_source, make_config, fake_deeplynx, staging_dir):
        client = fake_deeplynx([THREE_ROWS])
        engine = SyncEngine(make_config([sensor_source]), client, connector=store)
        engine.cleaner = MagicMock()

        results = engine.run()

        assert store.table_exists("sensor_a")
        assert store.row_count("sensor_a") == 3
        assert results[0]["mode"] == "full_load"
        assert results[0]["rows_loaded"] == 3
        assert results[0]["status"] == "success"
        assert list(staging_dir.iterdir()) == []
        engine.cleaner.clean.assert_not_called()

    def test_request_starts_from_configured_origin(self, store, make_config, fake_deeplynx):
        data_source = DataSourceConfiguration(
            table_name="sensor_a",
            container_id=1,
            data_source_id=2,
            timestamp_column_name="ts",
            secondary_index="seq",
            initial_timestamp="2023-01-01 00:00:00",
        )
        client = fake_deeplynx([THREE_ROWS])

        SyncEngine(make_config([data_source]), client, connector=store).run()

        query = client.requests[0]["query"]
        assert query.start_time == "2023-01-01 00:00:00"
        assert query.secondary_index_name == "seq"
        assert query.secondary_index_start_value == 0
        assert client.downloads[0]["delete_after"] is True

    def test_empty_extract_leaves_table_absent(self, store, sensor_source, make_config, fake_deeplynx, staging_dir):
        client = fake_deeplynx([b"", b""])
        engine = SyncEngine(make_config([sensor_source]), client, connector=store)

        first = engine.run()
        second = engine.run()

        assert not store.table_exists("sensor_a")
        assert first[0]["rows_loaded"] == 0
        assert second[0]["mode"] == "full_load"
        assert list(staging_dir.iterdir()) == []

    def test_header_only_extract_creates_then_drops_table(
        self, store, sensor_source, make_config, fake_deeplynx, staging_dir
    ):
        client = fake_deeplynx([HEADER_ONLY])
        engine = SyncEngine(make_config([sensor_source]), client, connector=store)

        with patch.object(store, "create_table_from_csv", wraps=store.create_table_from_csv) as create:
            results = engine.run()

        create.assert_called_once()
        assert not store.table_exists("sensor_a")
        assert results[0]["rows_loaded"] == 0
        assert list(staging_dir.iterdir()) == []

    def test_empty_table_is_reloaded(self, store, sensor_source, make_config, fake_deeplynx):
        store.execute("CREATE TABLE sensor_a (ts TIMESTAMP, seq BIGINT)")
        client = fake_deeplynx([THREE_ROWS])

        results = SyncEngine(make_config([sensor_source]), client, connector=store).run()

        assert results[0]["mode"] == "full_load"
        assert store.row_count("sensor_a") == 3
        assert client.requests[0]["query"].start_time is None

    def test_nanosecond_cursor_is_reloaded(self, store, sensor_source, make_config, fake_deeplynx):
        store.execute(
            "CREATE TABLE sensor_a AS "
            "SELECT CAST('2024-01-01 00:00:00' AS TIMESTAMP_NS) AS ts, CAST(1 AS BIGINT) AS seq"
        )
        client = fake_deeplynx([THREE_ROWS])

        results = SyncEngine(make_config([sensor_source]), client, connector=store).run()

        assert results[0]["mode"] == "full_load"
        assert store.row_count("sensor_a") == 3


class TestContinuation:

    def test_request_carries_resume_cursor(self, store, sensor_source, make_config, fake_deeplynx):
        _seed(store)
        client = fake_deeplynx([b""])

        results = SyncEngine(make_config([sensor_source]), client, connector=store).run()

        query = client.requests[0]["query"]
        assert query.start_time == "2024-01-01 00:00:00"
        assert query.secondary_index_name == "seq"
        assert query.secondary_index_start_value == 42
        assert results[0]["mode"] == "continuation"
        assert results[0]["rows_loaded"] == 0
        assert store.row_count("sensor_a") == 3

    def test_new_rows_are_appended(self, store, sensor_source, make_config, fake_deeplynx, staging_dir):
        _seed(store)
        client = fake_deeplynx([
            b"ts,seq,value\n"
            b"2024-01-01 00:00:00,43,4.5\n"
            b"2024-01-02 00:00:00,1,5.5\n"
        ])

        results = SyncEngine(make_config([sensor_source]), client, connector=store).run()

        assert results[0]["rows_loaded"] == 2
        assert store.row_count("sensor_a") == 5
        assert list(staging_dir.iterdir()) == []

    def test_header_only_extract_leaves_table_unchanged(
        self, store, sensor_source, make_config, fake_deeplynx, staging_dir
    ):
        _seed(store)
        client = fake_deeplynx([HEADER_ONLY])
        engine = SyncEngine(make_config([sensor_source]), client, connector=store)

        with patch.object(store, "append_csv", wraps=store.append_csv) as append, \
                patch.object(store, "drop_table", wraps=store.drop_table) as drop:
            results = engine.run()

        append.assert_called_once()
        drop.assert_not_called()
        assert results[0]["mode"] == "continuation"
        assert results[0]["rows_loaded"] == 0
        assert store.row_count("sensor_a") == 3
        assert list(staging_dir.iterdir()) == []

    def test_retention_runs_after_append(self, store, sensor_source, make_config, fake_deeplynx):
        _seed(store)
        client = fake_deeplynx([b""])
        engine = SyncEngine(make_config([sensor_source], retention_days=7), client, connector=store)

        results = engine.run()

        # every seeded row is long past a one week window
        assert results[0]["rows_deleted"] == 3
        assert store.row_count("sensor_a") == 0

    def test_rejected_rows_do_not_leave_staging_files(
        self, store, sensor_source, make_config, fake_deeplynx, staging_dir
    ):
        _seed(store)
        client = fake_deeplynx([b"ts,seq,value\nnot-a-timestamp,1,5.5\n"])

        with pytest.raises(StoreError):
            SyncEngine(make_config([sensor_source]), client, connector=store).run()

        assert list(staging_dir.iterdir()) == []
        assert store.row_count("sensor_a") == 3


class TestPass:

    def test_first_failure_aborts_the_pass(self, store, sensor_source, make_config, fake_deeplynx):
        second = DataSourceConfiguration(
            table_name="sensor_b",
            container_id=1,
            data_source_id=3,
            timestamp_column_name="ts",
        )
        client = fake_deeplynx(fail_with=RemoteServiceError(404, "data source not found"))

        with pytest.raises(RemoteServiceError):
            SyncEngine(make_config([sensor_source, second]), client, connector=store).run()

        assert len(client.requests) == 1

    def test_opens_and_closes_its_own_connection(self, db_path, sensor_source, make_config, fake_deeplynx):
        engine = SyncEngine(make_config([sensor_source]), fake_deeplynx([THREE_ROWS]))

        engine.run()

        assert engine.connector.is_connected is False
        reopened = DuckDBConnector(db_path)
        reopened.connect()
        try:
            assert reopened.row_count("sensor_a") == 3
        finally:
            reopened.disconnect()

    def test_insufficient_disk_space(self, store, sensor_source, make_config, fake_deeplynx):
        client = fake_deeplynx([THREE_ROWS])
        engine = SyncEngine(make_config([sensor_source]), client, connector=store)

        with patch("deeplynx_loader.engine.shutil.disk_usage", return_value=MagicMock(free=1)):
            with pytest.raises(FilesystemError):
                engine.run()

        assert client.downloads == []

    def test_download_stream_is_closed_when_staging_fails(self, store, sensor_source, make_config, fake_deeplynx):
        client = fake_deeplynx([THREE_ROWS])
        stream = TrackedStream([THREE_ROWS])
        client.download_file = MagicMock(return_value=stream)
        staged_file = mock_open()
        staged_file.return_value.write.side_effect = OSError("No space left on device")
        engine = SyncEngine(make_config([sensor_source]), client, connector=store)

        with patch("deeplynx_loader.engine.open", staged_file, create=True):
            with pytest.raises(FilesystemError):
                engine.run()

        assert stream.closed is True
