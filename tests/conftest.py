"""
Shared test fixtures for the DeepLynx loader test suite.
"""

import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional
from unittest.mock import MagicMock

import jwt
import pytest

from deeplynx_loader.config import Configuration, DataSourceConfiguration
from deeplynx_loader.connectors.deeplynx_connector import DeepLynxConnector, DownloadHandle, DownloadQuery
from deeplynx_loader.connectors.duckdb_connector import DuckDBConnector
from deeplynx_loader.errors import LoaderError


class FakeDeepLynx:
    """In-process stand-in for the DeepLynx client used by the engine."""

    def __init__(self, payloads: Optional[List[bytes]] = None, fail_with: Optional[LoaderError] = None):
        self.payloads = list(payloads or [])
        self.fail_with = fail_with
        self.requests: List[Dict] = []
        self.downloads: List[Dict] = []

    def initiate_download(self, container_id: int, data_source_id: int, query: DownloadQuery) -> DownloadHandle:
        self.requests.append({
            "container_id": container_id,
            "data_source_id": data_source_id,
            "query": query,
        })
        if self.fail_with is not None:
            raise self.fail_with

        size = len(self.payloads[0]) if self.payloads else 0
        return DownloadHandle(
            id=str(len(self.requests)),
            container_id=str(container_id),
            data_source_id=str(data_source_id),
            file_name=f"extract_{len(self.requests)}.csv",
            file_size=float(size),
            md5hash="",
        )

    def download_file(self, container_id: int, file_id: str, delete_after: bool = True) -> Iterator[bytes]:
        self.downloads.append({
            "container_id": container_id,
            "file_id": file_id,
            "delete_after": delete_after,
        })
        payload = self.payloads.pop(0) if self.payloads else b""
        return self._stream(payload)

    @staticmethod
    def _stream(payload: bytes) -> Iterator[bytes]:
        # split so the engine has to stitch chunks back together
        middle = len(payload) // 2
        for part in (payload[:middle], payload[middle:]):
            if part:
                yield part

    def close(self):
        pass


@pytest.fixture
def token_factory() -> Callable[..., str]:
    """Mint unsigned-for-our-purposes JWTs with an expiry relative to now."""

    def _make(exp_offset: Optional[int] = 3600, **claims) -> str:
        payload = dict(claims)
        if exp_offset is not None:
            payload["exp"] = int(time.time()) + exp_offset
        return jwt.encode(payload, "test-signing-secret", algorithm="HS256")

    return _make


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "loader.duckdb")


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def store(db_path: str) -> Iterator[DuckDBConnector]:
    """Connected DuckDB connector on a scratch database."""
    connector = DuckDBConnector(db_path)
    connector.connect()
    yield connector
    connector.disconnect()


@pytest.fixture
def sensor_source() -> DataSourceConfiguration:
    return DataSourceConfiguration(
        table_name="sensor_a",
        container_id=1,
        data_source_id=2,
        timestamp_column_name="ts",
        secondary_index="seq",
    )


@pytest.fixture
def make_config(db_path: str, staging_dir: Path) -> Callable[..., Configuration]:
    def _make(data_sources, retention_days: int = 36500, **overrides) -> Configuration:
        values = dict(
            deeplynx_url="http://deeplynx.local",
            db_path=db_path,
            data_retention_days=retention_days,
            data_sources=tuple(data_sources),
            staging_dir=str(staging_dir),
        )
        values.update(overrides)
        return Configuration(**values)

    return _make


@pytest.fixture
def mock_session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def make_response() -> Callable[..., MagicMock]:
    """Build a mocked requests.Response."""

    def _make(json_body=None, text: str = "", status: int = 200, content: bytes = b"{}", no_json: bool = False):
        response = MagicMock()
        response.status_code = status
        response.ok = status < 400
        response.text = text
        response.content = content
        if no_json:
            response.json.side_effect = ValueError("no JSON body")
        else:
            response.json.return_value = json_body
        return response

    return _make


@pytest.fixture
def make_client(mock_session: MagicMock) -> Callable[..., DeepLynxConnector]:
    def _make(api_key: Optional[str] = "key", api_secret: Optional[str] = "secret") -> DeepLynxConnector:
        client = DeepLynxConnector("http://deeplynx.local/", api_key=api_key, api_secret=api_secret)
        client.session = mock_session
        return client

    return _make


@pytest.fixture
def fake_deeplynx() -> Callable[..., FakeDeepLynx]:
    def _make(payloads: Optional[List[bytes]] = None, fail_with: Optional[LoaderError] = None) -> FakeDeepLynx:
        return FakeDeepLynx(payloads=payloads, fail_with=fail_with)

    return _make
