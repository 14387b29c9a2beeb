"""
Loader Connectors
=================

Source and target connectors for the loader.
"""

from .deeplynx_connector import DeepLynxConnector, DownloadHandle, DownloadQuery
from .duckdb_connector import DuckDBConnector, quote_identifier

__all__ = [
    "DeepLynxConnector",
    "DownloadHandle",
    "DownloadQuery",
    "DuckDBConnector",
    "quote_identifier",
]
