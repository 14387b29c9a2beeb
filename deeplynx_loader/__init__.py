"""
DeepLynx Loader
===============

Mirrors DeepLynx data sources into a local DuckDB database:
- Full Load: (re)create a table from a complete extract
- Continuation: append rows newer than the table's last row
- Retention: drop rows older than the configured window

Also pushes local files back into DeepLynx data sources.
"""

from .config import Configuration, DataSourceConfiguration, load_config
from .engine import SyncEngine
from .loader import Loader

__version__ = "1.0.0"
__all__ = ["Configuration", "DataSourceConfiguration", "Loader", "SyncEngine", "load_config"]
