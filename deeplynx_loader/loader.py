"""
Loader
======

Entry point for applications embedding the loader: run a synchronization
pass, or push a local file into a DeepLynx data source.

Usage:
    loader = Loader.from_file("configs/loader_settings.json")
    loader.load_data()
    loader.send_file("exports/readings.csv", data_source_id=12)
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from observability import configure_logging

from .config import Configuration, load_config
from .connectors.deeplynx_connector import DeepLynxConnector
from .engine import SyncEngine
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Loader:
    """Loads DeepLynx data sources into DuckDB and pushes files back."""

    def __init__(self, config: Configuration, client: Optional[DeepLynxConnector] = None):
        """
        Initialize the loader.

        Args:
            config: Loader configuration
            client: DeepLynx client, built from the configuration if omitted
        """
        self.config = config
        self.client = client or DeepLynxConnector(
            config.deeplynx_url,
            api_key=config.api_key,
            api_secret=config.api_secret,
        )

    @classmethod
    def from_file(cls, config_path: str) -> "Loader":
        """
        Build a loader from a JSON settings file and configure logging from it.

        Args:
            config_path: Path to the settings file

        Returns:
            Loader instance
        """
        config = load_config(config_path)
        configure_logging(debug=config.debug, log_file=config.log_file, json_format=config.json_logs)
        logger.debug(f"Loaded configuration from {config_path}")
        return cls(config)

    def load_data(self) -> List[Dict]:
        """
        Run one synchronization pass over all configured data sources.

        The DuckDB database is only held open for the duration of the pass.

        Returns:
            List of per data source result dictionaries
        """
        return SyncEngine(self.config, self.client).run()

    def send_file(
        self,
        file_path: Union[str, Path],
        data_source_id: Optional[int] = None,
        container_id: Optional[int] = None,
    ) -> Any:
        """
        Push a local file into a DeepLynx data source.

        Args:
            file_path: File to push
            data_source_id: Target data source, defaults to ``target_data_source_id``
            container_id: Target container, defaults to ``target_container_id``

        Returns:
            Import result returned by DeepLynx, if any
        """
        container_id = container_id if container_id is not None else self.config.target_container_id
        data_source_id = data_source_id if data_source_id is not None else self.config.target_data_source_id

        if container_id is None:
            raise ConfigurationError("target_container_id is required to send files")
        if data_source_id is None:
            raise ConfigurationError("a data source id is required to send files")

        return self.client.import_data(container_id, data_source_id, file_path=file_path)

    def close(self):
        """Release the HTTP session."""
        self.client.close()
