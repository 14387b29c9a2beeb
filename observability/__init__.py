"""
Loader Observability
====================

Logging setup shared by the loader's entry points.

Usage:
    from observability import configure_logging, log_context

    configure_logging(debug=True, log_file="logs/loader.log")

    with log_context(run_id="abc123", table="sensor_a"):
        logger.info("Loading")
"""

from .logging.structured_logger import (
    JsonFormatter,
    configure_logging,
    current_context,
    log_context,
    new_run_id,
)

__version__ = "1.0.0"
__all__ = ["JsonFormatter", "configure_logging", "current_context", "log_context", "new_run_id"]
