"""
Logging setup for applications embedding docrepo.

The library itself only creates module loggers; applications call
setup_logging() once at startup if they want docrepo's defaults.
"""

from __future__ import annotations

import logging
from typing import Optional

import json_log_formatter

from .config import StoreSettings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(settings: Optional[StoreSettings] = None) -> None:
    """Configure logging based on settings.

    Args:
        settings: Store settings (loaded from environment if None)
    """
    settings = settings or StoreSettings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
