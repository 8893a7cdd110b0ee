"""
Logging setup for URL Finder processes.

All modules log through ``logging.getLogger("url_finder.<area>")``; this
module only configures the root handler once per process.

Usage:
    from url_finder.logging_config import configure_logging
    configure_logging()
"""

import logging
from typing import Optional

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the process-wide log format and the configured level."""
    resolved = (level or settings.log_level or "INFO").upper()
    if settings.debug:
        resolved = "DEBUG"
    level_value = getattr(logging, resolved, logging.INFO)
    logging.basicConfig(level=level_value, format=LOG_FORMAT)
    logging.getLogger("url_finder").setLevel(level_value)
    # httpx logs every request at INFO; probe runs issue thousands
    logging.getLogger("httpx").setLevel(logging.WARNING)
