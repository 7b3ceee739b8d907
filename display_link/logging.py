"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(connection)s | %(message)s"
NO_CONNECTION = "-"


class ConnectionContextFilter(logging.Filter):
    """Give every record a ``connection`` attribute for :data:`LOG_FORMAT`."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "connection"):
            record.connection = NO_CONNECTION
        return True


def connection_logger(logger_name: str, connection: str) -> logging.LoggerAdapter:
    """Return an adapter tagging records with the owning connection's name."""

    return logging.LoggerAdapter(
        logging.getLogger(logger_name), {"connection": connection}
    )


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional file to log to in addition to the console.
    log_network:
        Keep aiohttp access, client and websocket logs at the root level.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    for handler in root.handlers:
        handler.addFilter(ConnectionContextFilter())

    if not log_network:
        for name in ("aiohttp.access", "aiohttp.client", "aiohttp.websocket"):
            logging.getLogger(name).setLevel(logging.WARNING)
