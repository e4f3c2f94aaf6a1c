from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys

from pythonjsonlogger import jsonlogger


DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
JSON_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(node_id)s %(error)s"
LOGGER_NAME = "fluxwatch"


def setup_logging(log_dir: Path, level: str = "INFO", json_console: bool = False) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    if logger.handlers:
        return logger

    file_handler = RotatingFileHandler(
        log_dir / "fluxwatch.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

    console_handler = logging.StreamHandler(sys.stderr)
    if json_console:
        console_handler.setFormatter(jsonlogger.JsonFormatter(JSON_LOG_FORMAT))
    else:
        console_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    logger.propagate = False
    return logger
