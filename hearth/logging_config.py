"""
Logging setup for the hearth process.

Everything goes to stdout and to a daily-rotated log file. Per-run sandbox
logs are written separately by the sandbox runner into each tenant's
``logs/`` directory.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(filename)s:%(lineno)d] - %(message)s"
)
LOG_RETENTION_DAYS = 14

# Third-party loggers that are too chatty at the root level
_QUIET_LOGGERS = {
    "watchfiles": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.INFO,
    "aiosqlite": logging.INFO,
}


def configure_logging(
    log_file: str,
    log_level: str,
    retention_days: int = LOG_RETENTION_DAYS,
) -> Path:
    """
    Install stdout and rotating file handlers on the root logger.

    Returns:
        The resolved log file path
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_path = Path(os.path.expanduser(log_file))
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = TimedRotatingFileHandler(
        log_path,
        when="midnight",
        backupCount=retention_days,
        encoding="utf-8",
    )
    file_handler.suffix = "%Y-%m-%d"
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, quiet_level))
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(logging.INFO)

    root_logger.info("Logging to file: %s (keeping %d days)", log_path, retention_days)
    return log_path
