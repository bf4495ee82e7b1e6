"""
Logging setup.

One format for every handler; console always, files on demand.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from stockengine.app.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

AUDIT_LOGGER_NAME = "stockengine.audit"


def setup_logging(log_level: str | None = None, log_to_file: bool | None = None) -> None:
    """
    Configure the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (defaults to settings.LOG_LEVEL)
        log_to_file: also write app_<date>.log and error_<date>.log under settings.LOG_DIR
    """
    level_name = (log_level or settings.LOG_LEVEL).upper()
    to_file = settings.LOG_TO_FILE if log_to_file is None else log_to_file

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if to_file:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now().strftime("%Y-%m-%d")

        file_handler = logging.FileHandler(log_dir / f"app_{today}.log", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root_logger.addHandler(file_handler)

        error_handler = logging.FileHandler(log_dir / f"error_{today}.log", encoding="utf-8")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root_logger.addHandler(error_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.info("Logging configured (level=%s, files=%s)", level_name, to_file)


def get_logger(name: str) -> logging.Logger:
    """
    Usage:
        logger = get_logger(__name__)
        logger.info("Hello")
    """
    return logging.getLogger(name)
