"""
Logging configuration for ProxyPrint.

Image acquisition runs on small worker pools, so every record carries the
thread name that produced it:

    2025-12-03 10:15:30 [INFO    ] [MainThread] proxy_print.pdf_generator - Preloading 12 images
    2025-12-03 10:15:31 [WARNING ] [img_0] proxy_print.image_handler - Proxy fetch failed ...

Usage:
    from logging_config import setup_logging, get_logger

    setup_logging(log_level=logging.DEBUG)   # once, at startup
    logger = get_logger(__name__)            # in modules
"""

import logging
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

APP_LOGGER_NAME = "proxy_print"


class ThreadContextFilter(logging.Filter):
    """Adds thread_name to every record; never drops anything."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.thread_name = threading.current_thread().name
        return True


def setup_logging(
    app_name: str = APP_LOGGER_NAME,
    log_level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = False,
) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        app_name: Name of the application root logger
        log_level: Minimum log level
        log_dir: Directory for log files (default: ./logs next to this file)
        enable_file_logging: Also write a rotating log file

    Returns:
        The configured application logger
    """
    logger = logging.getLogger(app_name)
    logger.setLevel(log_level)
    logger.propagate = False
    logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)-8s] [%(thread_name)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    thread_filter = ThreadContextFilter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(thread_filter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        if log_dir is None:
            log_dir = Path(__file__).parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_dir / f"{app_name}.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(thread_filter)
        logger.addHandler(file_handler)

    logger.debug(f"Logging configured at level {logging.getLevelName(log_level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger under the application namespace.

    e.g. "image_handler" -> "proxy_print.image_handler"
    """
    if not name.startswith(APP_LOGGER_NAME):
        name = f"{APP_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
