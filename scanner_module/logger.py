"""
Centralized logger configuration for the scanner.

Provides:
- InterceptHandler: bridges stdlib logging (dnspython, uvicorn) to loguru
- configure_logging(app_name): sets up sinks and returns a bound app logger
- get_child_logger(name): module logger bound with module=name
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Any, Optional

from loguru import logger

PRETTY_FORMAT = "<green>{time:YYYY-MM-DDTHH:mm:ssZ}</green> <level>{level: <8}</level> {message}"
PLAIN_FORMAT = "{time} | {level} | {message}"


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        # forward to loguru, preserve exception info if present
        logger.opt(exception=record.exc_info).log(level, record.getMessage())


def configure_logging(
    app_name: str = "dss",
    level: Optional[str] = None,
    pretty: bool = True,
    sink: Any = None,
) -> Any:
    """
    Configure loguru sinks and stdlib logging interception.
    Returns the bound application logger.
    """
    logger.remove()
    log_level = (level or os.getenv("DSS_LOG_LEVEL", "INFO")).upper()
    logger.add(
        sink or sys.stderr,
        level=log_level,
        format=PRETTY_FORMAT if pretty else PLAIN_FORMAT,
        colorize=pretty,
    )

    # Optional file sink
    log_file = os.getenv("DSS_LOG_FILE")
    if log_file:
        rotation = os.getenv("DSS_LOG_ROTATION", "10 MB")
        retention = os.getenv("DSS_LOG_RETENTION", "7 days")
        compression = os.getenv("DSS_LOG_COMPRESSION", "zip")
        logger.add(
            log_file,
            level=log_level,
            enqueue=True,
            backtrace=True,
            diagnose=False,
            rotation=rotation,
            retention=retention,
            compression=compression,
            format=PLAIN_FORMAT,
        )
        logger.info(
            "File logging enabled: {} (rotation={} retention={})",
            log_file,
            rotation,
            retention,
        )

    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))

    global _APP_LOGGER
    _APP_LOGGER = logger.bind(app=app_name)
    return _APP_LOGGER


_APP_LOGGER: Any = None


def get_app_logger(app_name: str = "dss") -> Any:
    """Return the configured application logger if available; otherwise bind a lightweight one."""
    if _APP_LOGGER is not None:
        return _APP_LOGGER
    return logger.bind(app=app_name)


def get_child_logger(name: str, app_name: str = "dss") -> Any:
    """Convenience: return a child logger bound with module/name."""
    return get_app_logger(app_name).bind(module=name)


__all__ = [
    "InterceptHandler",
    "configure_logging",
    "get_app_logger",
    "get_child_logger",
]
