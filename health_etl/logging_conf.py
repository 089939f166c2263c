"""Logging configuration built around structlog JSON logging."""

from __future__ import annotations

import logging
import logging.config
from pathlib import Path
from typing import Iterable

import structlog

from .config.loader import ConfigLocator

_LOGGING_INITIALISED = False

ETL_LOG = "etl.log"
ERROR_LOG = "error.log"


def _default_log_dir() -> Path:
    return ConfigLocator().logs_dir


def _file_handler(path: Path, level: str) -> dict:
    path.touch(exist_ok=True)
    return {
        "class": "logging.FileHandler",
        "level": level,
        "filename": str(path),
        "formatter": "json",
        "encoding": "utf-8",
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return the application logger."""

    global _LOGGING_INITIALISED
    locator = ConfigLocator()
    locator.ensure_directories()
    etl_handler = _file_handler(locator.logs_dir / ETL_LOG, "INFO")
    error_handler = _file_handler(locator.logs_dir / ERROR_LOG, "ERROR")

    level = "DEBUG" if verbose else "INFO"
    if not _LOGGING_INITIALISED:
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "json": {
                        "()": "pythonjsonlogger.json.JsonFormatter",
                        "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": level,
                        "formatter": "json",
                    },
                    "etl_file": etl_handler,
                    "error_file": error_handler,
                },
                "loggers": {
                    "health_etl": {
                        "handlers": ["console", "etl_file", "error_file"],
                        "level": level,
                        "propagate": False,
                    },
                },
            }
        )

        # Events are rendered to JSON by the stdlib handlers.
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    elif verbose:
        app_logger = logging.getLogger("health_etl")
        app_logger.setLevel(logging.DEBUG)
        for handler in app_logger.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(logging.DEBUG)
    return structlog.get_logger("health_etl")


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_logs() -> Iterable[Path]:
    """Yield the log files written so far."""

    log_dir = _default_log_dir()
    if not log_dir.exists():
        return []
    return sorted(p for p in log_dir.glob("*.log"))


__all__ = ["ERROR_LOG", "ETL_LOG", "available_logs", "configure_logging", "tail_log"]
