"""
Logging configuration for pathdiag.

Console logging for interactive use plus an optional rotating log file
with per-record module and function context.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


class StructuredFormatter(logging.Formatter):
    """Formatter that guarantees module/function fields for file output."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, 'module_name'):
            record.module_name = record.module
        if not hasattr(record, 'function_name'):
            record.function_name = record.funcName
        return super().format(record)


def default_log_path() -> Path:
    """Location used for file logging when no path is given."""
    return Path.home() / ".pathdiag" / "logs" / "pathdiag.log"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
    enable_file: bool = False,
) -> logging.Logger:
    """
    Set up logging for pathdiag.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Custom log file path (defaults to ~/.pathdiag/logs/pathdiag.log)
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
        enable_console: Enable console logging (stderr, so hop output stays clean)
        enable_file: Enable file logging

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("pathdiag")
    level_no = getattr(logging, level.upper())
    # The file handler records everything; the console honours the requested level
    logger.setLevel(logging.DEBUG if enable_file else level_no)
    logger.handlers.clear()

    console_fmt = logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_fmt = StructuredFormatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(module_name)-12s | '
            '%(function_name)-20s | %(lineno)-4d | %(threadName)-16s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level_no)
        console_handler.setFormatter(console_fmt)
        logger.addHandler(console_handler)

    if enable_file:
        log_path = Path(log_file) if log_file else default_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_fmt)
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (e.g., 'pathdiag.traceroute.core')

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def configure_logging(debug: bool = False, log_file: str | None = None) -> None:
    """
    Quick logging configuration used by the CLI.

    Args:
        debug: Enable debug logging
        log_file: Also write a rotating log file at this path
    """
    setup_logging(
        level="DEBUG" if debug else "WARNING",
        log_file=log_file,
        enable_console=True,
        enable_file=log_file is not None,
    )
