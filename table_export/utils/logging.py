"""Logging configuration with rich console output and optional file logging.

This module provides logging setup for the table_export package with:
- Rich console output with timestamps
- Optional file logging to timestamped log files
- Export job prefix support for tracking a single export
- Token masking so OAuth credentials never reach the logs
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

LOGGER_NAME = "table_export"


def setup_logging(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """Set up logging with rich console output and an optional file handler.

    Creates a logger with:
    - Console output using RichHandler with timestamps
    - File output to log_dir/export_YYYYMMDD_HHMMSS.log when log_dir is given
    - DEBUG level for file, INFO for console (DEBUG if verbose)

    Args:
        log_dir: Directory for log files. If None, only the console is used.
        verbose: If True, console shows DEBUG level; otherwise INFO.

    Returns:
        Configured logger instance for the application.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to avoid duplicates
    logger.handlers.clear()

    console_handler = RichHandler(
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
        tracebacks_show_locals=verbose,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"export_{timestamp}.log"

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger.debug(f"Logging initialized. Log file: {log_file}")

    return logger


class JobLogAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with the export job ID.

    Usage:
        logger = JobLogAdapter(base_logger, job_id="abc123")
        logger.info("Table exported")  # Logs: [EXPORT abc123] Table exported
    """

    def __init__(self, logger: logging.Logger, job_id: str) -> None:
        super().__init__(logger, {"job_id": job_id})
        self.job_id = job_id

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        return f"[EXPORT {self.job_id}] {msg}", kwargs


def mask_sensitive_data(value: Optional[str], visible_chars: int = 4) -> str:
    """Mask sensitive data, showing only the last few characters.

    Args:
        value: The sensitive string to mask (e.g., an access token).
        visible_chars: Number of characters to show at the end.

    Returns:
        Masked string with asterisks and visible suffix.

    Examples:
        >>> mask_sensitive_data("ya29.a0AfH6SMBx")
        '***********SMBx'
        >>> mask_sensitive_data("")
        ''
    """
    if not value:
        return ""

    if len(value) <= visible_chars:
        if len(value) <= 1:
            return "*" * len(value)
        return "*" * (len(value) - 1) + value[-1]

    return "*" * (len(value) - visible_chars) + value[-visible_chars:]


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance for the table_export package.

    Args:
        name: Optional sub-logger name. If None, returns the main logger.

    Returns:
        Logger instance.
    """
    if name:
        return logging.getLogger(f"{LOGGER_NAME}.{name}")
    return logging.getLogger(LOGGER_NAME)
