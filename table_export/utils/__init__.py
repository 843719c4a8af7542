"""
table_export.utils - Utility functions and helpers.

This module contains shared utilities for:
- Logging configuration
- Google API HTTP plumbing
- Drive and Sheets access
"""

from table_export.utils.logging import (
    setup_logging,
    get_logger,
    JobLogAdapter,
    mask_sensitive_data,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "JobLogAdapter",
    "mask_sensitive_data",
]
