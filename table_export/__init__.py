"""
table-export: export selected tables into a Google Drive archive folder.

An export job covers a fixed list of tables. Tables are exported one at a
time in the background while callers poll the job's progress, and finished
jobs are cleaned up by the poller or a periodic sweep.
"""

from table_export.core.pipeline import ExportConfig, ExportOrchestrator, ProvisioningError
from table_export.core.progress import JobProgress, JobSweeper, ProgressReporter
from table_export.core.state import (
    Credentials,
    ItemOutcome,
    ItemRecord,
    ItemStatus,
    JobStore,
    TableItem,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Credentials",
    "ExportConfig",
    "ExportOrchestrator",
    "ItemOutcome",
    "ItemRecord",
    "ItemStatus",
    "JobProgress",
    "JobStore",
    "JobSweeper",
    "ProgressReporter",
    "ProvisioningError",
    "TableItem",
]
