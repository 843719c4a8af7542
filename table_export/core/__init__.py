"""
table_export.core - Export jobs and their orchestration.

This module contains:
- The in-memory job store and its data model
- The orchestrator driving one job's tables
- Progress polling and finished job sweeping
- Drive-backed provisioning and table transfer
"""

from table_export.core.state import (
    Credentials,
    ExportError,
    ExportResult,
    ItemAlreadyFinishedError,
    ItemNotFoundError,
    ItemOutcome,
    ItemRecord,
    ItemStatus,
    Job,
    JobNotFoundError,
    JobStore,
    NotFoundError,
    TableItem,
)
from table_export.core.pipeline import (
    ExportConfig,
    ExportDestination,
    ExportOrchestrator,
    ProvisioningError,
)
from table_export.core.progress import (
    JobAccessDeniedError,
    JobProgress,
    JobSweeper,
    ProgressReporter,
)
from table_export.core.transfer import DriveProvisioner, TableTransfer

__all__ = [
    "Credentials",
    "DriveProvisioner",
    "ExportConfig",
    "ExportDestination",
    "ExportError",
    "ExportOrchestrator",
    "ExportResult",
    "ItemAlreadyFinishedError",
    "ItemNotFoundError",
    "ItemOutcome",
    "ItemRecord",
    "ItemStatus",
    "Job",
    "JobAccessDeniedError",
    "JobNotFoundError",
    "JobProgress",
    "JobStore",
    "JobSweeper",
    "NotFoundError",
    "ProgressReporter",
    "ProvisioningError",
    "TableTransfer",
]
