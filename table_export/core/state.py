"""In-memory state management for export jobs.

This module provides the JobStore, the single source of truth for which
export jobs exist, who owns them, and how far each table in a job has got.
All access goes through the store by job ID; callers only ever receive
copies of item records, never the live objects.
"""

from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple


class ExportError(Exception):
    """Base exception for export job errors."""

    pass


class NotFoundError(ExportError):
    """A job or item lookup matched nothing in the store."""

    pass


class JobNotFoundError(NotFoundError):
    """No job with the given ID exists in the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Export job not found: {job_id}")
        self.job_id = job_id


class ItemNotFoundError(NotFoundError):
    """The job exists but has no item with the given ID."""

    def __init__(self, job_id: str, item_id: str) -> None:
        super().__init__(f"Table {item_id} not found in export job {job_id}")
        self.job_id = job_id
        self.item_id = item_id


class ItemAlreadyFinishedError(ExportError):
    """An outcome was recorded for an item that already has one."""

    def __init__(self, job_id: str, item_id: str, status: "ItemStatus") -> None:
        super().__init__(
            f"Table {item_id} in export job {job_id} already finished with status {status.value}"
        )
        self.job_id = job_id
        self.item_id = item_id
        self.status = status


@dataclass(frozen=True)
class Credentials:
    """OAuth token bundle of a signed-in user.

    Two bundles are the same owner when all their fields are equal.

    Attributes:
        access_token: Bearer token used for API calls.
        refresh_token: Refresh token, if the OAuth flow returned one.
        token_type: Token type, normally "Bearer".
        scope: Space separated scopes the token was granted.
        expiry_date: Expiry as milliseconds since the epoch.
    """

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    expiry_date: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Credentials:
        """Build credentials from a token dictionary.

        Args:
            data: Token dictionary as returned by the OAuth token endpoint.

        Returns:
            Credentials instance.

        Raises:
            ValueError: If the dictionary has no access token.
        """
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("Token data has no access_token")

        expiry = data.get("expiry_date")
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
            expiry_date=int(expiry) if expiry is not None else None,
        )

    @classmethod
    def from_file(cls, path: Path) -> Credentials:
        """Load credentials from a JSON token file."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


@dataclass(frozen=True)
class TableItem:
    """A table selected for export.

    Attributes:
        id: Source table ID.
        name: Human readable table name.
        permissions: Sharing permissions to copy onto the exported file.
    """

    id: str
    name: str
    permissions: Tuple[Dict[str, Any], ...] = ()


class ItemStatus(Enum):
    """Enumeration of possible item states."""

    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ItemStatus.LOADING


@dataclass(frozen=True)
class ExportResult:
    """Where an exported table ended up and what was learned about it.

    Attributes:
        drive_file_id: ID of the uploaded Drive file.
        drive_file_name: Name of the uploaded Drive file.
        web_view_link: Browser link to the file, if Drive returned one.
        is_large: Whether the CSV exceeded the large table threshold.
        has_geometry_data: Whether the table has location columns.
        styles: Map styles defined on the source table.
    """

    drive_file_id: str
    drive_file_name: str
    web_view_link: Optional[str] = None
    is_large: bool = False
    has_geometry_data: bool = False
    styles: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> dict:
        return {
            "drive_file_id": self.drive_file_id,
            "drive_file_name": self.drive_file_name,
            "web_view_link": self.web_view_link,
            "is_large": self.is_large,
            "has_geometry_data": self.has_geometry_data,
            "styles": list(self.styles),
        }


@dataclass(frozen=True)
class ItemOutcome:
    """Outcome of transferring one table: either a result or an error message.

    Build instances with succeeded() or failed() rather than directly.
    """

    status: ItemStatus
    result: Optional[ExportResult] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, result: ExportResult) -> ItemOutcome:
        return cls(status=ItemStatus.SUCCESS, result=result)

    @classmethod
    def failed(cls, message: str) -> ItemOutcome:
        return cls(status=ItemStatus.ERROR, error=message or "Unknown error")

    @property
    def success(self) -> bool:
        return self.status is ItemStatus.SUCCESS


@dataclass
class ItemRecord:
    """Progress slot of one table within an export job.

    Attributes:
        item_id: Source table ID.
        status: Current item status.
        result: Export result, set only when status is SUCCESS.
        error: Error message, set only when status is ERROR.
    """

    item_id: str
    status: ItemStatus = ItemStatus.LOADING
    result: Optional[ExportResult] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert the record to a JSON friendly dictionary."""
        data: Dict[str, Any] = {"id": self.item_id, "status": self.status.value}
        if self.result is not None:
            data.update(self.result.to_dict())
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class Job:
    """One export run covering a fixed list of tables."""

    id: str
    owner: Hashable
    items: List[ItemRecord]
    destination_folder_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_finished(self) -> bool:
        return all(item.status.is_terminal for item in self.items)


class JobStore:
    """Thread-safe in-memory registry of export jobs.

    Every public method holds the store lock for its whole read-modify-write,
    so no caller ever observes a half-updated item record. Create one store
    per process (or per test) and pass it to whoever needs it.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def _get_job(self, job_id: str) -> Job:
        # Caller must hold the lock
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def create_job(self, owner: Hashable, items: Iterable[TableItem]) -> str:
        """Register a new job with every item in the loading state.

        Args:
            owner: Credentials of the user starting the export.
            items: Tables to export, in the order they should be processed.

        Returns:
            The new job ID.
        """
        records = [ItemRecord(item_id=item.id) for item in items]

        with self._lock:
            job_id = str(uuid.uuid4())
            while job_id in self._jobs:
                job_id = str(uuid.uuid4())
            self._jobs[job_id] = Job(id=job_id, owner=owner, items=records)

        return job_id

    def is_authorized(self, job_id: str, credentials: Hashable) -> bool:
        """Check whether credentials own a job.

        Unknown job IDs are simply not authorized, so callers cannot tell a
        missing job from somebody else's.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            return job is not None and job.owner == credentials

    def get_items(self, job_id: str) -> List[ItemRecord]:
        """Return a snapshot of a job's item records.

        The records are deep copies; changing them never touches the store.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        with self._lock:
            job = self._get_job(job_id)
            return copy.deepcopy(job.items)

    def get_destination_folder(self, job_id: str) -> str:
        """Return the Drive folder ID the job exports into.

        Raises:
            JobNotFoundError: If the job does not exist.
            NotFoundError: If the job has no folder yet.
        """
        with self._lock:
            folder_id = self._get_job(job_id).destination_folder_id
            if folder_id is None:
                raise NotFoundError(f"Export job {job_id} has no destination folder yet")
            return folder_id

    def set_destination_folder(self, job_id: str, folder_id: str) -> None:
        with self._lock:
            self._get_job(job_id).destination_folder_id = folder_id

    def record_item_outcome(self, job_id: str, item_id: str, outcome: ItemOutcome) -> None:
        """Move an item from loading to its terminal status.

        Args:
            job_id: The job the item belongs to.
            item_id: The item (table) ID.
            outcome: Success or error outcome of the transfer.

        Raises:
            JobNotFoundError: If the job does not exist.
            ItemNotFoundError: If the job has no such item.
            ItemAlreadyFinishedError: If the item already has an outcome.
            ValueError: If the outcome is not terminal.
        """
        if not outcome.status.is_terminal:
            raise ValueError(f"Outcome for table {item_id} is not terminal")

        with self._lock:
            job = self._get_job(job_id)
            for item in job.items:
                if item.item_id != item_id or item.status.is_terminal:
                    continue
                item.status = outcome.status
                item.result = copy.deepcopy(outcome.result) if outcome.success else None
                item.error = None if outcome.success else outcome.error
                return

            finished = [item for item in job.items if item.item_id == item_id]
            if finished:
                raise ItemAlreadyFinishedError(job_id, item_id, finished[0].status)
            raise ItemNotFoundError(job_id, item_id)

    def is_finished(self, job_id: str) -> bool:
        """Return True when no item of the job is still loading."""
        with self._lock:
            return self._get_job(job_id).is_finished

    def delete_job(self, job_id: str) -> bool:
        """Remove a job. Deleting an unknown job is a no-op.

        Returns:
            True if a job was removed, False if none existed.
        """
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def sweep_finished_jobs(self) -> List[str]:
        """Delete every job whose items are all terminal.

        Returns:
            IDs of the deleted jobs.
        """
        with self._lock:
            finished = [job_id for job_id, job in self._jobs.items() if job.is_finished]
            for job_id in finished:
                del self._jobs[job_id]
            return finished

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __repr__(self) -> str:
        return f"JobStore(jobs={len(self)})"
