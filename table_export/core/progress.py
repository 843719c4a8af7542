"""Read side of export jobs: progress polling and finished job cleanup.

ProgressReporter answers the questions a progress page asks (which tables
are done, where is the folder) on behalf of an authenticated caller.
JobSweeper reclaims finished jobs nobody polled to the end.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Hashable, List, Optional

from ..core.state import ExportError, ItemRecord, ItemStatus, JobStore, NotFoundError
from ..utils.logging import get_logger


class JobAccessDeniedError(ExportError):
    """The job does not exist or belongs to somebody else."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"No accessible export job: {job_id}")
        self.job_id = job_id


@dataclass
class JobProgress:
    """Snapshot of one export job for rendering.

    Attributes:
        job_id: The export job ID.
        folder_id: Drive folder the tables are exported into.
        items: Item records in submission order.
    """

    job_id: str
    folder_id: Optional[str]
    items: List[ItemRecord] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return all(item.status.is_terminal for item in self.items)

    def counts(self) -> Dict[str, int]:
        """Count items by status, including statuses with no items."""
        counter = Counter(item.status.value for item in self.items)
        counts = {status.value: counter.get(status.value, 0) for status in ItemStatus}
        counts["total"] = len(self.items)
        return counts

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "folder_id": self.folder_id,
            "finished": self.finished,
            "tables": [item.to_dict() for item in self.items],
        }


class ProgressReporter:
    """Authorized, read-mostly access to export job progress."""

    def __init__(self, store: JobStore, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.logger = logger or get_logger("core.progress")

    def _authorize(self, job_id: str, credentials: Hashable) -> None:
        if not self.store.is_authorized(job_id, credentials):
            raise JobAccessDeniedError(job_id)

    def poll(self, job_id: str, credentials: Hashable) -> List[ItemRecord]:
        """Return the current item records of a job.

        Once every item is terminal the job is deleted after the snapshot is
        taken, so the final poll still sees all results.

        Raises:
            JobAccessDeniedError: For unknown jobs and jobs owned by others.
        """
        self._authorize(job_id, credentials)
        try:
            items = self.store.get_items(job_id)
        except NotFoundError:
            # Swept between the authorization check and the read
            raise JobAccessDeniedError(job_id) from None

        if all(item.status.is_terminal for item in items):
            self.logger.debug(f"Export {job_id} finished, removing it")
            self.store.delete_job(job_id)

        return items

    def overview(self, job_id: str, credentials: Hashable) -> JobProgress:
        """Return items and destination folder of a job without cleaning up.

        Raises:
            JobAccessDeniedError: For unknown jobs and jobs owned by others.
        """
        self._authorize(job_id, credentials)
        try:
            return JobProgress(
                job_id=job_id,
                folder_id=self.store.get_destination_folder(job_id),
                items=self.store.get_items(job_id),
            )
        except NotFoundError:
            raise JobAccessDeniedError(job_id) from None


class JobSweeper:
    """Background thread that periodically deletes finished jobs.

    Usage:
        with JobSweeper(store, interval_seconds=900):
            serve_forever()
    """

    def __init__(
        self,
        store: JobStore,
        interval_seconds: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.store = store
        self.interval_seconds = interval_seconds
        self.logger = logger or get_logger("core.sweeper")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> List[str]:
        removed = self.store.sweep_finished_jobs()
        if removed:
            self.logger.info(f"Removed {len(removed)} finished export(s)")
        return removed

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception as e:
                self.logger.error(f"Sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="export-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> JobSweeper:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
