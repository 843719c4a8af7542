"""Export orchestrator: provision a destination, then export tables one by one.

This module provides the ExportOrchestrator class that turns a selection of
tables into an export job. Provisioning happens synchronously in run(); the
per-table work is handed to a background worker and run() returns the job
ID straight away so the caller can start polling.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Protocol, Sequence

from ..core.state import (
    Credentials,
    ExportError,
    ItemOutcome,
    JobNotFoundError,
    JobStore,
    TableItem,
)
from ..utils.logging import JobLogAdapter, get_logger


@dataclass
class ExportConfig:
    """Configuration for exports.

    Attributes:
        archive_folder_name: Drive folder holding every export.
        index_sheet_name: Spreadsheet in the archive folder listing exports.
        upload_folder_format: strftime format for the per-export folder name.
        large_table_threshold: CSV size in bytes above which a table counts
            as large and is uploaded as plain CSV instead of a spreadsheet.
        max_concurrent_jobs: Number of export jobs that may run at once.
        request_timeout: HTTP request timeout in seconds.
        max_retries: Attempts per HTTP request on rate limits and 5xx errors.
    """

    archive_folder_name: str = "Fusion Tables Archive"
    index_sheet_name: str = "Fusion Tables Archive Index"
    upload_folder_format: str = "Export %Y-%m-%d %H:%M:%S"
    large_table_threshold: int = 20 * 1024 * 1024
    max_concurrent_jobs: int = 4
    request_timeout: int = 60
    max_retries: int = 3


@dataclass(frozen=True)
class ExportDestination:
    """Drive locations shared by every table of one export.

    Attributes:
        folder_id: Folder the tables of this export are uploaded into.
        archive_folder_id: Root archive folder containing the export folder.
        index_sheet_id: Archive index spreadsheet the export is logged in.
    """

    folder_id: str
    archive_folder_id: Optional[str] = None
    index_sheet_id: Optional[str] = None


class ProvisioningError(ExportError):
    """Setting up the export destination failed; no job was created."""

    pass


class Provisioner(Protocol):
    def provision(self, credentials: Credentials) -> ExportDestination:
        ...


class ItemTransfer(Protocol):
    def __call__(
        self,
        credentials: Credentials,
        item: TableItem,
        destination: ExportDestination,
    ) -> ItemOutcome:
        ...


class ExportOrchestrator:
    """Creates export jobs and drives their tables through the transfer.

    Features:
    - Destination provisioning before any job exists
    - Fire-and-continue: run() returns while tables are still exporting
    - At most one table transfer in flight per job, in submission order
    - A failed table never affects the others

    Attributes:
        store: Job store receiving every status update.
        config: Export configuration.
        logger: Logger instance for the orchestrator.
    """

    def __init__(
        self,
        store: JobStore,
        provisioner: Provisioner,
        transfer: ItemTransfer,
        config: Optional[ExportConfig] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.config = config or ExportConfig()
        self.logger = logger or get_logger("core.pipeline")
        self._provisioner = provisioner
        self._transfer = transfer

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_jobs,
            thread_name_prefix="export-job",
        )
        self._futures_lock = threading.Lock()
        self._active_futures: Dict[str, Future] = {}

    def run(
        self,
        owner: Hashable,
        items: Sequence[TableItem],
        credentials: Credentials,
    ) -> str:
        """Start an export job.

        Args:
            owner: Session credentials the job is authorized against.
            items: Tables to export, in order.
            credentials: Credentials used for the API calls.

        Returns:
            ID of the new job. Tables are exported in the background.

        Raises:
            ProvisioningError: If the destination could not be set up. No
                job is created in that case.
            RuntimeError: If the orchestrator was shut down. The job is
                removed again before the error propagates.
        """
        items = list(items)
        self.logger.info(f"Start export with {len(items)} table(s)")

        try:
            destination = self._provisioner.provision(credentials)
        except Exception as e:
            self.logger.error(f"Export destination setup failed: {e}")
            raise ProvisioningError(f"Could not prepare export destination: {e}") from e

        job_id = self.store.create_job(owner, items)
        self.store.set_destination_folder(job_id, destination.folder_id)

        with self._futures_lock:
            try:
                future = self._executor.submit(
                    self._process_job, job_id, items, credentials, destination
                )
            except RuntimeError:
                # Executor already shut down; nothing would ever finish this job
                self.store.delete_job(job_id)
                self.logger.error(f"Could not start export {job_id}: orchestrator is shut down")
                raise
            self._active_futures[job_id] = future
        future.add_done_callback(lambda _: self._forget(job_id))

        return job_id

    def _forget(self, job_id: str) -> None:
        with self._futures_lock:
            self._active_futures.pop(job_id, None)

    def _process_job(
        self,
        job_id: str,
        items: List[TableItem],
        credentials: Credentials,
        destination: ExportDestination,
    ) -> None:
        """Export the tables of one job strictly one after another."""
        job_logger = JobLogAdapter(self.logger, job_id)
        job_logger.info(f"Exporting {len(items)} table(s) to folder {destination.folder_id}")

        for item in items:
            outcome = self._transfer_item(item, credentials, destination, job_logger)
            try:
                self.store.record_item_outcome(job_id, item.id, outcome)
            except JobNotFoundError:
                job_logger.warning("Job was deleted while running, stopping")
                return

        job_logger.info("Finished export")

    def _transfer_item(
        self,
        item: TableItem,
        credentials: Credentials,
        destination: ExportDestination,
        job_logger: JobLogAdapter,
    ) -> ItemOutcome:
        """Run the transfer for one table and turn any failure into an outcome."""
        job_logger.info(f"Start export of table {item.id}")

        try:
            outcome = self._transfer(credentials, item, destination)
        except Exception as e:
            job_logger.error(f"Table {item.id} failed: {e}", exc_info=True)
            return ItemOutcome.failed(str(e) or type(e).__name__)

        if outcome.success:
            job_logger.info(f"Successfully exported table {item.id}")
        else:
            job_logger.warning(f"Table {item.id} finished with an error: {outcome.error}")
        return outcome

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until a job's background work is done.

        Returns:
            True if the job is no longer running, False on timeout.
        """
        with self._futures_lock:
            future = self._active_futures.get(job_id)
        if future is None:
            return True

        done, _ = wait_futures([future], timeout=timeout)
        return future in done

    def active_jobs(self) -> List[str]:
        with self._futures_lock:
            return [job_id for job_id, future in self._active_futures.items() if not future.done()]

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally wait for running ones to finish."""
        self.logger.debug(f"Shutting down with {len(self.active_jobs())} running job(s)")
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> ExportOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)

    def __repr__(self) -> str:
        return (
            f"ExportOrchestrator("
            f"store={self.store!r}, "
            f"max_concurrent_jobs={self.config.max_concurrent_jobs})"
        )
