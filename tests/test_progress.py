"""Tests for progress polling and the finished job sweeper."""

import threading
import time

import pytest

from table_export.core.pipeline import ExportOrchestrator
from table_export.core.progress import (
    JobAccessDeniedError,
    JobProgress,
    JobSweeper,
    ProgressReporter,
)
from table_export.core.state import (
    ItemOutcome,
    ItemRecord,
    ItemStatus,
    JobNotFoundError,
    TableItem,
)

from conftest import FakeProvisioner, ScriptedTransfer


@pytest.fixture
def reporter(store):
    return ProgressReporter(store)


class TestPoll:
    """Tests for ProgressReporter.poll()."""

    def test_running_job_is_kept(self, store, reporter, credentials, tables):
        job_id = store.create_job(credentials, tables)

        items = reporter.poll(job_id, credentials)

        assert [item.status for item in items] == [ItemStatus.LOADING] * 3
        assert job_id in store

    def test_finished_job_is_deleted_after_final_snapshot(
        self, store, reporter, credentials, tables, success_result
    ):
        job_id = store.create_job(credentials, tables[:2])
        store.record_item_outcome(job_id, "tblA", ItemOutcome.succeeded(success_result))
        store.record_item_outcome(job_id, "tblB", ItemOutcome.failed("nope"))

        items = reporter.poll(job_id, credentials)

        assert [item.status for item in items] == [ItemStatus.SUCCESS, ItemStatus.ERROR]
        assert job_id not in store
        with pytest.raises(JobAccessDeniedError):
            reporter.poll(job_id, credentials)

    def test_unknown_and_unowned_look_the_same(
        self, store, reporter, credentials, other_credentials, tables
    ):
        job_id = store.create_job(credentials, tables)

        with pytest.raises(JobAccessDeniedError) as unowned:
            reporter.poll(job_id, other_credentials)
        with pytest.raises(JobAccessDeniedError) as unknown:
            reporter.poll("no-such-job", other_credentials)

        assert type(unowned.value) is type(unknown.value)
        # The rejected poll did not clean anything up
        assert job_id in store


class TestOverview:
    """Tests for ProgressReporter.overview()."""

    def test_overview(self, store, reporter, credentials, tables, success_result):
        job_id = store.create_job(credentials, tables)
        store.set_destination_folder(job_id, "folder-7")
        store.record_item_outcome(job_id, "tblA", ItemOutcome.succeeded(success_result))

        progress = reporter.overview(job_id, credentials)

        assert progress.job_id == job_id
        assert progress.folder_id == "folder-7"
        assert progress.finished is False
        assert progress.counts() == {"loading": 2, "success": 1, "error": 0, "total": 3}

    def test_overview_never_deletes(self, store, reporter, credentials, tables):
        job_id = store.create_job(credentials, tables[:1])
        store.set_destination_folder(job_id, "folder-7")
        store.record_item_outcome(job_id, "tblA", ItemOutcome.failed("nope"))

        assert reporter.overview(job_id, credentials).finished is True
        assert job_id in store

    def test_overview_unauthorized(self, store, reporter, credentials, other_credentials, tables):
        job_id = store.create_job(credentials, tables)
        store.set_destination_folder(job_id, "folder-7")

        with pytest.raises(JobAccessDeniedError):
            reporter.overview(job_id, other_credentials)

    def test_overview_before_folder_is_known(self, store, reporter, credentials, tables):
        job_id = store.create_job(credentials, tables)

        with pytest.raises(JobAccessDeniedError):
            reporter.overview(job_id, credentials)


class TestJobProgress:
    """Tests for the JobProgress snapshot."""

    def test_to_dict(self):
        progress = JobProgress(
            job_id="job-1",
            folder_id="folder-1",
            items=[
                ItemRecord(item_id="tblA", status=ItemStatus.ERROR, error="nope"),
                ItemRecord(item_id="tblB"),
            ],
        )

        data = progress.to_dict()

        assert data["finished"] is False
        assert data["tables"] == [
            {"id": "tblA", "status": "error", "error": "nope"},
            {"id": "tblB", "status": "loading"},
        ]

    def test_empty_is_finished(self):
        assert JobProgress(job_id="job-1", folder_id=None).finished is True


class TestJobSweeper:
    """Tests for the periodic sweep of finished jobs."""

    def test_sweep_once(self, store, credentials, tables, success_result):
        done = store.create_job(credentials, tables[:1])
        store.record_item_outcome(done, "tblA", ItemOutcome.succeeded(success_result))
        running = store.create_job(credentials, tables)

        removed = JobSweeper(store, interval_seconds=60).sweep_once()

        assert removed == [done]
        assert store.job_ids() == [running]

    def test_background_sweep(self, store, credentials, tables):
        done = store.create_job(credentials, tables[:1])
        store.record_item_outcome(done, "tblA", ItemOutcome.failed("nope"))

        with JobSweeper(store, interval_seconds=0.05) as sweeper:
            assert sweeper.running
            deadline = time.monotonic() + 5
            while done in store and time.monotonic() < deadline:
                time.sleep(0.01)

        assert done not in store
        assert not sweeper.running

    def test_invalid_interval(self, store):
        with pytest.raises(ValueError):
            JobSweeper(store, interval_seconds=0)


class TestEndToEnd:
    """Full export runs through orchestrator, reporter and sweep."""

    def test_mixed_outcomes_then_sweep(self, store, reporter, credentials, config):
        gate = threading.Event()
        item1 = TableItem(id="item1", name="Item 1")
        item2 = TableItem(id="item2", name="Item 2")
        transfer = ScriptedTransfer({"item1": gate, "item2": "fail"})

        with ExportOrchestrator(store, FakeProvisioner(), transfer, config=config) as orchestrator:
            job_id = orchestrator.run(credentials, [item1, item2], credentials)

            first = store.get_items(job_id)
            assert [item.status for item in first] == [ItemStatus.LOADING] * 2

            gate.set()
            assert orchestrator.wait(job_id, timeout=5)

        progress = reporter.overview(job_id, credentials)
        assert [(item.item_id, item.status) for item in progress.items] == [
            ("item1", ItemStatus.SUCCESS),
            ("item2", ItemStatus.ERROR),
        ]

        assert store.sweep_finished_jobs() == [job_id]
        with pytest.raises(JobNotFoundError):
            store.get_items(job_id)

    def test_other_user_cannot_see_existing_job(
        self, store, credentials, other_credentials, tables, config
    ):
        with ExportOrchestrator(store, FakeProvisioner(), ScriptedTransfer(), config=config) as orchestrator:
            job_id = orchestrator.run(credentials, tables, credentials)

        assert len(store.get_items(job_id)) == 3
        assert store.is_authorized(job_id, other_credentials) is False
        assert store.is_authorized(job_id, credentials) is True
