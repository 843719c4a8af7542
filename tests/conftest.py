"""Shared pytest fixtures for table_export tests."""

import threading

import pytest

from table_export.core.pipeline import ExportConfig, ExportDestination
from table_export.core.state import (
    Credentials,
    ExportResult,
    ItemOutcome,
    JobStore,
    TableItem,
)


class FakeProvisioner:
    """Provisioner double returning a fixed destination or raising."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def provision(self, credentials):
        self.calls.append(credentials)
        if self.error is not None:
            raise self.error
        return ExportDestination(
            folder_id="folder-1",
            archive_folder_id="archive-1",
            index_sheet_id="sheet-1",
        )


class ScriptedTransfer:
    """Transfer double recording call order.

    Behaviour per table ID:
    - "fail": return a failed outcome
    - "raise": raise RuntimeError
    - a threading.Event: block until the event is set, then succeed
    - anything else (or absent): succeed
    """

    def __init__(self, behaviour=None):
        self.behaviour = behaviour or {}
        self.events = []
        self._lock = threading.Lock()

    def _log(self, event):
        with self._lock:
            self.events.append(event)

    def __call__(self, credentials, item, destination):
        self._log(("start", item.id))
        try:
            action = self.behaviour.get(item.id)
            if isinstance(action, threading.Event):
                assert action.wait(5), f"gate for {item.id} never opened"
            if action == "raise":
                raise RuntimeError(f"boom on {item.id}")
            if action == "fail":
                return ItemOutcome.failed(f"could not export {item.id}")
            return ItemOutcome.succeeded(
                ExportResult(
                    drive_file_id=f"file-{item.id}",
                    drive_file_name=item.name,
                    web_view_link=f"https://drive.example/{item.id}",
                )
            )
        finally:
            self._log(("end", item.id))


@pytest.fixture
def store():
    """Fresh, empty job store."""
    return JobStore()


@pytest.fixture
def credentials():
    """Credentials of the exporting user."""
    return Credentials(access_token="ya29.owner-token", refresh_token="1//refresh-a")


@pytest.fixture
def other_credentials():
    """Credentials of a different user."""
    return Credentials(access_token="ya29.intruder-token", refresh_token="1//refresh-b")


@pytest.fixture
def tables():
    """Three tables in submission order."""
    return [
        TableItem(id="tblA", name="Table A"),
        TableItem(id="tblB", name="Table B"),
        TableItem(id="tblC", name="Table C"),
    ]


@pytest.fixture
def config():
    """Export configuration with small limits for tests."""
    return ExportConfig(max_concurrent_jobs=2, large_table_threshold=10, max_retries=1)


@pytest.fixture
def success_result():
    return ExportResult(drive_file_id="file-1", drive_file_name="Table A")


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def transfer():
    return ScriptedTransfer()
