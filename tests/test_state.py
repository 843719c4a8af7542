"""Tests for the in-memory job store."""

import threading

import pytest

from table_export.core.state import (
    Credentials,
    ExportResult,
    ItemAlreadyFinishedError,
    ItemNotFoundError,
    ItemOutcome,
    ItemRecord,
    ItemStatus,
    JobNotFoundError,
    JobStore,
    NotFoundError,
    TableItem,
)


class TestCredentials:
    """Tests for the credential value type."""

    def test_equal_by_value(self):
        """Two bundles with the same fields are the same owner."""
        a = Credentials(access_token="tok", refresh_token="ref")
        b = Credentials(access_token="tok", refresh_token="ref")

        assert a == b
        assert a is not b

    def test_different_refresh_token_is_different_owner(self):
        a = Credentials(access_token="tok", refresh_token="ref-1")
        b = Credentials(access_token="tok", refresh_token="ref-2")
        assert a != b

    def test_from_dict(self):
        """Token dictionaries from the OAuth flow are accepted."""
        creds = Credentials.from_dict(
            {
                "access_token": "ya29.abc",
                "refresh_token": "1//xyz",
                "scope": "https://www.googleapis.com/auth/drive.file",
                "token_type": "Bearer",
                "expiry_date": 1700000000000,
            }
        )

        assert creds.access_token == "ya29.abc"
        assert creds.expiry_date == 1700000000000
        assert creds.authorization_header() == "Bearer ya29.abc"

    def test_from_dict_requires_access_token(self):
        with pytest.raises(ValueError):
            Credentials.from_dict({"refresh_token": "1//xyz"})

    def test_from_file(self, tmp_path):
        token_file = tmp_path / "tokens.json"
        token_file.write_text('{"access_token": "ya29.file"}', encoding="utf-8")

        creds = Credentials.from_file(token_file)

        assert creds.access_token == "ya29.file"
        assert creds.token_type == "Bearer"


class TestCreateJob:
    """Tests for job creation."""

    def test_all_items_loading_in_order(self, store, credentials, tables):
        """A new job has one loading record per table, in submission order."""
        job_id = store.create_job(credentials, tables)

        items = store.get_items(job_id)

        assert [item.item_id for item in items] == ["tblA", "tblB", "tblC"]
        assert all(item.status == ItemStatus.LOADING for item in items)
        assert all(item.result is None and item.error is None for item in items)

    def test_unique_ids(self, store, credentials, tables):
        ids = {store.create_job(credentials, tables) for _ in range(50)}
        assert len(ids) == 50
        assert len(store) == 50

    def test_empty_job_is_finished(self, store, credentials):
        job_id = store.create_job(credentials, [])

        assert store.get_items(job_id) == []
        assert store.is_finished(job_id) is True

    def test_no_destination_folder_yet(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        with pytest.raises(NotFoundError):
            store.get_destination_folder(job_id)


class TestAuthorization:
    """Tests for is_authorized()."""

    def test_owner_is_authorized(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)
        assert store.is_authorized(job_id, credentials) is True

    def test_equal_copy_of_owner_is_authorized(self, store, credentials, tables):
        """Authorization compares by value, not identity."""
        job_id = store.create_job(credentials, tables)
        copy = Credentials(
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token,
        )
        assert store.is_authorized(job_id, copy) is True

    def test_other_user_is_not_authorized(self, store, credentials, other_credentials, tables):
        job_id = store.create_job(credentials, tables)
        assert store.is_authorized(job_id, other_credentials) is False

    def test_unknown_job_is_not_authorized(self, store, credentials):
        assert store.is_authorized("no-such-job", credentials) is False


class TestSnapshots:
    """Tests that readers only ever get copies."""

    def test_mutating_snapshot_does_not_change_store(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        items = store.get_items(job_id)
        items[0].status = ItemStatus.SUCCESS
        items.pop()

        fresh = store.get_items(job_id)
        assert len(fresh) == 3
        assert fresh[0].status == ItemStatus.LOADING

    def test_nested_result_data_is_copied(self, store, credentials, tables):
        """Styles inside a result snapshot are not shared with the store."""
        job_id = store.create_job(credentials, tables)
        result = ExportResult(drive_file_id="file-1", drive_file_name="A", styles=({"name": "orig"},))
        store.record_item_outcome(job_id, "tblA", ItemOutcome.succeeded(result))

        snapshot = store.get_items(job_id)
        snapshot[0].result.styles[0]["name"] = "changed"

        assert store.get_items(job_id)[0].result.styles == ({"name": "orig"},)

    def test_recorded_result_is_detached_from_caller(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)
        style = {"name": "orig"}
        result = ExportResult(drive_file_id="file-1", drive_file_name="A", styles=(style,))
        store.record_item_outcome(job_id, "tblA", ItemOutcome.succeeded(result))

        style["name"] = "changed"

        assert store.get_items(job_id)[0].result.styles == ({"name": "orig"},)

    def test_get_items_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.get_items("no-such-job")


class TestDestinationFolder:
    """Tests for destination folder bookkeeping."""

    def test_set_and_get(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        store.set_destination_folder(job_id, "folder-9")

        assert store.get_destination_folder(job_id) == "folder-9"

    def test_set_is_idempotent(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        store.set_destination_folder(job_id, "folder-9")
        store.set_destination_folder(job_id, "folder-9")

        assert store.get_destination_folder(job_id) == "folder-9"

    def test_set_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.set_destination_folder("no-such-job", "folder-9")

    def test_get_unknown_job(self, store):
        with pytest.raises(NotFoundError):
            store.get_destination_folder("no-such-job")


class TestRecordItemOutcome:
    """Tests for item status transitions."""

    def test_success(self, store, credentials, tables, success_result):
        job_id = store.create_job(credentials, tables)

        store.record_item_outcome(job_id, "tblA", ItemOutcome.succeeded(success_result))

        item = store.get_items(job_id)[0]
        assert item.status == ItemStatus.SUCCESS
        assert item.result == success_result
        assert item.error is None

    def test_error(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        store.record_item_outcome(job_id, "tblB", ItemOutcome.failed("Quota exceeded"))

        items = store.get_items(job_id)
        assert items[1].status == ItemStatus.ERROR
        assert items[1].error == "Quota exceeded"
        assert items[1].result is None
        # Other items untouched
        assert items[0].status == ItemStatus.LOADING
        assert items[2].status == ItemStatus.LOADING

    def test_terminal_status_is_write_once(self, store, credentials, tables, success_result):
        """A second outcome for the same item is rejected and changes nothing."""
        job_id = store.create_job(credentials, tables)
        store.record_item_outcome(job_id, "tblA", ItemOutcome.succeeded(success_result))

        with pytest.raises(ItemAlreadyFinishedError) as exc_info:
            store.record_item_outcome(job_id, "tblA", ItemOutcome.failed("late failure"))

        assert exc_info.value.status == ItemStatus.SUCCESS
        item = store.get_items(job_id)[0]
        assert item.status == ItemStatus.SUCCESS
        assert item.error is None

    def test_unknown_item(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        with pytest.raises(ItemNotFoundError):
            store.record_item_outcome(job_id, "tblZ", ItemOutcome.failed("x"))

    def test_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.record_item_outcome("no-such-job", "tblA", ItemOutcome.failed("x"))

    def test_loading_outcome_rejected(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        with pytest.raises(ValueError):
            store.record_item_outcome(job_id, "tblA", ItemOutcome(status=ItemStatus.LOADING))

    def test_duplicate_table_ids_fill_in_order(self, store, credentials):
        """The same table selected twice gets one outcome per slot."""
        table = TableItem(id="tblA", name="Table A")
        job_id = store.create_job(credentials, [table, table])

        store.record_item_outcome(job_id, "tblA", ItemOutcome.failed("first"))
        store.record_item_outcome(job_id, "tblA", ItemOutcome.failed("second"))

        assert [item.error for item in store.get_items(job_id)] == ["first", "second"]
        with pytest.raises(ItemAlreadyFinishedError):
            store.record_item_outcome(job_id, "tblA", ItemOutcome.failed("third"))

    def test_item_count_never_changes(self, store, credentials, tables, success_result):
        job_id = store.create_job(credentials, tables)

        for table in tables:
            store.record_item_outcome(job_id, table.id, ItemOutcome.succeeded(success_result))

        assert len(store.get_items(job_id)) == len(tables)
        assert store.is_finished(job_id) is True


class TestDeleteAndSweep:
    """Tests for job removal."""

    def test_delete_behaves_like_never_created(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)
        store.set_destination_folder(job_id, "folder-1")

        assert store.delete_job(job_id) is True

        assert store.is_authorized(job_id, credentials) is False
        with pytest.raises(JobNotFoundError):
            store.get_items(job_id)
        with pytest.raises(JobNotFoundError):
            store.get_destination_folder(job_id)
        assert job_id not in store

    def test_delete_is_idempotent(self, store, credentials, tables):
        job_id = store.create_job(credentials, tables)

        store.delete_job(job_id)

        assert store.delete_job(job_id) is False
        assert store.delete_job("never-existed") is False

    def test_sweep_removes_only_finished_jobs(self, store, credentials, tables, success_result):
        finished = store.create_job(credentials, tables[:1])
        store.record_item_outcome(finished, "tblA", ItemOutcome.succeeded(success_result))

        failed = store.create_job(credentials, tables[1:2])
        store.record_item_outcome(failed, "tblB", ItemOutcome.failed("nope"))

        running = store.create_job(credentials, tables)
        store.record_item_outcome(running, "tblA", ItemOutcome.succeeded(success_result))

        removed = store.sweep_finished_jobs()

        assert sorted(removed) == sorted([finished, failed])
        assert store.job_ids() == [running]
        assert len(store.get_items(running)) == 3

    def test_sweep_empty_store(self, store):
        assert store.sweep_finished_jobs() == []


class TestConcurrentAccess:
    """Tests for lock protected updates under concurrent use."""

    def test_parallel_writers_and_readers(self, store, credentials):
        tables = [TableItem(id=f"t{i}", name=f"T{i}") for i in range(200)]
        job_id = store.create_job(credentials, tables)
        errors = []

        def writer(chunk):
            for table in chunk:
                store.record_item_outcome(job_id, table.id, ItemOutcome.failed("x"))

        def reader():
            for _ in range(200):
                for item in store.get_items(job_id):
                    # Never a half-written record
                    if item.status == ItemStatus.ERROR and item.error != "x":
                        errors.append(item)
                    if item.status == ItemStatus.LOADING and item.error is not None:
                        errors.append(item)

        threads = [threading.Thread(target=writer, args=(tables[i::4],)) for i in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert store.is_finished(job_id) is True


class TestItemRecord:
    """Tests for JSON conversion of item records."""

    def test_to_dict_loading(self):
        assert ItemRecord(item_id="tblA").to_dict() == {"id": "tblA", "status": "loading"}

    def test_to_dict_success(self, success_result):
        record = ItemRecord(item_id="tblA", status=ItemStatus.SUCCESS, result=success_result)

        data = record.to_dict()

        assert data["status"] == "success"
        assert data["drive_file_id"] == "file-1"
        assert data["is_large"] is False
        assert "error" not in data

    def test_to_dict_error(self):
        record = ItemRecord(item_id="tblA", status=ItemStatus.ERROR, error="boom")
        assert record.to_dict() == {"id": "tblA", "status": "error", "error": "boom"}

    def test_repr(self, store):
        assert "JobStore" in repr(store)
