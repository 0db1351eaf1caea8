"""Test retention, capacity enforcement and reconciliation."""

from datetime import UTC, datetime, timedelta

import pytest

from dbvault.backup.errors import StorageError
from dbvault.backup.models import BackupRecord
from dbvault.backup.retention import RetentionManager
from dbvault.backup.store import artifact_name, snapshot_name


@pytest.fixture
def retention(store):
    return RetentionManager(store)


class TestApplyRetention:
    def test_removes_only_records_older_than_window(self, retention, store, seed_record):
        old = seed_record(31)
        older = seed_record(45)
        recent = seed_record(29)

        removed = retention.apply_retention(30)

        assert {r.filename for r in removed} == {old.filename, older.filename}
        assert store.list_records() == [recent]
        assert not store.artifact_path(old.filename).exists()
        assert store.artifact_path(recent.filename).exists()

    def test_record_exactly_at_cutoff_is_kept(self, retention, store):
        now = datetime(2026, 10, 19, 2, 0, tzinfo=UTC)
        boundary = now - timedelta(days=30)
        filename = artifact_name(boundary)
        store.artifact_path(filename).write_bytes(b"x")
        store.append_record(
            BackupRecord(timestamp=boundary, filename=filename, size_bytes=1, checksum="0")
        )

        assert retention.apply_retention(30, now=now) == []
        assert len(store.list_records()) == 1

    def test_newest_record_is_kept_when_expired(self, retention, store, seed_record):
        seed_record(60)
        newest = seed_record(45)

        removed = retention.apply_retention(30)

        assert len(removed) == 1
        assert store.list_records() == [newest]
        assert store.artifact_path(newest.filename).exists()

    def test_zero_day_window_keeps_newest(self, retention, store, seed_record):
        seed_record(1)
        newest = seed_record(0)

        removed = retention.apply_retention(0)

        assert len(removed) == 1
        assert store.list_records() == [newest]

    def test_empty_ledger(self, retention):
        assert retention.apply_retention(30) == []

    def test_nothing_to_remove(self, retention, seed_record):
        seed_record(1)

        assert retention.apply_retention(30) == []

    def test_failure_on_one_record_does_not_stop_the_pass(
        self, retention, store, seed_record, monkeypatch
    ):
        stuck = seed_record(40)
        other = seed_record(35)
        recent = seed_record(1)
        original = store.remove_record

        def _remove(filename):
            if filename == stuck.filename:
                raise StorageError("permission denied")
            return original(filename)

        monkeypatch.setattr(store, "remove_record", _remove)

        removed = retention.apply_retention(30)

        assert removed == [other]
        assert [r.filename for r in store.list_records()] == [stuck.filename, recent.filename]


class TestEnforceCapacity:
    def test_keeps_newest_records(self, retention, store, seed_record):
        records = [seed_record(days) for days in (5, 1, 4, 2, 3)]

        removed = retention.enforce_capacity(3)

        newest = sorted(records, key=lambda r: r.timestamp)[-3:]
        assert {r.filename for r in removed} == {
            r.filename for r in records if r not in newest
        }
        assert {r.filename for r in store.list_records()} == {r.filename for r in newest}

    def test_under_capacity_is_a_no_op(self, retention, store, seed_record):
        seed_record(1)
        seed_record(2)

        assert retention.enforce_capacity(5) == []
        assert len(store.list_records()) == 2

    def test_capacity_must_be_positive(self, retention):
        with pytest.raises(ValueError):
            retention.enforce_capacity(0)


class TestReconcile:
    def test_clean_directory(self, retention, seed_record):
        seed_record(1)

        report = retention.reconcile()

        assert report.clean

    def test_removes_orphans_and_reports_dangling(self, retention, store, seed_record):
        kept = seed_record(2)
        dangling = seed_record(1, with_file=False)
        orphan = artifact_name(datetime(2026, 1, 1, tzinfo=UTC))
        store.artifact_path(orphan).write_bytes(b"x")
        store.artifact_path(snapshot_name(orphan)).write_bytes(b"plaintext")

        report = retention.reconcile()

        assert sorted(report.orphans_removed) == sorted([orphan, snapshot_name(orphan)])
        assert report.dangling_records == [dangling.filename]
        assert not store.artifact_path(orphan).exists()
        # Dangling entries are reported, never removed automatically
        assert {r.filename for r in store.list_records()} == {
            kept.filename,
            dangling.filename,
        }
