"""End-to-end backup cycles against a real SQLite database."""

import asyncio
import json
import sqlite3
from dataclasses import replace

import pytest

from dbvault.backup import (
    BackupLifecycle,
    BackupScheduler,
    BackupService,
    IntegrityError,
    ScheduleConfig,
)
from dbvault.backup.store import LEDGER_FILENAME


def _insert(path, name):
    conn = sqlite3.connect(path)
    try:
        conn.execute("INSERT INTO users (name) VALUES (?)", (name,))
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def schedule_config() -> ScheduleConfig:
    return ScheduleConfig(schedule="0 2 * * *", health_checks_enabled=True)


class TestBackupCycle:
    @pytest.mark.asyncio
    async def test_retention_and_capacity_with_seeded_history(
        self, backup_config, schedule_config, seed_record
    ):
        service = BackupService(replace(backup_config, retention_days=30, max_backups=5))
        seeded = {days: seed_record(days) for days in (40, 35, 29, 20, 10, 5, 1)}
        scheduler = BackupScheduler(service, schedule_config)

        result = await scheduler.perform_immediate_backup()

        assert result.success, result.message
        records = service.store.list_records()
        assert len(records) <= 5
        assert all(r.age_days() <= 30 for r in records)
        assert result.record in records
        assert {r.filename for r in records} == {
            result.record.filename,
            *(seeded[d].filename for d in (20, 10, 5, 1)),
        }
        for days in (40, 35, 29):
            assert not service.store.artifact_path(seeded[days].filename).exists()

    @pytest.mark.asyncio
    async def test_round_trip_restores_point_in_time(self, service, source_db, read_users):
        scheduler = BackupScheduler(service, ScheduleConfig())
        first = await scheduler.perform_immediate_backup()
        _insert(source_db, "dave")
        second = await scheduler.perform_immediate_backup()
        _insert(source_db, "erin")

        await service.restore(first.record.filename)
        assert read_users(source_db) == ["alice", "bob", "carol"]

        await service.restore(second.record.filename)
        assert read_users(source_db) == ["alice", "bob", "carol", "dave"]

    @pytest.mark.asyncio
    async def test_concurrent_triggers_and_writes(self, service, source_db, backup_dir):
        scheduler = BackupScheduler(service, ScheduleConfig())

        async def writer():
            for i in range(20):
                await asyncio.to_thread(_insert, source_db, f"user-{i}")
                await asyncio.sleep(0)

        outcomes = await asyncio.gather(
            writer(), *(scheduler.perform_immediate_backup() for _ in range(4))
        )
        results = outcomes[1:]

        assert all(r.success for r in results)
        ledger = json.loads((backup_dir / LEDGER_FILENAME).read_text())
        assert len(ledger) == 4
        for entry in ledger:
            assert await service.verify(entry["filename"]) is True
            assert entry["size_bytes"] == (backup_dir / entry["filename"]).stat().st_size

    @pytest.mark.asyncio
    async def test_tampered_backup_is_detected_and_kept(
        self, service, source_db, tmp_path, schedule_config
    ):
        scheduler = BackupScheduler(service, schedule_config)
        first = await scheduler.perform_immediate_backup()
        path = service.store.artifact_path(first.record.filename)
        data = bytearray(path.read_bytes())
        data[len(data) // 2] ^= 0x80
        path.write_bytes(bytes(data))
        live_before = source_db.read_bytes()

        assert await service.verify(first.record.filename) is False
        with pytest.raises(IntegrityError):
            await service.restore(first.record.filename)
        assert source_db.read_bytes() == live_before

        # The next cycle verifies only its own artifact and never deletes on mismatch
        second = await scheduler.perform_immediate_backup()
        assert second.success
        assert path.exists()
        assert {r.filename for r in service.store.list_records()} == {
            first.record.filename,
            second.record.filename,
        }

    @pytest.mark.asyncio
    async def test_lifecycle_end_to_end(self, backup_config, schedule_config):
        lifecycle = BackupLifecycle()
        lifecycle.initialize(backup_config=backup_config, schedule_config=schedule_config)
        try:
            manual = await lifecycle.perform_immediate_backup()
            status = lifecycle.status()
        finally:
            await lifecycle.shutdown()

        assert manual.success
        assert status.is_running
        assert lifecycle.status().initialized is False
