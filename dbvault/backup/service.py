"""Backup service: create, verify and restore encrypted database backups."""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from dbvault.backup import crypto
from dbvault.backup.errors import (
    BackupError,
    EncryptionError,
    IntegrityError,
    NotFoundError,
    SnapshotError,
    StorageError,
)
from dbvault.backup.locking import CycleLock
from dbvault.backup.models import BackupConfig, BackupRecord, BackupState
from dbvault.backup.snapshot import checkpoint_wal, sidecar_paths, snapshot
from dbvault.backup.store import LOCK_FILENAME, BackupStore, artifact_name, snapshot_name
from dbvault.utils import LoggerMixin


class BackupService(LoggerMixin):
    """Orchestrates backup creation, verification and restore.

    Every public operation holds :attr:`lock`, the same lock the scheduler
    holds for a whole cycle.
    """

    def __init__(
        self,
        config: BackupConfig,
        store: BackupStore | None = None,
        lock: CycleLock | None = None,
    ) -> None:
        self.config = config
        self.store = store or BackupStore(config.backup_directory)
        self.lock = lock or CycleLock(
            config.backup_directory / LOCK_FILENAME if config.process_lock else None
        )
        self.state = BackupState.IDLE
        self.store.ensure_directory()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_backup(self) -> BackupRecord:
        """Snapshot, checksum, encrypt and persist the database.

        Any failing step aborts the whole backup: the plaintext snapshot and
        any written artifact are removed and no ledger entry is added.
        """
        async with self.lock.hold():
            try:
                return await self._create_backup()
            finally:
                self.state = BackupState.IDLE

    async def _create_backup(self) -> BackupRecord:
        timestamp = datetime.now(UTC)
        filename = artifact_name(timestamp)
        artifact_path = self.store.artifact_path(filename)
        snapshot_path = self.store.artifact_path(snapshot_name(filename))
        persisted = False
        committed = False

        if artifact_path.exists():
            raise StorageError(f"Backup artifact already exists: {filename}")

        self.logger.info("Creating backup", filename=filename)
        try:
            self.state = BackupState.SNAPSHOTTING
            await self._snapshot(snapshot_path)

            self.state = BackupState.CHECKSUMMING
            plaintext = await self._read_file(snapshot_path)
            checksum = crypto.compute_checksum(plaintext)

            payload = plaintext
            if self.config.compression_enabled:
                self.state = BackupState.COMPRESSING
                payload = await asyncio.to_thread(crypto.compress, plaintext)

            self.state = BackupState.ENCRYPTING
            artifact = await self._encrypt(payload)
            del plaintext, payload

            self.state = BackupState.PERSISTING
            await self.store.persist(artifact, filename)
            persisted = True
            size_bytes = artifact_path.stat().st_size

            record = BackupRecord(
                timestamp=timestamp,
                filename=filename,
                size_bytes=size_bytes,
                checksum=checksum,
                encrypted=True,
                compressed=self.config.compression_enabled,
            )
            self.store.append_record(record)
            committed = True
            self.state = BackupState.METADATA_UPDATED
        except BackupError as e:
            self.logger.error(
                "Backup failed", filename=filename, step=self.state.value, error=str(e)
            )
            raise
        except OSError as e:
            self.logger.error(
                "Backup failed", filename=filename, step=self.state.value, error=str(e)
            )
            raise StorageError(f"Backup failed during {self.state.value}: {e}") from e
        finally:
            snapshot_path.unlink(missing_ok=True)
            if persisted and not committed:
                try:
                    self.store.delete_artifact(filename)
                except StorageError as e:
                    # Left for reconcile() to collect as an orphan
                    self.logger.warning(
                        "Failed to roll back artifact", filename=filename, error=str(e)
                    )

        self.logger.info(
            "Backup created",
            filename=record.filename,
            size_bytes=record.size_bytes,
            compressed=record.compressed,
        )
        return record

    async def _snapshot(self, dest: Path) -> None:
        timeout = self.config.snapshot_timeout
        deadline = time.monotonic() + timeout
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    snapshot, self.config.database_path, dest, deadline=deadline
                ),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise SnapshotError(f"Snapshot timed out after {timeout}s") from e

    async def _encrypt(self, payload: bytes) -> bytes:
        timeout = self.config.encryption_timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    crypto.encrypt,
                    payload,
                    self.config.encryption_key,
                    iterations=self.config.kdf_iterations,
                ),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise StorageError(f"Encryption timed out after {timeout}s") from e

    async def _read_file(self, path: Path) -> bytes:
        async with aiofiles.open(path, "rb") as fh:
            return await fh.read()

    # ------------------------------------------------------------------
    # Verify / restore
    # ------------------------------------------------------------------

    async def _open_verified(self, record: BackupRecord) -> bytes:
        """Decrypt an artifact and check it against its recorded checksum."""
        artifact = await self.store.read_artifact(record.filename)

        data = artifact
        if record.encrypted:
            try:
                data = await asyncio.wait_for(
                    asyncio.to_thread(
                        crypto.decrypt, artifact, self.config.encryption_key
                    ),
                    timeout=self.config.encryption_timeout,
                )
            except EncryptionError as e:
                raise IntegrityError(
                    f"Backup {record.filename} could not be decrypted: {e}"
                ) from e
            except TimeoutError as e:
                raise StorageError(
                    f"Decryption of {record.filename} timed out"
                ) from e
        if record.compressed:
            data = await asyncio.to_thread(crypto.decompress, data)

        checksum = crypto.compute_checksum(data)
        if checksum != record.checksum:
            raise IntegrityError(
                f"Backup integrity check failed for {record.filename}: checksum mismatch"
            )
        return data

    async def verify(self, filename: str) -> bool:
        """Decrypt *filename* and compare its checksum, without touching any database."""
        async with self.lock.hold():
            record = self.store.get_record(filename)
            try:
                await self._open_verified(record)
            except IntegrityError as e:
                self.logger.error("Backup verification failed", filename=filename, error=str(e))
                return False

        self.logger.info("Backup verified", filename=filename)
        return True

    async def restore(self, filename: str, target_path: Path | None = None) -> None:
        """Restore *filename* over *target_path* (default: the configured database).

        The target is replaced atomically and only after the decrypted copy
        has passed the checksum comparison. A write-ahead log left by the live
        database is checkpointed first and its sidecar files are removed, so
        none of its frames reach the restored file.
        """
        target = Path(target_path) if target_path is not None else self.config.database_path

        async with self.lock.hold():
            record = self.store.get_record(filename)
            if not self.store.artifact_path(filename).exists():
                self.logger.error("Ledger entry references a missing artifact", filename=filename)
                raise NotFoundError(f"Backup artifact is missing: {filename}")

            tmp = target.parent / f".restore-{uuid.uuid4().hex}.tmp"
            try:
                data = await self._open_verified(record)
                target.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp, "xb") as fh:
                    await fh.write(data)
                    await fh.flush()
                    os.fsync(fh.fileno())
                del data

                # Re-check what actually landed on disk before it replaces anything
                checksum = await asyncio.to_thread(crypto.compute_file_checksum, tmp)
                if checksum != record.checksum:
                    raise IntegrityError(
                        f"Restored copy of {filename} does not match its checksum"
                    )

                await asyncio.to_thread(checkpoint_wal, target)
                os.replace(tmp, target)
                for sidecar in sidecar_paths(target):
                    sidecar.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"Restore of {filename} failed: {e}") from e
            finally:
                if await aiofiles.os.path.exists(tmp):
                    await aiofiles.os.remove(tmp)

        self.logger.info("Database restored", filename=filename, target=str(target))

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def list_backups(self) -> list[BackupRecord]:
        return self.store.list_records()

    async def delete_backup(self, filename: str) -> BackupRecord:
        async with self.lock.hold():
            return self.store.remove_record(filename)
