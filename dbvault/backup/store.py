"""On-disk backup directory: encrypted artifacts and the metadata ledger."""

from __future__ import annotations

import json
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from dbvault.backup.errors import NotFoundError, StorageError
from dbvault.backup.models import BackupRecord
from dbvault.utils import LoggerMixin

LEDGER_FILENAME = "backup-metadata.json"
LOCK_FILENAME = ".backup.lock"
ARTIFACT_PREFIX = "database-backup-"
SNAPSHOT_SUFFIX = ".backup"
ENCRYPTED_SUFFIX = ".enc"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"

ARTIFACT_PATTERN = re.compile(
    r"^database-backup-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}(-\d+)?Z?"
    r"\.backup\.enc$"
)
# Plaintext snapshots and partial writes left behind by an interrupted cycle
TEMPORARY_PATTERN = re.compile(
    r"^(database-backup-.*\.backup|.*\.partial|\.restore-.*\.tmp)$"
)


def artifact_name(timestamp: datetime) -> str:
    """Return the artifact filename for a backup taken at *timestamp*."""
    return f"{ARTIFACT_PREFIX}{timestamp.strftime(TIMESTAMP_FORMAT)}{SNAPSHOT_SUFFIX}{ENCRYPTED_SUFFIX}"


def snapshot_name(filename: str) -> str:
    """Return the plaintext snapshot name that belongs to an artifact."""
    return filename.removesuffix(ENCRYPTED_SUFFIX)


class BackupStore(LoggerMixin):
    """Reads and writes backup artifacts and the ledger in one directory.

    The store does no locking of its own. Callers serialize mutations with
    :class:`~dbvault.backup.locking.CycleLock`.
    """

    def __init__(self, backup_directory: Path) -> None:
        self.backup_directory = Path(backup_directory)
        self.ledger_path = self.backup_directory / LEDGER_FILENAME

    def ensure_directory(self) -> None:
        try:
            self.backup_directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create backup directory {self.backup_directory}: {e}"
            ) from e

    def artifact_path(self, filename: str) -> Path:
        """Resolve *filename* inside the backup directory."""
        if not filename or Path(filename).name != filename or filename in {".", ".."}:
            raise NotFoundError(f"Invalid backup filename: {filename!r}")
        return self.backup_directory / filename

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    async def persist(self, artifact: bytes, filename: str) -> Path:
        """Write *artifact* under *filename*, never overwriting an existing file."""
        path = self.artifact_path(filename)
        self.ensure_directory()
        try:
            async with aiofiles.open(path, "xb") as fh:
                try:
                    await fh.write(artifact)
                    await fh.flush()
                    os.fsync(fh.fileno())
                except BaseException:
                    await aiofiles.os.remove(path)
                    raise
        except FileExistsError as e:
            raise StorageError(f"Backup artifact already exists: {filename}") from e
        except OSError as e:
            raise StorageError(f"Failed to write backup artifact {filename}: {e}") from e

        self.logger.debug("Artifact persisted", filename=filename, size=len(artifact))
        return path

    async def read_artifact(self, filename: str) -> bytes:
        path = self.artifact_path(filename)
        try:
            async with aiofiles.open(path, "rb") as fh:
                return await fh.read()
        except FileNotFoundError as e:
            raise NotFoundError(f"Backup artifact is missing: {filename}") from e
        except OSError as e:
            raise StorageError(f"Failed to read backup artifact {filename}: {e}") from e

    def delete_artifact(self, filename: str) -> bool:
        """Delete an artifact file. Returns False if it was already gone."""
        path = self.artifact_path(filename)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete backup artifact {filename}: {e}") from e
        return True

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def list_records(self) -> list[BackupRecord]:
        """Return ledger records in ledger order."""
        records = []
        for index, entry in enumerate(self._load_ledger()):
            try:
                records.append(BackupRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                raise StorageError(
                    f"Ledger entry {index} ({entry.get('filename', '?')}) is malformed: {e!r}"
                ) from e
        return records

    def get_record(self, filename: str) -> BackupRecord:
        for record in self.list_records():
            if record.filename == filename:
                return record
        raise NotFoundError(f"Backup not found in ledger: {filename}")

    def append_record(self, record: BackupRecord) -> None:
        entries = self._load_ledger()
        if any(entry.get("filename") == record.filename for entry in entries):
            raise StorageError(f"Ledger already contains {record.filename}")
        entries.append(record.to_dict())
        self._save_ledger(entries)

    def remove_record(self, filename: str) -> BackupRecord:
        """Delete the artifact, then drop its ledger entry.

        The file goes first so an interruption can leave an orphan file but
        never a ledger entry that points at nothing.
        """
        record = self.get_record(filename)
        if not self.delete_artifact(filename):
            self.logger.warning("Artifact already missing on removal", filename=filename)

        entries = [e for e in self._load_ledger() if e.get("filename") != filename]
        self._save_ledger(entries)
        self.logger.info("Backup removed", filename=filename)
        return record

    def _load_ledger(self) -> list[dict[str, Any]]:
        try:
            with open(self.ledger_path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            raise StorageError(f"Ledger is malformed: {self.ledger_path}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to read ledger: {e}") from e

        if not isinstance(data, list):
            raise StorageError(f"Ledger is not a JSON array: {self.ledger_path}")
        if not all(isinstance(entry, dict) for entry in data):
            raise StorageError(f"Ledger entries must be JSON objects: {self.ledger_path}")
        return data

    def _save_ledger(self, entries: list[dict[str, Any]]) -> None:
        """Atomically replace the ledger file."""
        self.ensure_directory()
        tmp = self.ledger_path.with_name(f"{self.ledger_path.name}.partial")
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(entries, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.ledger_path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Failed to write ledger: {e}") from e

    # ------------------------------------------------------------------
    # Reconciliation inputs
    # ------------------------------------------------------------------

    def orphan_files(self) -> list[str]:
        """Artifacts and stale temporaries on disk that no ledger entry references."""
        if not self.backup_directory.exists():
            return []
        known = {record.filename for record in self.list_records()}
        orphans = []
        for path in sorted(self.backup_directory.iterdir()):
            if not path.is_file() or path.name in known:
                continue
            if ARTIFACT_PATTERN.match(path.name) or TEMPORARY_PATTERN.match(path.name):
                orphans.append(path.name)
        return orphans

    def dangling_records(self) -> list[BackupRecord]:
        """Ledger entries whose artifact file is missing."""
        return [
            record
            for record in self.list_records()
            if not self.artifact_path(record.filename).exists()
        ]
