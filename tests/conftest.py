"""
Shared fixtures and collection settings.

- Test environment variables are set automatically for every test (autouse)
- The project root is added to ``sys.path`` so ``import dbvault.*`` resolves
- Backup fixtures work on a real SQLite database in a temporary directory
"""

from __future__ import annotations

import sqlite3
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from dbvault.backup.models import BackupConfig, BackupRecord  # noqa: E402
from dbvault.backup.service import BackupService  # noqa: E402
from dbvault.backup.store import BackupStore, artifact_name  # noqa: E402
from dbvault.config import clear_settings_cache  # noqa: E402

TEST_KEY = "test-backup-key-0123456789"
# Lowest accepted PBKDF2 cost, keeps the suite fast
TEST_KDF_ITERATIONS = 1_000


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Set the required environment for every test.

    ``monkeypatch`` restores everything when the test ends, and the settings
    cache is cleared on both sides so no test sees another's settings.
    """

    env: dict[str, str] = {
        "BACKUP_ENCRYPTION_KEY": TEST_KEY,
        "BACKUP_KDF_ITERATIONS": str(TEST_KDF_ITERATIONS),
        "BACKUP_NOTIFICATION_WEBHOOK": "",
        "LOG_FORMAT": "console",
        "ENVIRONMENT": "testing",
    }

    for k, v in env.items():
        monkeypatch.setenv(k, v)

    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def source_db(tmp_path: Path) -> Path:
    """A small live SQLite database with a few rows."""
    path = tmp_path / "data" / "app.db"
    path.parent.mkdir(parents=True)
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")
        conn.executemany(
            "INSERT INTO users (name) VALUES (?)",
            [("alice",), ("bob",), ("carol",)],
        )
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def backup_config(source_db: Path, backup_dir: Path) -> BackupConfig:
    return BackupConfig(
        database_path=source_db,
        backup_directory=backup_dir,
        encryption_key=TEST_KEY,
        retention_days=30,
        max_backups=50,
        kdf_iterations=TEST_KDF_ITERATIONS,
    )


@pytest.fixture
def service(backup_config: BackupConfig) -> BackupService:
    return BackupService(backup_config)


@pytest.fixture
def store(backup_dir: Path) -> BackupStore:
    store = BackupStore(backup_dir)
    store.ensure_directory()
    return store


@pytest.fixture
def seed_record(store: BackupStore) -> Callable[..., BackupRecord]:
    """Add a ledger entry aged *days* with a placeholder artifact on disk."""

    def _seed(days: float, *, with_file: bool = True) -> BackupRecord:
        timestamp = datetime.now(UTC) - timedelta(days=days)
        filename = artifact_name(timestamp)
        if with_file:
            store.artifact_path(filename).write_bytes(b"placeholder")
        record = BackupRecord(
            timestamp=timestamp,
            filename=filename,
            size_bytes=len(b"placeholder"),
            checksum="0" * 64,
        )
        store.append_record(record)
        return record

    return _seed


@pytest.fixture
def read_users() -> Callable[[Path], list[str]]:
    """Return the user names stored in a database file."""

    def _read(path: Path) -> list[str]:
        conn = sqlite3.connect(path)
        try:
            return [row[0] for row in conn.execute("SELECT name FROM users ORDER BY id")]
        finally:
            conn.close()

    return _read
