"""Point-in-time SQLite snapshots using the engine's online backup API."""

import sqlite3
import time
from pathlib import Path

import structlog

from dbvault.backup.errors import SnapshotError, StorageError

logger = structlog.get_logger(__name__)

PAGES_PER_STEP = 256


def snapshot(
    source_path: Path, dest_path: Path, *, deadline: float | None = None
) -> None:
    """Copy the live database at *source_path* into a new file at *dest_path*.

    *deadline* is a ``time.monotonic()`` value; the copy is aborted once it
    passes. The destination is removed whenever the snapshot fails.
    """
    source_path = Path(source_path)
    dest_path = Path(dest_path)

    if not source_path.is_file():
        raise SnapshotError(f"Source database not found: {source_path}")
    if dest_path.exists():
        raise SnapshotError(f"Snapshot destination already exists: {dest_path}")

    def _progress(status: int, remaining: int, total: int) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise TimeoutError("snapshot deadline exceeded")
        logger.debug("Snapshot progress", remaining=remaining, total=total)

    source = None
    dest = None
    try:
        # Read-only so the snapshot can never write to the live database
        source = sqlite3.connect(f"{source_path.resolve().as_uri()}?mode=ro", uri=True)
        dest = sqlite3.connect(str(dest_path))
        source.backup(dest, pages=PAGES_PER_STEP, progress=_progress)

        row = dest.execute("PRAGMA quick_check").fetchone()
        if row is None or row[0] != "ok":
            raise SnapshotError(f"Snapshot failed quick_check: {row[0] if row else None}")
    except SnapshotError:
        _discard(dest, dest_path)
        dest = None
        raise
    except TimeoutError as e:
        _discard(dest, dest_path)
        dest = None
        raise SnapshotError("Snapshot timed out") from e
    except sqlite3.Error as e:
        _discard(dest, dest_path)
        dest = None
        raise SnapshotError(f"SQLite backup failed: {e}") from e
    finally:
        if source is not None:
            source.close()
        if dest is not None:
            dest.close()

    logger.debug("Snapshot written", dest=str(dest_path))


def _discard(conn: sqlite3.Connection | None, path: Path) -> None:
    if conn is not None:
        conn.close()
    path.unlink(missing_ok=True)


def sidecar_paths(db_path: Path) -> tuple[Path, Path]:
    """Return the ``-wal`` and ``-shm`` files SQLite keeps beside *db_path*."""
    db_path = Path(db_path)
    return (
        db_path.with_name(f"{db_path.name}-wal"),
        db_path.with_name(f"{db_path.name}-shm"),
    )


def checkpoint_wal(db_path: Path) -> None:
    """Fold and truncate any write-ahead log left beside *db_path*.

    Frames still in the log would otherwise be replayed onto whatever file
    takes the database's place.
    """
    wal_path, _ = sidecar_paths(db_path)
    if not wal_path.exists():
        return

    conn = None
    try:
        conn = sqlite3.connect(str(db_path))
        busy, _, _ = conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
    except sqlite3.Error as e:
        raise StorageError(f"Cannot checkpoint write-ahead log of {db_path}: {e}") from e
    finally:
        if conn is not None:
            conn.close()
    if busy:
        raise StorageError(f"Write-ahead log of {db_path} is busy, close open readers")
    logger.debug("Write-ahead log checkpointed", db=str(db_path))
