"""Age-based retention, capacity ceiling and ledger reconciliation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from dbvault.backup.errors import BackupError
from dbvault.backup.models import BackupRecord, ReconcileReport
from dbvault.backup.store import BackupStore
from dbvault.utils import LoggerMixin


class RetentionManager(LoggerMixin):
    """Removes expired and excess backups through the store.

    Callers hold the cycle lock. A failure on one record is logged and the
    pass moves on to the next one.
    """

    def __init__(self, store: BackupStore) -> None:
        self.store = store

    def apply_retention(
        self, retention_days: int, now: datetime | None = None
    ) -> list[BackupRecord]:
        """Remove every record strictly older than *retention_days*.

        The newest record is always kept, whatever its age.
        """
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=retention_days)
        records = self.store.list_records()
        if not records:
            return []

        newest = max(records, key=lambda r: (r.timestamp, r.filename))
        expired = [r for r in records if r.timestamp < cutoff and r is not newest]

        removed = self._remove_all(expired, reason="retention")
        self.logger.info(
            "Retention applied",
            retention_days=retention_days,
            removed=len(removed),
            failed=len(expired) - len(removed),
        )
        return removed

    def enforce_capacity(self, max_records: int) -> list[BackupRecord]:
        """Evict the oldest records until at most *max_records* remain."""
        if max_records < 1:
            raise ValueError("max_records must be >= 1")

        records = sorted(
            self.store.list_records(), key=lambda r: (r.timestamp, r.filename)
        )
        excess = len(records) - max_records
        if excess <= 0:
            return []

        self.logger.info(
            "Backup count exceeds capacity", count=len(records), max_records=max_records
        )
        return self._remove_all(records[:excess], reason="capacity")

    def reconcile(self) -> ReconcileReport:
        """Delete orphaned files and report ledger entries with no file."""
        report = ReconcileReport()

        for filename in self.store.orphan_files():
            try:
                self.store.artifact_path(filename).unlink(missing_ok=True)
            except OSError as e:
                self.logger.warning(
                    "Failed to remove orphaned file", filename=filename, error=str(e)
                )
                continue
            report.orphans_removed.append(filename)
            self.logger.info("Orphaned file removed", filename=filename)

        for record in self.store.dangling_records():
            report.dangling_records.append(record.filename)
            self.logger.error(
                "Ledger entry references a missing artifact",
                filename=record.filename,
                timestamp=record.timestamp.isoformat(),
            )

        return report

    def _remove_all(
        self, records: list[BackupRecord], *, reason: str
    ) -> list[BackupRecord]:
        removed = []
        for record in records:
            try:
                self.store.remove_record(record.filename)
            except BackupError as e:
                self.logger.warning(
                    "Failed to remove backup",
                    filename=record.filename,
                    reason=reason,
                    error=str(e),
                )
                continue
            removed.append(record)
        return removed
