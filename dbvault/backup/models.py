"""Data models for the backup engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class BackupState(str, Enum):
    """Steps of a single backup creation"""

    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    CHECKSUMMING = "checksumming"
    COMPRESSING = "compressing"
    ENCRYPTING = "encrypting"
    PERSISTING = "persisting"
    METADATA_UPDATED = "metadata_updated"


class CycleStatus(str, Enum):
    """Outcome of a backup cycle"""

    SUCCESS = "success"
    ERROR = "error"


# Older ledgers store the filename-safe form, e.g. 2024-01-01T02-00-00-000Z
LEGACY_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse a ledger timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            parsed = datetime.strptime(value, LEGACY_TIMESTAMP_FORMAT)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class BackupRecord:
    """Ledger entry describing one encrypted backup artifact."""

    timestamp: datetime
    filename: str
    size_bytes: int
    checksum: str
    encrypted: bool = True
    compressed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "encrypted": self.encrypted,
            "compressed": self.compressed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRecord:
        # Older ledgers store the artifact size under "size"
        size = data["size_bytes"] if "size_bytes" in data else data["size"]
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            filename=str(data["filename"]),
            size_bytes=int(size),
            checksum=str(data["checksum"]),
            encrypted=bool(data.get("encrypted", True)),
            compressed=bool(data.get("compressed", False)),
        )

    def age_days(self, now: datetime | None = None) -> float:
        now = now or datetime.now(UTC)
        return (now - self.timestamp).total_seconds() / 86400


@dataclass(frozen=True)
class BackupConfig:
    """Configuration held by the backup service for its lifetime."""

    database_path: Path
    backup_directory: Path
    encryption_key: str = field(repr=False)
    retention_days: int = 30
    compression_enabled: bool = True
    max_backups: int = 50
    snapshot_timeout: float = 300.0
    encryption_timeout: float = 300.0
    kdf_iterations: int = 200_000
    process_lock: bool = True

    def __post_init__(self) -> None:
        if not self.encryption_key:
            raise ValueError("encryption_key must not be empty")
        if self.retention_days < 0:
            raise ValueError("retention_days must be >= 0")
        if self.max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        if self.snapshot_timeout <= 0 or self.encryption_timeout <= 0:
            raise ValueError("timeouts must be positive")
        object.__setattr__(self, "database_path", Path(self.database_path))
        object.__setattr__(self, "backup_directory", Path(self.backup_directory))


@dataclass(frozen=True)
class ScheduleConfig:
    """Cadence and notification settings owned by the scheduler."""

    schedule: str = "0 2 * * *"
    health_checks_enabled: bool = True
    notification_webhook: str | None = None
    notification_timeout: float = 10.0
    shutdown_grace: float = 60.0


@dataclass
class ReconcileReport:
    """Result of comparing the ledger against the backup directory."""

    orphans_removed: list[str] = field(default_factory=list)
    dangling_records: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.orphans_removed and not self.dangling_records


@dataclass
class CycleResult:
    """Outcome of one backup cycle, also the notification payload."""

    status: CycleStatus
    message: str
    duration_ms: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    record: BackupRecord | None = None
    error: str | None = None
    error_kind: str | None = None
    removed: list[str] = field(default_factory=list)
    dangling_records: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == CycleStatus.SUCCESS

    def to_notification(self) -> dict[str, Any]:
        """Convert to the webhook event payload."""
        payload: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "service": "database-backup",
            "status": self.status.value,
            "message": self.message,
            "durationMs": self.duration_ms,
        }
        if self.record is not None:
            payload["filename"] = self.record.filename
            payload["sizeBytes"] = self.record.size_bytes
        if self.error is not None:
            payload["error"] = self.error
            payload["errorKind"] = self.error_kind
        if self.removed:
            payload["removed"] = list(self.removed)
        if self.dangling_records:
            payload["danglingRecords"] = list(self.dangling_records)
        return payload


@dataclass(frozen=True)
class SchedulerStatus:
    """Status snapshot exposed by the lifecycle manager."""

    initialized: bool
    is_running: bool
    schedule: str | None = None
    next_run_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "isRunning": self.is_running,
            "schedule": self.schedule,
            "nextRunTime": (
                self.next_run_time.isoformat() if self.next_run_time else None
            ),
        }
