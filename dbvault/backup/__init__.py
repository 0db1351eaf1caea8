"""
Secure scheduled database backups.

Provides:
- Point-in-time SQLite snapshots
- AES-256-GCM encryption with SHA-256 integrity verification
- Retention window and capacity ceiling enforcement
- Cron scheduling with webhook notifications
- Verified, atomic restore
"""

from dbvault.backup.errors import (
    BackupError,
    CycleInProgressError,
    EncryptionError,
    IntegrityError,
    NotFoundError,
    SnapshotError,
    StorageError,
)
from dbvault.backup.lifecycle import BackupLifecycle
from dbvault.backup.models import (
    BackupConfig,
    BackupRecord,
    BackupState,
    CycleResult,
    CycleStatus,
    ReconcileReport,
    ScheduleConfig,
    SchedulerStatus,
)
from dbvault.backup.retention import RetentionManager
from dbvault.backup.scheduler import BACKUP_SCHEDULES, BackupScheduler, SchedulerState
from dbvault.backup.service import BackupService
from dbvault.backup.store import BackupStore

__all__ = [
    # Errors
    "BackupError",
    "CycleInProgressError",
    "EncryptionError",
    "IntegrityError",
    "NotFoundError",
    "SnapshotError",
    "StorageError",
    # Models
    "BackupConfig",
    "BackupRecord",
    "BackupState",
    "CycleResult",
    "CycleStatus",
    "ReconcileReport",
    "ScheduleConfig",
    "SchedulerStatus",
    # Components
    "BackupStore",
    "BackupService",
    "RetentionManager",
    "BackupScheduler",
    "SchedulerState",
    "BACKUP_SCHEDULES",
    "BackupLifecycle",
]
