"""Configuration settings for dbvault with caching utilities."""

from __future__ import annotations

from pathlib import Path
from threading import RLock

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dbvault.backup.models import BackupConfig, ScheduleConfig
from dbvault.backup.scheduler import build_trigger


class Settings(BaseSettings):
    """Backup engine settings, read once from the environment at startup"""

    model_config = SettingsConfigDict(
        env_file=[".env.test", ".env"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Source and destination
    database_path: Path = Path("./prisma/dev.db")
    backup_directory: Path = Path("./backups")

    # Encryption
    backup_encryption_key: SecretStr
    backup_kdf_iterations: int = Field(default=200_000, ge=1_000, le=10_000_000)

    # Retention
    backup_retention_days: int = Field(default=30, ge=0)
    max_backup_count: int = Field(default=50, ge=1)
    backup_compression: bool = True

    # Scheduling
    backup_schedule: str = "0 2 * * *"  # daily at 02:00 UTC
    backup_health_checks: bool = True
    backup_notification_webhook: str | None = None
    backup_notification_timeout: float = Field(default=10.0, gt=0)
    backup_shutdown_grace: float = Field(default=60.0, ge=0)

    # Step timeouts (seconds)
    backup_snapshot_timeout: float = Field(default=300.0, gt=0)
    backup_encryption_timeout: float = Field(default=300.0, gt=0)

    # Advisory lock file next to the ledger, for multi-process deployments
    backup_process_lock: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Path | None = None

    environment: str = "production"

    @field_validator("backup_encryption_key")
    @classmethod
    def _check_key_length(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < 16:
            raise ValueError("BACKUP_ENCRYPTION_KEY must be at least 16 characters")
        return value

    @field_validator("backup_schedule")
    @classmethod
    def _check_schedule(cls, value: str) -> str:
        build_trigger(value)
        return value

    @field_validator("backup_notification_webhook")
    @classmethod
    def _blank_webhook_is_none(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in {"json", "console"}:
            raise ValueError("LOG_FORMAT must be 'json' or 'console'")
        return value

    def to_backup_config(self) -> BackupConfig:
        return BackupConfig(
            database_path=self.database_path,
            backup_directory=self.backup_directory,
            encryption_key=self.backup_encryption_key.get_secret_value(),
            retention_days=self.backup_retention_days,
            compression_enabled=self.backup_compression,
            max_backups=self.max_backup_count,
            snapshot_timeout=self.backup_snapshot_timeout,
            encryption_timeout=self.backup_encryption_timeout,
            kdf_iterations=self.backup_kdf_iterations,
            process_lock=self.backup_process_lock,
        )

    def to_schedule_config(self) -> ScheduleConfig:
        return ScheduleConfig(
            schedule=self.backup_schedule,
            health_checks_enabled=self.backup_health_checks,
            notification_webhook=self.backup_notification_webhook,
            notification_timeout=self.backup_notification_timeout,
            shutdown_grace=self.backup_shutdown_grace,
        )


_SETTINGS_LOCK = RLock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, refresh: bool = False) -> Settings:
    """Return a cached ``Settings`` instance.

    Parameters
    ----------
    refresh:
        When ``True`` the cached instance is discarded and a new one is created.
    """

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        if refresh or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings()  # type: ignore[call-arg]
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear the cached settings instance."""

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None
