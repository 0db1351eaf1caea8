"""Start/stop ownership of the backup scheduler for a process."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

from dbvault.backup.models import BackupConfig, CycleResult, ScheduleConfig, SchedulerStatus
from dbvault.backup.notifier import WebhookNotifier
from dbvault.backup.retention import RetentionManager
from dbvault.backup.scheduler import BackupScheduler
from dbvault.backup.service import BackupService
from dbvault.utils import LoggerMixin

if TYPE_CHECKING:
    from dbvault.config.settings import Settings


class BackupLifecycle(LoggerMixin):
    """Holds at most one live scheduler.

    Application startup creates one instance and passes it to whatever needs
    status or manual triggers; shutdown code calls :meth:`shutdown`. There is
    no module-level instance.
    """

    def __init__(self) -> None:
        self.scheduler: BackupScheduler | None = None
        self.stopped = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()
        self._signal_task: asyncio.Task | None = None

    @property
    def initialized(self) -> bool:
        return self.scheduler is not None

    def initialize(
        self,
        settings: "Settings | None" = None,
        *,
        backup_config: BackupConfig | None = None,
        schedule_config: ScheduleConfig | None = None,
    ) -> BackupScheduler:
        """Build and start the scheduler. A second call returns the live one."""
        if self.scheduler is not None:
            self.logger.warning("Backup service is already initialized")
            return self.scheduler

        if settings is not None:
            backup_config = backup_config or settings.to_backup_config()
            schedule_config = schedule_config or settings.to_schedule_config()
        if backup_config is None or schedule_config is None:
            raise ValueError("settings or both backup_config and schedule_config are required")

        service = BackupService(backup_config)
        scheduler = BackupScheduler(
            service,
            schedule_config,
            retention=RetentionManager(service.store),
            notifier=WebhookNotifier(
                schedule_config.notification_webhook,
                timeout=schedule_config.notification_timeout,
            ),
        )
        scheduler.start()
        self.scheduler = scheduler
        self.stopped.clear()
        self.logger.info(
            "Database backup service initialized",
            schedule=schedule_config.schedule,
            backup_directory=str(backup_config.backup_directory),
        )
        return scheduler

    async def shutdown(self) -> None:
        """Stop the scheduler, letting a running cycle finish first."""
        async with self._shutdown_lock:
            scheduler = self.scheduler
            if scheduler is None:
                self.stopped.set()
                return

            scheduler.stop()
            grace = scheduler.config.shutdown_grace
            if not await scheduler.wait_idle(timeout=grace):
                self.logger.warning(
                    "Backup cycle still running at shutdown; abandoning it",
                    grace_seconds=grace,
                )
            self.scheduler = None
            self.stopped.set()
            self.logger.info("Backup service stopped")

    def status(self) -> SchedulerStatus:
        if self.scheduler is None:
            return SchedulerStatus(initialized=False, is_running=False)
        return self.scheduler.status()

    async def perform_immediate_backup(self, *, wait: bool = True) -> CycleResult:
        if self.scheduler is None:
            raise RuntimeError("Backup service not initialized")
        return await self.scheduler.perform_immediate_backup(wait=wait)

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Run :meth:`shutdown` on SIGINT/SIGTERM."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        self.logger.info("Received signal, stopping backup service", signal=sig.name)
        task = asyncio.get_running_loop().create_task(self.shutdown())
        self._signal_task = task

    async def wait_stopped(self) -> None:
        await self.stopped.wait()
