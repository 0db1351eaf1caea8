"""
Cron-driven backup scheduler.

One cycle is: create a backup, apply retention, optionally verify the new
artifact, enforce the capacity ceiling, reconcile the ledger with the
directory, and send a notification. Cycles hold the service's cycle lock from
start to finish, so scheduled and manual triggers never overlap.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC
from enum import Enum

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dbvault.backup.errors import BackupError, CycleInProgressError, IntegrityError
from dbvault.backup.models import (
    BackupRecord,
    CycleResult,
    CycleStatus,
    ScheduleConfig,
    SchedulerStatus,
)
from dbvault.backup.notifier import WebhookNotifier
from dbvault.backup.retention import RetentionManager
from dbvault.backup.service import BackupService
from dbvault.utils import LoggerMixin, format_size

JOB_ID = "database_backup"

# Common cadences
BACKUP_SCHEDULES = {
    "hourly": "0 * * * *",
    "every_6_hours": "0 */6 * * *",
    "daily_2am": "0 2 * * *",
    "daily_midnight": "0 0 * * *",
    "weekly_sunday": "0 2 * * 0",
    "monthly": "0 2 1 * *",
}


def build_trigger(schedule: str) -> CronTrigger:
    """Parse a five-field crontab expression evaluated in UTC."""
    return CronTrigger.from_crontab(schedule, timezone=UTC)


class SchedulerState(str, Enum):
    """Scheduler run state"""

    STOPPED = "stopped"
    RUNNING = "running"


class BackupScheduler(LoggerMixin):
    """Runs backup cycles on a cron cadence and on demand."""

    def __init__(
        self,
        service: BackupService,
        config: ScheduleConfig,
        retention: RetentionManager | None = None,
        notifier: WebhookNotifier | None = None,
    ) -> None:
        self.service = service
        self.config = config
        self.retention = retention or RetentionManager(service.store)
        self.notifier = notifier or WebhookNotifier(
            config.notification_webhook, timeout=config.notification_timeout
        )
        # Fail on a bad cron expression at construction, not at start()
        build_trigger(config.schedule)

        self.state = SchedulerState.STOPPED
        self.history: list[CycleResult] = []
        self.max_history = 50
        self._scheduler: AsyncIOScheduler | None = None
        self._active: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self.state == SchedulerState.RUNNING

    def start(self) -> None:
        """Start firing cycles. Must be called from inside the event loop."""
        if self.is_running:
            self.logger.warning("Scheduled backup is already running")
            return

        scheduler = AsyncIOScheduler(
            event_loop=asyncio.get_running_loop(), timezone=UTC
        )
        scheduler.add_job(
            self._scheduled_tick,
            trigger=build_trigger(self.config.schedule),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        self.state = SchedulerState.RUNNING

        backup_config = self.service.config
        self.logger.info(
            "Scheduled backup started",
            schedule=self.config.schedule,
            backup_directory=str(backup_config.backup_directory),
            retention_days=backup_config.retention_days,
            max_backups=backup_config.max_backups,
            health_checks=self.config.health_checks_enabled,
        )

    def stop(self) -> None:
        """Stop scheduling new cycles. A cycle already running is not interrupted."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self.is_running:
            self.state = SchedulerState.STOPPED
            self.logger.info("Scheduled backup stopped")

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight cycles. Returns False if *timeout* expired first."""
        current = asyncio.current_task()
        tasks = {t for t in self._active | self._background if t is not current}
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    def status(self) -> SchedulerStatus:
        next_run = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            next_run = job.next_run_time if job is not None else None
        return SchedulerStatus(
            initialized=True,
            is_running=self.is_running,
            schedule=self.config.schedule,
            next_run_time=next_run,
        )

    async def perform_immediate_backup(self, *, wait: bool = True) -> CycleResult:
        """Run one cycle outside the schedule.

        With ``wait=False`` a running cycle makes this raise
        ``CycleInProgressError`` instead of queueing behind it.
        """
        self.logger.info("Performing immediate backup")
        return await self.run_cycle(wait=wait)

    async def _scheduled_tick(self) -> None:
        # Detach from APScheduler's executor, which cancels its futures on shutdown
        task = asyncio.create_task(self._run_scheduled())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_scheduled(self) -> None:
        try:
            await self.run_cycle(wait=False)
        except CycleInProgressError:
            self.logger.warning("Skipping scheduled backup, a cycle is already running")

    async def run_cycle(self, *, wait: bool = True) -> CycleResult:
        task = asyncio.current_task()
        if task is not None:
            self._active.add(task)
        started = time.monotonic()
        try:
            try:
                async with self.service.lock.hold(wait=wait):
                    result = await self._execute(started)
            except CycleInProgressError:
                raise
            except BackupError as e:
                # Lock file could not be opened
                result = self._failed(e, started)

            await self.notifier.notify(result)
            self._remember(result)
            return result
        finally:
            if task is not None:
                self._active.discard(task)

    async def _execute(self, started: float) -> CycleResult:
        backup_config = self.service.config
        record: BackupRecord | None = None
        removed: list[str] = []

        self.logger.info("Starting backup cycle")
        try:
            record = await self.service.create_backup()

            expired = self.retention.apply_retention(backup_config.retention_days)
            removed.extend(r.filename for r in expired)

            if self.config.health_checks_enabled:
                if not await self.service.verify(record.filename):
                    raise IntegrityError(
                        f"Backup verification failed for {record.filename}"
                    )

            excess = self.retention.enforce_capacity(backup_config.max_backups)
            removed.extend(r.filename for r in excess)

            report = self.retention.reconcile()
        except Exception as e:
            result = self._failed(e, started)
            result.record = record
            result.removed = removed
            return result

        duration_ms = int((time.monotonic() - started) * 1000)
        message = f"Scheduled backup completed successfully in {duration_ms}ms"
        if report.dangling_records:
            message += (
                f"; {len(report.dangling_records)} ledger entries reference "
                "missing artifacts"
            )
        self.logger.info(
            "Backup cycle completed",
            filename=record.filename,
            size=format_size(record.size_bytes),
            duration_ms=duration_ms,
            removed=len(removed),
        )
        return CycleResult(
            status=CycleStatus.SUCCESS,
            message=message,
            duration_ms=duration_ms,
            record=record,
            removed=removed,
            dangling_records=report.dangling_records,
        )

    def _failed(self, error: Exception, started: float) -> CycleResult:
        duration_ms = int((time.monotonic() - started) * 1000)
        kind = error.kind if isinstance(error, BackupError) else type(error).__name__
        if isinstance(error, BackupError):
            self.logger.error("Backup cycle failed", error=str(error), kind=kind)
        else:
            self.logger.error(
                "Backup cycle failed", error=str(error), kind=kind, exc_info=True
            )
        return CycleResult(
            status=CycleStatus.ERROR,
            message=f"Scheduled backup failed: {error}",
            duration_ms=duration_ms,
            error=str(error),
            error_kind=kind,
        )

    def _remember(self, result: CycleResult) -> None:
        self.history.append(result)
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]
