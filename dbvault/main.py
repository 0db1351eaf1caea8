"""
Main entry point for dbvault
"""

import asyncio
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import ValidationError

from dbvault import __version__
from dbvault.backup import BackupLifecycle
from dbvault.config import get_settings
from dbvault.utils import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from dbvault.config.settings import Settings


@dataclass
class RuntimeContext:
    """Container for runtime components."""

    settings: "Settings"
    lifecycle: BackupLifecycle


def validate_paths(settings: "Settings", logger: "BoundLogger") -> None:
    """Check the source database and prepare the backup directory."""
    if not settings.database_path.exists():
        # Cycles fail with SnapshotError until the database appears
        logger.warning(
            "Database file does not exist yet", path=str(settings.database_path)
        )

    if not settings.backup_directory.exists():
        logger.info(
            "Creating backup directory", path=str(settings.backup_directory)
        )
        settings.backup_directory.mkdir(parents=True, exist_ok=True)

    logger.info("Configuration validated successfully")
    logger.info("Environment", env=settings.environment)


async def build_runtime_context(
    settings: "Settings", logger: "BoundLogger"
) -> RuntimeContext:
    lifecycle = BackupLifecycle()
    lifecycle.initialize(settings)
    lifecycle.install_signal_handlers()
    logger.info("Backup scheduler status", **lifecycle.status().to_dict())
    return RuntimeContext(settings=settings, lifecycle=lifecycle)


async def run_application(context: RuntimeContext, logger: "BoundLogger") -> None:
    """Block until the lifecycle is shut down by a signal."""
    try:
        await context.lifecycle.wait_stopped()
    finally:
        # Covers cancellation paths that bypass the signal handler
        await context.lifecycle.shutdown()
        logger.info("All services stopped")


async def main() -> None:
    """Main application entry point."""
    try:
        settings = get_settings()
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings)
    logger = get_logger("main")
    logger.info("Starting dbvault", version=__version__)

    try:
        validate_paths(settings, logger)
        context = await build_runtime_context(settings, logger)
    except Exception as exc:
        logger.error("Failed to start backup service", error=str(exc), exc_info=True)
        sys.exit(1)

    await run_application(context, logger)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\ndbvault stopped by user")
        sys.exit(0)
