"""
Logging configuration for dbvault
"""

import logging
from collections.abc import MutableMapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from dbvault.config.settings import Settings

# Event keys whose values must never reach a log sink
SENSITIVE_KEYS = frozenset(
    {"encryption_key", "backup_encryption_key", "key", "password", "secret", "token"}
)


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking values of sensitive keys"""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = "[REDACTED]"
    return event_dict


def setup_logging(settings: "Settings | None" = None) -> None:
    """Set up structured logging with rich formatting"""
    if settings is None:
        from dbvault.config import get_settings

        settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
    ]
    if settings.log_file is not None:
        log_file = Path(settings.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )

    # APScheduler logs every job submission at INFO
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance"""
    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(name))


class LoggerMixin:
    """Mixin that gives a class a structlog logger named after it"""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        return get_logger(f"dbvault.{self.__class__.__name__}")
