"""Utility modules for dbvault"""

from .formatting import format_size
from .logger import (
    LoggerMixin,
    get_logger,
    setup_logging,
)

__all__ = [
    "LoggerMixin",
    "format_size",
    "get_logger",
    "setup_logging",
]
