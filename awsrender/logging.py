"""Logging configuration for awsrender.

Structured logging via loguru. The package is silent until a caller enables
it; the command line does so with the level given by ``--log-level``.
Records bound with ``instance_id``, ``address`` or ``work_dir`` show those
values after the source location.

Example:
    from awsrender.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="awsrender.log"))
    try:
        ...
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from loguru import logger

# Disable by default (library behavior)
logger.disable("awsrender")

LogLevel: TypeAlias = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

_CONTEXT_KEYS = ("instance_id", "address", "work_dir")


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>"
    "<dim>{extra[_ctx]}</dim> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration for one command-line run.

    Attributes:
        level: Minimum console log level.
        file: Optional log file; it always receives DEBUG and above.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "WARNING"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Install the configured sinks and return their handler IDs."""
    # Remove default handler (ID=0) that logs to stderr without filter
    logger.remove()

    logger.enable("awsrender")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))
    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="awsrender",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # Keeps key paths and host keys out of tracebacks
            filter="awsrender",
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove the handlers from :func:`setup_logging` and silence the package."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("awsrender")
