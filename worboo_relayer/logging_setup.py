"""
structlog configuration for the relayer process.

Console output goes to stderr through the dev renderer. When a log file is
configured, the same events are also written as JSON lines to a
size-rotated file.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

import structlog

DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUPS = 5


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    max_bytes: int = DEFAULT_LOG_MAX_BYTES,
    backup_count: int = DEFAULT_LOG_BACKUPS,
    json_console: bool = False,
) -> None:
    """Route structlog and stdlib logging through the same handlers."""
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    console_renderer = (
        structlog.processors.JSONRenderer()
        if json_console
        else structlog.dev.ConsoleRenderer()
    )
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(shared_processors, console_renderer))
    handlers: list[logging.Handler] = [console]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(
            _formatter(
                shared_processors,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            )
        )
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(level.upper())


def _formatter(
    shared_processors: list[structlog.types.Processor],
    *processors: structlog.types.Processor,
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *processors,
        ],
    )
