"""
observability/logger.py — turnpilot Structured Logger

structlog routed through stdlib logging. Every line carries timestamp,
level, logger name and event; lines emitted inside Agent.run() also carry
the run_id bound with bind_run().

    from turnpilot.observability.logger import get_logger, setup_logging

    setup_logging(level="DEBUG", json_format=False)
    log = get_logger(__name__)
    log.info("tool_bus.execute", tool="datetime_tool", attempt=1)

The engine never calls setup_logging() itself; the embedding application
decides where lines go. Without it structlog's defaults print to stdout.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

LOG_FILE_NAME = "turnpilot.log"


def _shared_processors() -> list[Any]:
    """Processors applied to structlog events and to foreign stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _formatter(renderer: Any, pre_chain: list[Any]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Install the turnpilot logging pipeline. Safe to call again; handlers are replaced.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for the rotating ``turnpilot.log`` file (always JSON).
        json_format:    Console renders JSON when True, coloured key=value when False.
        console_output: Also write to stdout.
        max_bytes:      Rotation threshold of the log file.
        backup_count:   Rotated files kept.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    threshold = getattr(logging, level.upper(), logging.INFO)
    pre_chain = _shared_processors()

    file_handler = logging.handlers.RotatingFileHandler(
        filename=directory / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
    handlers: list[logging.Handler] = [file_handler]

    if console_output:
        console_renderer = (
            structlog.processors.JSONRenderer()
            if json_format
            else structlog.dev.ConsoleRenderer(colors=True)
        )
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(_formatter(console_renderer, pre_chain))
        handlers.append(stream)

    for handler in handlers:
        handler.setLevel(threshold)
    logging.basicConfig(format="%(message)s", level=threshold, handlers=handlers, force=True)

    structlog.configure(
        processors=pre_chain + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging_from_settings(settings) -> None:
    """Apply the ``logging`` section of a Settings object."""
    cfg = settings.logging
    setup_logging(
        level=cfg.level,
        log_dir=cfg.log_dir,
        json_format=cfg.json_format,
        console_output=cfg.console_output,
        max_bytes=cfg.max_file_size_mb * 1024 * 1024,
        backup_count=cfg.backup_count,
    )


def get_logger(name: str = "turnpilot", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """Logger for ``name`` with ``initial_values`` bound to every line it emits."""
    bound = structlog.get_logger(name)
    return bound.bind(**initial_values) if initial_values else bound


def bind_run(run_id: str) -> None:
    """Attach run_id to every line logged from this async context and its child tasks."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def clear_run() -> None:
    structlog.contextvars.unbind_contextvars("run_id")
