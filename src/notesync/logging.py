"""Logging for notesync: structlog events rendered through stdlib handlers.

Every event, including those from third-party libraries, goes through one
shared processor chain and then to whichever sinks are enabled:

- ``notesync.log``: human-readable, all events
- ``sync.log``: JSON lines from ``notesync.sync.*`` (polls, reconcile
  decisions, outbound writes), when ``[logging] sync_log`` is on
- stderr: human-readable, only when the CLI runs with ``--verbose``

Sync tasks bind their note key with ``structlog.contextvars``, so events
emitted from inside a poller, reconciler or writer carry ``key`` without
passing it around.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from notesync.config import LoggingConfig

SYNC_LOGGER = "notesync.sync"
_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_pre_chain: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


def _formatter(*processors: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *processors],
        foreign_pre_chain=_pre_chain,
    )


def _rotating(path: Path, config: LoggingConfig) -> RotatingFileHandler:
    return RotatingFileHandler(
        path,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )


def setup_logging(
    config: LoggingConfig,
    log_dir: Path | None = None,
    *,
    console: bool = False,
) -> None:
    """Configure structlog and the root logger from *config*.

    With *log_dir* unset no files are written; with *console* events are
    also echoed to stderr.  Calling it again replaces the previous handlers.
    """
    structlog.configure(
        processors=[
            *_pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    human = _formatter(structlog.dev.ConsoleRenderer(colors=False))

    root = logging.getLogger()
    root.setLevel(config.level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        main_handler = _rotating(log_dir / "notesync.log", config)
        main_handler.setFormatter(human)
        root.addHandler(main_handler)

        if config.sync_log:
            sync_handler = _rotating(log_dir / "sync.log", config)
            sync_handler.setFormatter(
                _formatter(structlog.processors.format_exc_info, structlog.processors.JSONRenderer())
            )
            sync_handler.addFilter(logging.Filter(SYNC_LOGGER))
            root.addHandler(sync_handler)

    if console:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(human)
        root.addHandler(stderr_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(config.level, logging.WARNING))
