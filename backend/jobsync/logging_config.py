"""Structured logging for the agent commands and the API server."""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]

# Chatty client libraries; their request lines drown out the sync events
_QUIET_LOGGERS = ("httpcore", "httpx", "openai", "urllib3", "sqlalchemy.engine")


def _handler(handler: logging.Handler, renderer: structlog.types.Processor, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_SHARED_PROCESSORS)
    )
    return handler


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure structlog and stdlib logging.

    Console output is human-readable. Each agent command also gets a JSON
    lines file (``~/.jobsync/<command>.log`` unless ``LOG_FILE`` is set) so a
    cron-driven run can be inspected after the fact.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)
    root_logger.addHandler(
        _handler(
            logging.StreamHandler(sys.stdout),
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
            log_level,
        )
    )

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(
            _handler(logging.FileHandler(path, encoding="utf-8"), structlog.processors.JSONRenderer(), log_level)
        )

    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


@contextmanager
def bind_run_context(command: str, **fields: Any) -> Iterator[str]:
    """Bind ``run_id`` and ``command`` to every event logged inside the block.

    Usage::

        with bind_run_context("local-sync") as run_id:
            run_sync(...)

    The batch workers copy the caller's context, so their events carry the
    same ``run_id``.
    """
    run_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(run_id=run_id, command=command, **fields):
        yield run_id
