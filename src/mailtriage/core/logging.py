"""Structured logging for the mail triage engine.

Log context (``batch_id`` for a classification batch, ``task_id`` for a
background task, ``email_id`` for one item) is bound with structlog's
contextvars support, so every entry emitted inside the block carries it and
tasks spawned from the block inherit it.

Usage:
    from mailtriage.core.logging import batch_context, get_logger

    logger = get_logger(__name__)

    with batch_context():
        logger.info("email_triaged", folder="Feed")
"""

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.contextvars import bound_contextvars, get_contextvars

# Client libraries that log every request or poll at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "imapclient", "apscheduler", "aiosqlite")


def current_batch_id() -> str | None:
    """The batch_id bound in this context, if any."""
    return get_contextvars().get("batch_id")


@contextmanager
def batch_context() -> Iterator[str]:
    """Bind a fresh ``batch_id`` for the duration of a classification batch.

    A batch started inside another batch (the scheduler job calling
    ``classify_unprocessed``) keeps the outer id.
    """
    existing = current_batch_id()
    if existing is not None:
        yield existing
        return

    batch_id = uuid.uuid4().hex[:12]
    with bound_contextvars(batch_id=batch_id):
        yield batch_id


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_level: Level for mailtriage loggers (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines for the server, coloured console output for the CLI
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
