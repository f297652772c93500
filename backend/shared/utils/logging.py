"""
Structured logging for the LiveFoot services.

Every module logs through structlog with an event name plus key/value fields
(``logger.info("match_updated", match_id=501, score="1-0")``). Stdlib records
from uvicorn, httpx and SQLAlchemy are routed through the same renderer.
Context bound with ``bound_context`` (request ids, sync runs) is attached to
every line emitted inside the block, including from library code.
"""
from __future__ import annotations

import functools
import logging
import sys
import uuid
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, TypeVar

import structlog

from shared.config import Environment, get_settings

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncio", "sqlalchemy.engine")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(process: str, **static_fields: Any) -> None:
    """
    Configure logging once per process.

    ``process`` names the entrypoint (``api``, ``resync``) and is bound to
    every line together with the instance id and any ``static_fields``.
    Dev environments get the colored console renderer, everything else JSON.
    """
    settings = get_settings()
    shared = _shared_processors()

    renderer: structlog.types.Processor
    if settings.environment == Environment.DEV:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    fields: dict[str, Any] = {"service": process, **static_fields}
    if settings.instance_id:
        fields["instance_id"] = settings.instance_id
    structlog.contextvars.bind_contextvars(**fields)


@contextmanager
def bound_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every log line emitted by this task inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


@contextmanager
def sync_run_context(kind: str) -> Iterator[str]:
    """Tag one sync run (``today``, ``range``, ``resync``) with a short run id."""
    run_id = uuid.uuid4().hex[:8]
    with bound_context(sync_kind=kind, sync_run=run_id):
        yield run_id


T = TypeVar("T")


def in_sync_run(kind: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator form of ``sync_run_context`` for coroutine methods."""

    def decorate(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            with sync_run_context(kind):
                return await fn(*args, **kwargs)

        return wrapper

    return decorate


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
