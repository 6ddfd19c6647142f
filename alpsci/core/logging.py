"""Logging setup — structlog events rendered through stdlib handlers.

Every engine and service logs dotted events (``sync.completed``,
``stats.cache_hit``) via ``structlog.get_logger``. This module decides how
they are rendered and which third-party loggers are muted.
"""

from __future__ import annotations

import logging
import logging.config
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

# Library loggers kept at WARNING unless something goes wrong.
_QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "asyncpg",
    "aiosqlite",
    "httpx",
    "httpcore",
    "uvicorn.access",
)


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=log_format != "plain")


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    ``ALPSCI_LOG_LEVEL`` (default INFO) and ``ALPSCI_LOG_FORMAT``
    (console | plain | json, default console) apply unless the caller
    passes *level* / *log_format*, as the CLI does for ``--verbose``.
    Output goes to stderr so CLI results on stdout stay parseable.
    """
    log_level = (level or os.environ.get("ALPSCI_LOG_LEVEL", "INFO")).upper()
    fmt = (log_format or os.environ.get("ALPSCI_LOG_FORMAT", "console")).lower()

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    loggers: dict[str, dict[str, Any]] = {name: {"level": "WARNING"} for name in _QUIET_LOGGERS}
    loggers["alpsci"] = {"level": log_level}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "alpsci": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": pre_chain,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        _renderer(fmt),
                    ],
                },
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": "alpsci",
                },
            },
            "root": {"handlers": ["stderr"], "level": log_level},
            "loggers": loggers,
        }
    )


@contextmanager
def bound_build(build: Any) -> Iterator[None]:
    """Tag every event logged inside the block with the build's identity."""
    tokens = structlog.contextvars.bind_contextvars(
        tenant_id=str(build.tenant_id),
        build_id=str(build.id),
        repo=f"{build.organization}/{build.repository}",
    )
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
