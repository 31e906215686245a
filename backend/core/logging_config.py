"""Structured logging configuration using structlog.

Engine modules log through ``structlog.get_logger(__name__)`` with
key/value context. Stdlib loggers (uvicorn, SQLAlchemy, the API
middleware) are routed through the same renderer, so one process emits
one consistent stream: colored console output in development or with
LOG_FORMAT=text, one JSON object per line otherwise.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from app.config import get_settings

# Third-party loggers and the level they are capped at
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "playwright": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _renderer(log_format: str, development: bool):
    if development or log_format == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (default: settings.LOG_LEVEL)
        log_format: ``json`` or ``text`` (default: settings.LOG_FORMAT)
    """
    settings = get_settings()
    level = (level or settings.LOG_LEVEL).upper()
    log_format = (log_format or settings.LOG_FORMAT).lower()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format, settings.is_development),
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for name, cap in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(cap)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING
    )


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """Bind ``fields`` to every log entry emitted in this context.

    Tasks created inside the block copy the context, so a run started
    here keeps the fields for its whole lifetime. A field passed as
    ``None`` is hidden inside the block and restored afterwards.
    """
    current = structlog.contextvars.get_contextvars()
    hidden = {k: current[k] for k, v in fields.items() if v is None and k in current}
    structlog.contextvars.unbind_contextvars(*hidden)
    try:
        with structlog.contextvars.bound_contextvars(**{k: v for k, v in fields.items() if v is not None}):
            yield
    finally:
        structlog.contextvars.bind_contextvars(**hidden)
