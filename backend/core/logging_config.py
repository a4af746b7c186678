"""Structured logging for the plan engine (structlog over stdlib logging).

Log lines carry whatever is bound in the current context: ``request_id``
for API calls, ``user_id`` and ``plan_id`` while a run is advancing.
"""

import logging
import sys

import structlog
from app.config import Settings, get_settings

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(settings: Settings):
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings = None) -> None:
    """Route structlog and stdlib records through one stdout handler.

    Console output in development or with ``LOG_FORMAT=text``, JSON lines
    otherwise.
    """
    settings = settings or get_settings()
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings),
            ],
            foreign_pre_chain=shared,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_request_context(request_id: str) -> None:
    structlog.contextvars.bind_contextvars(request_id=request_id)


def bind_run_context(user_id: str, plan_id: str) -> None:
    """Attach the run identity to every log line emitted in this task."""
    structlog.contextvars.bind_contextvars(user_id=user_id, plan_id=plan_id)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("user_id", "plan_id")
