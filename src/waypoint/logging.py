"""Structured logging for the CLI and the ingestion service.

``configure_logging()`` sets up structlog once per process and binds a
``run_id`` that appears on every event of that run.  It also installs one
stdlib handler on the root logger that renders through the same structlog
processors, so uvicorn, httpx and asyncio records come out in the same
format as waypoint's own events.

Rendered fields (format=json)::

    {"event": "batch dropped", "reason": "permanent", "records": 500,
     "run_id": "a3f7b29c", "level": "error", "logger": "waypoint.writer",
     "timestamp": "2026-10-17T09:12:03.118Z"}

format=text uses structlog's ConsoleRenderer instead, for local runs.

Output always goes to stderr; stdout belongs to CLI command output.
"""

import logging as _stdlib
import sys
import uuid

import structlog

from waypoint.config import Settings, get_settings

# Name given to the root handler so reconfiguring replaces it instead of stacking.
_HANDLER_NAME = "waypoint-structlog"

# Chatty third-party loggers capped at WARNING unless the run is at DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _name_logger(
    _logger: object, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Move the ``logger_name`` bound by ``get_logger`` to the ``logger`` key."""
    name = event_dict.pop("logger_name", None)
    if name is not None:
        event_dict.setdefault("logger", name)
    return event_dict


_SHARED: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def configure_logging(settings: Settings | None = None) -> str:
    """Configure structlog and stdlib logging; return the new run_id.

    Safe to call more than once: the pipeline is rebuilt, the root handler is
    replaced, and a fresh run_id is bound.
    """
    if settings is None:
        settings = get_settings()

    level = getattr(_stdlib, settings.logging.level, _stdlib.INFO)
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if settings.logging.format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[*_SHARED, _name_logger, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    handler = _stdlib.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*_SHARED, structlog.stdlib.add_logger_name],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = _stdlib.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        _stdlib.getLogger(name).setLevel(max(level, _stdlib.WARNING))

    run_id = uuid.uuid4().hex[:8]
    structlog.contextvars.bind_contextvars(run_id=run_id)
    return run_id


def get_logger(name: str = "waypoint") -> structlog.BoundLogger:
    """Return a lazy structlog logger rendered with ``logger=<name>``; pass ``__name__``."""
    return structlog.get_logger(logger_name=name)
