"""Process-wide log setup for calsync.

Every module logs through ``logging.getLogger(__name__)``. ``configure_logging``
puts a structlog ``ProcessorFormatter`` on the root logger's handlers, so
plain stdlib records come out rendered either for a terminal (``text``) or
as JSON lines (``json``). Each record carries the engine name and, inside a
span, the OTel trace and span ids.

With ``log_root`` set, a JSON copy of every record also goes to
``{log_root}/calsync.log``.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

LOG_FILE_NAME = "calsync.log"

# Kept at WARNING so request lines from the HTTP client don't drown sync output.
_NOISE_LOGGERS = ("httpx", "httpcore")

_engine_context: ContextVar[str | None] = ContextVar("calsync_engine", default=None)


def set_engine_context(name: str) -> None:
    _engine_context.set(name)


def get_engine_context() -> str | None:
    return _engine_context.get()


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Attach ``engine`` and, when a span is recording, ``trace_id``/``span_id``."""
    event_dict["engine"] = _engine_context.get()
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _formatter(renderer: structlog.types.Processor, time_fmt: str) -> logging.Formatter:
    pre_chain: list[structlog.types.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt, utc=time_fmt == "iso"),
        add_sync_context,
    ]
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    engine_name: str | None = None,
) -> None:
    """Replace the root logger's handlers with calsync's console (and file) handlers.

    An unknown *level* falls back to INFO. Calling this again swaps the
    handlers rather than stacking new ones.
    """
    if engine_name:
        set_engine_context(engine_name)

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    else:
        console.setFormatter(_formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S"))
    handlers: list[logging.Handler] = [console]

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        handlers.append(file_handler)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
