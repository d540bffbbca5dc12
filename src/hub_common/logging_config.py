"""Process logging for the manifest registry.

Every record carries the service name, the active reconciliation cycle and
step (when one is running) and the OpenTelemetry trace ids, so a cycle can be
followed across steps in either the text or the JSON output.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from opentelemetry import trace

TEXT_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(service_name)s] [cycle=%(cycle_id)s step=%(step)s] %(name)s: %(message)s"
JSON_LOG_FORMAT = "json"

DEFAULT_LOG_LEVEL = "INFO"
LOG_OFF_LEVEL = "OFF"

# Libraries whose INFO output drowns cycle logs
NOISY_LOGGERS = ("aiohttp.access", "aiosqlite", "asyncio", "sqlalchemy.engine")

_cycle_id: ContextVar[Optional[str]] = ContextVar("cycle_id", default=None)
_step: ContextVar[Optional[str]] = ContextVar("step", default=None)


@contextmanager
def cycle_context(cycle_id: Any) -> Iterator[None]:
    """Tag every record emitted inside the block with ``cycle_id``."""
    token = _cycle_id.set(str(cycle_id))
    try:
        yield
    finally:
        _cycle_id.reset(token)


@contextmanager
def step_context(step: str) -> Iterator[None]:
    token = _step.set(step)
    try:
        yield
    finally:
        _step.reset(token)


class RegistryContextFilter(logging.Filter):
    """Stamps service, cycle, step and trace fields onto each record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.cycle_id = _cycle_id.get() or "-"
        record.step = _step.get() or "-"

        span = trace.get_current_span()
        context = span.get_span_context() if span is not None else None
        if context is not None and context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = None
            record.span_id = None
        return True


class RegistryJSONFormatter(logging.Formatter):
    """One JSON object per line; cycle and trace fields only when set."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service_name", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in ("cycle_id", "step"):
            value = getattr(record, field, None)
            if value and value != "-":
                entry[field] = value
        for field in ("trace_id", "span_id"):
            value = getattr(record, field, None)
            if value:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _level_from_name(name: str) -> int:
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    service_name: str = "manifest-service",
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
) -> None:
    """
    Configure root logging for the process.

    Args:
        service_name: Name stamped on every record
        log_level: Level name; falls back to ``LOG_LEVEL``. ``OFF`` silences logging
        log_format: ``json`` or a logging format string; falls back to ``LOG_FORMAT``
    """
    level_name = (log_level or os.environ.get("LOG_LEVEL", DEFAULT_LOG_LEVEL)).upper()
    format_name = log_format or os.environ.get("LOG_FORMAT", TEXT_LOG_FORMAT)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if level_name == LOG_OFF_LEVEL:
        root_logger.setLevel(logging.CRITICAL + 1)
        print(f"Logging is OFF for {service_name}.", file=sys.stderr)
        return

    root_logger.setLevel(_level_from_name(level_name))

    handler = logging.StreamHandler(sys.stdout)
    if format_name.lower() == JSON_LOG_FORMAT:
        handler.setFormatter(RegistryJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(format_name))
    handler.addFilter(RegistryContextFilter(service_name))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured for {service_name} at {level_name}")
