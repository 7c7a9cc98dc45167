"""JSON logging for the control plane.

Every line carries the service name, the schema version, and whatever
context is bound at the call site:
- trace_id: one per background tick or externally triggered operation
- project_id: bound while the orchestrator works on a project

Warm pool maintenance can repeat the same warning for every entry on every
tick, so identical (logger, event) pairs are rate limited per minute.
"""

import logging
import sys
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pythonjsonlogger import jsonlogger

from devhub.app.config import get_settings

_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_project_id: ContextVar[str | None] = ContextVar("project_id", default=None)


# =============================================================================
# Context
# =============================================================================


def get_trace_id() -> str | None:
    return _trace_id.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Start a trace. A new 16-hex-digit id is generated when none is given."""
    tid = trace_id or uuid4().hex[:16]
    _trace_id.set(tid)
    return tid


def clear_trace_context() -> None:
    _trace_id.set(None)
    _project_id.set(None)


def get_project_id() -> str | None:
    return _project_id.get()


@contextmanager
def project_context(project_id: str) -> Iterator[None]:
    """Tag log lines emitted inside the block with project_id.

    Background tasks spawned inside the block inherit the binding
    (asyncio copies the context at task creation).
    """
    token = _project_id.set(project_id)
    try:
        yield
    finally:
        _project_id.reset(token)


# =============================================================================
# Filters and formatting
# =============================================================================


class RateLimitFilter(logging.Filter):
    """Drop repeats of the same (logger, event) beyond rate_per_minute.

    Records without an event are keyed by their message template. ERROR and
    above always pass. When a key comes back under its limit, the first
    record that passes reports how many were dropped in the meantime.
    """

    def __init__(self, rate_per_minute: int = 100, window: float = 60.0) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._window = window
        self._seen: dict[str, deque[float]] = {}
        self._dropped: dict[str, int] = {}

    def _key(self, record: logging.LogRecord) -> str:
        event = getattr(record, "event", None)
        return f"{record.name}:{event or record.msg}"

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = self._key(record)
        now = time.monotonic()
        seen = self._seen.setdefault(key, deque())
        while seen and now - seen[0] >= self._window:
            seen.popleft()

        if len(seen) >= self.rate_per_minute:
            self._dropped[key] = self._dropped.get(key, 0) + 1
            return False

        seen.append(now)
        if dropped := self._dropped.pop(key, 0):
            record.suppressed = dropped
        return True


class JsonFormatter(jsonlogger.JsonFormatter):
    """python-json-logger formatter with devhub's standard fields."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        settings = get_settings()
        self._schema_version = settings.logging.schema_version
        self._service = settings.logging.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service
        log_record["schema_version"] = self._schema_version

        if trace_id := get_trace_id():
            log_record["trace_id"] = trace_id
        # Explicit extra={"project_id": ...} wins over the bound context
        if "project_id" not in log_record and (project_id := get_project_id()):
            log_record["project_id"] = project_id

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(level: int | None = None) -> None:
    """Install the JSON handler on the root logger.

    Args:
        level: Log level. Defaults to LOGGING_LEVEL from settings.
    """
    settings = get_settings()
    if level is None:
        level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RateLimitFilter(settings.logging.rate_limit_per_minute))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Readiness and health polling log every request at INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
