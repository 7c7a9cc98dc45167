"""Tests for JSON logging, context binding and rate limiting."""

import json
import logging

from devhub.app.logging import (
    JsonFormatter,
    RateLimitFilter,
    clear_trace_context,
    get_project_id,
    project_context,
    set_trace_id,
)
from devhub.core.logging_schema import LogEvent


def _record(msg: str = "Evicted %s", level: int = logging.WARNING, **extra) -> logging.LogRecord:
    record = logging.LogRecord("devhub.control.pool", level, __file__, 1, msg, ("m1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestProjectContext:
    def test_binds_and_restores(self) -> None:
        assert get_project_id() is None
        with project_context("p1"):
            assert get_project_id() == "p1"
            with project_context("p2"):
                assert get_project_id() == "p2"
            assert get_project_id() == "p1"
        assert get_project_id() is None


class TestRateLimitFilter:
    def test_limits_repeats_per_event(self) -> None:
        rate_limit = RateLimitFilter(rate_per_minute=2)
        passed = [
            rate_limit.filter(_record(event=LogEvent.POOL_EVICTED)) for _ in range(4)
        ]
        assert passed == [True, True, False, False]

    def test_distinct_events_counted_separately(self) -> None:
        rate_limit = RateLimitFilter(rate_per_minute=1)
        assert rate_limit.filter(_record(event=LogEvent.POOL_EVICTED))
        assert rate_limit.filter(_record(event=LogEvent.POOL_RELEASED))

    def test_errors_always_pass(self) -> None:
        rate_limit = RateLimitFilter(rate_per_minute=1)
        for _ in range(3):
            assert rate_limit.filter(_record(level=logging.ERROR))

    def test_reports_dropped_count_after_window(self) -> None:
        rate_limit = RateLimitFilter(rate_per_minute=1, window=60.0)
        assert rate_limit.filter(_record())
        assert not rate_limit.filter(_record())
        assert not rate_limit.filter(_record())

        rate_limit._window = 0.0
        record = _record()
        assert rate_limit.filter(record)
        assert record.suppressed == 2


class TestJsonFormatter:
    def test_standard_fields_and_context(self) -> None:
        formatter = JsonFormatter()
        set_trace_id("abc123")
        try:
            with project_context("p1"):
                line = json.loads(formatter.format(_record(event=LogEvent.POOL_EVICTED)))
        finally:
            clear_trace_context()

        assert line["message"] == "Evicted m1"
        assert line["level"] == "WARNING"
        assert line["logger"] == "devhub.control.pool"
        assert line["trace_id"] == "abc123"
        assert line["project_id"] == "p1"
        assert line["event"] == "pool_evicted"
        assert "schema_version" in line
        assert "service" in line

    def test_explicit_project_id_wins(self) -> None:
        formatter = JsonFormatter()
        with project_context("p1"):
            line = json.loads(formatter.format(_record(project_id="p9")))
        assert line["project_id"] == "p9"
