"""
Tests for the JSON log formatter and its context fields.

Tests cover:
- ts and level on every record
- cycle_id inside a poll cycle, request_id inside a request
- Context fields absent outside their scope
"""

import json
import logging

from app.logging_utils import CustomJsonFormatter, poll_cycle_context, request_id_ctx


def format_record(message: str = "hello", **extra) -> dict:
    formatter = CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s')
    record = logging.LogRecord("app.poller", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestFormatter:
    """Test the fields added to each log line."""

    def test_base_fields(self):
        data = format_record()

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["name"] == "app.poller"
        assert data["ts"].endswith("Z")

    def test_no_context_fields_outside_scope(self):
        data = format_record()

        assert "cycle_id" not in data
        assert "request_id" not in data

    def test_cycle_id_inside_poll_cycle(self):
        with poll_cycle_context() as cycle_id:
            data = format_record("Found 1 messages on modem", imei="350000000000001")

        assert data["cycle_id"] == cycle_id
        assert data["imei"] == "350000000000001"
        assert "cycle_id" not in format_record()

    def test_request_id_from_context(self):
        token = request_id_ctx.set("req-1")
        try:
            data = format_record()
        finally:
            request_id_ctx.reset(token)

        assert data["request_id"] == "req-1"

    def test_explicit_field_not_overwritten(self):
        with poll_cycle_context():
            data = format_record(cycle_id="given")

        assert data["cycle_id"] == "given"


class TestPollCycleContext:
    """Test cycle id allocation."""

    def test_fresh_id_per_cycle(self):
        with poll_cycle_context() as first:
            pass
        with poll_cycle_context() as second:
            pass

        assert first != second

    def test_reset_after_error(self):
        try:
            with poll_cycle_context():
                raise RuntimeError("cycle failed")
        except RuntimeError:
            pass

        assert "cycle_id" not in format_record()
