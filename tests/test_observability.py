"""
Structured logging tests.
"""

import io
import json

import pytest

from procvm.observability import (
    Layer,
    LogLevel,
    ProcLogger,
    get_correlation_id,
    set_correlation_id,
    timed_operation,
)


def make_logger(name, fmt="json"):
    stream = io.StringIO()
    logger = ProcLogger(name, Layer.RUNTIME, level=LogLevel.DEBUG, fmt=fmt)
    logger._logger.handlers[0].stream = stream
    logger._logger.handlers[0].fmt = fmt
    return logger, stream


class TestStructuredLogging:
    """Tests for the handler output."""

    def test_json_event(self):
        logger, stream = make_logger("json-event")
        token = set_correlation_id("corr-test")
        try:
            logger.warning("Execution aborted", error_code="OutOfResources", pc=4)
        finally:
            token.var.reset(token)

        event = json.loads(stream.getvalue())
        assert event["level"] == "warning"
        assert event["layer"] == "runtime"
        assert event["logger"] == "procvm.runtime.json-event"
        assert event["correlation_id"] == "corr-test"
        assert event["error_code"] == "OutOfResources"
        assert event["context"] == {"pc": 4}

    def test_text_event(self):
        logger, stream = make_logger("text-event", fmt="text")
        logger.info("Validation passed", blocks=4)
        line = stream.getvalue().strip()
        assert "INFO" in line
        assert line.endswith("Validation passed blocks=4")

    def test_level_filtering(self):
        stream = io.StringIO()
        logger = ProcLogger("quiet", Layer.CFG, level=LogLevel.ERROR, fmt="json")
        logger._logger.handlers[0].stream = stream
        logger.warning("dropped")
        assert stream.getvalue() == ""
        assert not logger.is_enabled_for(LogLevel.INFO)

    def test_level_from_config(self):
        from procvm.config import get_config_manager

        get_config_manager().set("observability.log_level", "debug")
        logger = ProcLogger("configured", Layer.STACK)
        assert logger.is_enabled_for(LogLevel.DEBUG)

    def test_correlation_id_created_on_demand(self):
        token = set_correlation_id("")
        try:
            cid = get_correlation_id()
            assert cid.startswith("corr-")
            assert get_correlation_id() == cid
        finally:
            token.var.reset(token)


class TestTimedOperation:
    """Tests for the timing decorator."""

    def test_success(self):
        logger, stream = make_logger("timed-ok")

        @timed_operation(logger, "work")
        def work():
            return 5

        assert work() == 5
        event = json.loads(stream.getvalue())
        assert event["operation"] == "work"
        assert event["message"] == "Operation work completed"
        assert event["duration_ms"] >= 0

    def test_failure_is_logged_and_raised(self):
        logger, stream = make_logger("timed-fail")

        @timed_operation(logger, "work")
        def work():
            raise KeyError("x")

        with pytest.raises(KeyError):
            work()
        event = json.loads(stream.getvalue())
        assert event["level"] == "warning"
        assert event["message"] == "Operation work failed"
