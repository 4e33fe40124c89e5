"""
Unit tests for engine error capture (log_pipeline_error, safe_execute).
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from salesflow.agents.error_handler import (
    get_errors, log_pipeline_error, resolve_error, safe_execute,
)


class _BrokenStore:
    def record_error(self, row):
        raise RuntimeError("disk full")


class TestLogPipelineError:

    def test_records_row(self, store):
        row = log_pipeline_error(phase="sequence", error=KeyError("step"), contact_id="con_1",
                                 enrollment_id="enr_1", context={"mode": "send"},
                                 severity="error", store=store)
        assert row["id"] == 1
        assert row["error_type"] == "KeyError"
        stored = get_errors(store, phase="sequence")[0]
        assert stored["enrollment_id"] == "enr_1"
        assert stored["severity"] == "error"

    def test_without_store_returns_row(self):
        row = log_pipeline_error(phase="scoring", error_message="feed offline")
        assert row["error_type"] == "UnknownError"
        assert row["error_message"] == "feed offline"

    def test_unknown_severity_downgrades_to_warning(self, store):
        log_pipeline_error(phase="x", error=ValueError("bad"), severity="fatal", store=store)
        assert get_errors(store)[0]["severity"] == "warning"

    def test_store_failure_is_not_raised(self, caplog):
        row = log_pipeline_error(phase="x", error=ValueError("bad"), store=_BrokenStore())
        assert row["phase"] == "x"
        assert "Failed to record engine error" in caplog.text

    def test_resolve(self, store):
        row = log_pipeline_error(phase="x", error=ValueError("bad"), store=store)
        assert resolve_error(store, row["id"]) is True
        assert get_errors(store) == []
        assert resolve_error(store, 404) is False


class TestSafeExecute:

    def test_returns_value(self, store):
        assert safe_execute(lambda a, b: a + b, args=(2, 3), store=store) == 5
        assert get_errors(store) == []

    def test_returns_fallback_and_records(self, store):
        def boom():
            raise RuntimeError("nope")

        assert safe_execute(boom, phase="call_tasks", contact_id="con_9",
                            fallback=[], store=store) == []
        error = get_errors(store, phase="call_tasks")[0]
        assert error["contact_id"] == "con_9"
        assert error["context"]["function"] == "boom"
