"""
Unit tests for the log formatters.
"""

import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from salesflow.logging_config import JSONFormatter, TextFormatter, get_agent_logger


def _record(msg="Step sent", **extra):
    record = logging.LogRecord("salesflow.agents.sequence_engine", logging.INFO,
                               __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:

    def test_text_appends_structured_extras(self):
        line = TextFormatter().format(_record(contact_id="con_1", mode="send", phase=""))
        assert "[salesflow.agents.sequence_engine] INFO: Step sent" in line
        assert line.endswith("contact_id=con_1 mode=send")

    def test_text_without_extras(self):
        assert TextFormatter().format(_record()).endswith("INFO: Step sent")

    def test_json_line(self):
        entry = json.loads(JSONFormatter().format(_record(enrollment_id="enr_1",
                                                          duration_ms=12)))
        assert entry["message"] == "Step sent"
        assert entry["level"] == "INFO"
        assert entry["enrollment_id"] == "enr_1"
        assert entry["duration_ms"] == 12
        assert "contact_id" not in entry

    def test_json_exception(self):
        try:
            raise KeyError("step")
        except KeyError:
            record = _record()
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        assert entry["exception"]["type"] == "KeyError"

    def test_agent_logger_name(self):
        assert get_agent_logger("call_scorer").name == "salesflow.agents.call_scorer"
