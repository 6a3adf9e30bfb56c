"""
Unit tests for decision events and JSON logging (common.events, common.logging_setup)
"""

import json
import logging
import os
import sys

import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InsufficientPoints, TracerError
from common.events import DECISION, FALLBACK, REJECTED, DecisionEvent, EventRecorder, emit
from common.logging_setup import JsonFormatter, setup_logging


class TestEmit:
    """Logging plus callback delivery"""

    def test_callback_receives_event(self):
        """The callback sees the same event that was logged"""
        recorder = EventRecorder()
        event = emit(recorder, logging.getLogger("test.events"), "pins", FALLBACK, "too few pristine pads", pristine=2)
        assert recorder.events == [event]
        assert event.data == {"pristine": 2}
        assert recorder.of_kind(FALLBACK) == [event]
        assert recorder.for_stage("pins") == [event]
        assert recorder.for_stage("vias") == []

    def test_no_callback(self):
        """Without a callback the event is only logged"""
        event = emit(None, logging.getLogger("test.events"), "vias", DECISION, "detected", count=3)
        assert event.kind == DECISION

    def test_log_record_carries_structured_fields(self, caplog):
        """Fallbacks are logged at INFO with the event in `extra`"""
        with caplog.at_level(logging.INFO, logger="test.events"):
            emit(None, logging.getLogger("test.events"), "matching", REJECTED, "outlier", index=4)
        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert record.extra == {"stage": "matching", "kind": REJECTED, "message": "outlier", "data": {"index": 4}}

    def test_unknown_kind(self):
        """Only the four event kinds exist"""
        with pytest.raises(ValueError, match="unknown event kind"):
            DecisionEvent(stage="x", kind="warning", message="m")

    def test_clear(self):
        recorder = EventRecorder()
        recorder(DecisionEvent(stage="x", kind=DECISION, message="m"))
        recorder.clear()
        assert recorder.events == []


class TestJsonFormatter:
    """One JSON object per log line"""

    def test_payload(self):
        """Level, logger name, message and extra fields are serialised"""
        record = logging.LogRecord("via.match", logging.INFO, __file__, 1, "matched %d", (5,), None)
        record.extra = {"matched": 5}
        payload = json.loads(JsonFormatter().format(record))
        assert payload["lvl"] == "INFO"
        assert payload["name"] == "via.match"
        assert payload["msg"] == "matched 5"
        assert payload["extra"] == {"matched": 5}
        assert isinstance(payload["t"], int)
        assert "stage" not in payload

    def test_event_fields_are_lifted(self):
        """Stage and kind of a decision event appear at the top level"""
        record = logging.LogRecord("component.pins", logging.INFO, __file__, 1, "pin 1 located", (), None)
        record.extra = {"stage": "pins", "kind": "decision", "message": "pin 1 located", "data": {"corner": 2}}
        payload = json.loads(JsonFormatter().format(record))
        assert payload["stage"] == "pins"
        assert payload["kind"] == "decision"
        assert payload["extra"]["data"] == {"corner": 2}


class TestSetupLogging:
    """Root logger configuration"""

    def test_explicit_level_applies_after_import(self):
        """Modules configure logging on import; an explicit level still wins later"""
        root = logging.getLogger()
        before = root.level
        try:
            setup_logging()
            setup_logging("DEBUG")
            assert root.level == logging.DEBUG
            setup_logging("bogus")
            assert root.level == logging.INFO
        finally:
            root.setLevel(before)

    def test_log_file_handler(self, tmp_path):
        """A log file is attached once and receives JSON lines"""
        root = logging.getLogger()
        path = tmp_path / "logs" / "run.log"
        try:
            setup_logging(log_file=str(path))
            setup_logging(log_file=str(path))
            handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
            assert len(handlers) == 1
            logging.getLogger("test.file").warning("written")
            handlers[0].flush()
            line = path.read_text(encoding="utf-8").strip().splitlines()[-1]
            assert json.loads(line)["msg"] == "written"
        finally:
            for h in [h for h in root.handlers if isinstance(h, logging.FileHandler)]:
                root.removeHandler(h)
                h.close()


class TestErrors:
    """Exception hierarchy"""

    def test_insufficient_points(self):
        """Required and actual counts are kept on the exception"""
        err = InsufficientPoints(3, 1)
        assert isinstance(err, TracerError)
        assert err.to_dict() == {
            "error": "InsufficientPoints",
            "message": "need at least 3 points, got 1",
            "details": {"required": 3, "got": 1},
        }
