import io
import json
import logging

import pytest

from chainvec.errors import ConfigError
from chainvec.observability import (
    Layer,
    Reporter,
    StructuredHandler,
    configure_logging,
    get_logger,
)


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    root = logging.getLogger("chainvec")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.propagate = True


class TestReporter:
    def test_tees_to_every_sink(self):
        a, b = io.StringIO(), io.StringIO()
        r = Reporter([a, b], prefix="v.json")
        r.logf("executing %d tipsets", 3)
        assert a.getvalue() == b.getvalue()
        assert "INFO  [v.json] executing 3 tipsets" in a.getvalue()
        assert not r.failed

    def test_errorf_marks_failure_and_collects_diffs(self):
        r = Reporter([io.StringIO()])
        r.errorf("expected %s, got %s", "x", "y")
        r.errorf("plain 100% message")
        assert r.failed
        assert r.diffs == ["expected x, got y", "plain 100% message"]

    def test_child_shares_sinks_not_state(self):
        sink = io.StringIO()
        parent = Reporter([sink], prefix="parent")
        child = parent.child("child")
        child.errorf("boom")
        assert child.failed and not parent.failed
        assert "ERROR [child] boom" in sink.getvalue()


def test_structured_handler_emits_json():
    stream = io.StringIO()
    configure_logging("debug", "json", stream)
    get_logger("extract", Layer.EXTRACT).info("vector written", path="/tmp/v.json", blocks=3)

    event = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert event["message"] == "vector written"
    assert event["level"] == "info"
    assert event["layer"] == "extract"
    assert event["logger"] == "chainvec.extract.extract"
    assert event["context"] == {"path": "/tmp/v.json", "blocks": 3}
    assert "operation" not in event


def test_text_format_appends_context():
    stream = io.StringIO()
    configure_logging("info", "text", stream)
    log = get_logger("replay", Layer.REPLAY)
    log.debug("hidden")
    log.warning("slow vector", seconds=12)
    out = stream.getvalue()
    assert "hidden" not in out
    assert "slow vector [seconds=12]" in out


def test_configure_logging_replaces_handlers():
    configure_logging("info", "json", io.StringIO())
    configure_logging("info", "text", io.StringIO())
    handlers = logging.getLogger("chainvec").handlers
    assert len(handlers) == 1
    assert not isinstance(handlers[0], StructuredHandler)


def test_error_code_travels_outside_context():
    stream = io.StringIO()
    configure_logging("info", "json", stream)
    get_logger("extract", Layer.EXTRACT).error("tipset extraction failed", error_code="ExecutionError", height="102")
    event = json.loads(stream.getvalue().strip())
    assert event["error_code"] == "ExecutionError"
    assert event["context"] == {"height": "102"}


def test_configure_logging_rejects_unknown_level():
    with pytest.raises(ConfigError, match="chatty"):
        configure_logging("chatty", "text", io.StringIO())
