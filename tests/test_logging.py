"""
Tests for the log formatters.
"""

import json
import logging

from deed_integrity.core.logging_config import ColoredFormatter, JSONFormatter


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="deed_integrity.services.retry",
        level=logging.WARNING,
        pathname=__file__,
        lineno=10,
        msg="Retrying %s",
        args=("commit hash",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_lifts_extras():
    record = make_record(document_id="doc-1", attempt=2)

    data = json.loads(JSONFormatter().format(record))

    assert data["level"] == "WARNING"
    assert data["message"] == "Retrying commit hash"
    assert data["document_id"] == "doc-1"
    assert data["attempt"] == 2
    assert "args" not in data


def test_json_formatter_without_extras():
    record = make_record(document_id="doc-1")

    data = json.loads(JSONFormatter(include_extras=False).format(record))

    assert "document_id" not in data


def test_colored_formatter_shows_pipeline_context():
    record = make_record(document_id="doc-1", attempt=3, delay=2.0)

    line = ColoredFormatter().format(record)

    assert "Retrying commit hash" in line
    assert "document_id=doc-1" in line
    assert "attempt=3" in line
    assert "delay" not in line
