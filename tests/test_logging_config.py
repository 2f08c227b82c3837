"""Tests for the JSON and text log formatters."""

import json
import logging

from scripts.provisioning.logging_config import JsonFormatter, TextFormatter, configure_logging


def _record(msg="Setup failed", **extra):
    record = logging.LogRecord("provisioning.orchestrator", logging.ERROR, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_includes_extras():
    entry = json.loads(JsonFormatter().format(_record(user_number=3, run_id="abc", ignored="x")))
    assert entry["level"] == "ERROR"
    assert entry["logger"] == "provisioning.orchestrator"
    assert entry["user_number"] == 3
    assert entry["run_id"] == "abc"
    assert "ignored" not in entry


def test_text_prefixes_user_number():
    line = TextFormatter().format(_record(user_number=7))
    assert line.endswith("[ERROR] User 07: Setup failed")


def test_text_without_user():
    assert TextFormatter().format(_record()).endswith("[ERROR] Setup failed")


def test_configure_logging_replaces_handlers():
    configure_logging("debug", "text")
    configure_logging("warning")
    logger = logging.getLogger("provisioning")
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, JsonFormatter)
    assert logger.level == logging.WARNING
    assert not logger.propagate
