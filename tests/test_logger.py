"""Tests for log context handling and logging setup."""

import logging
from pathlib import Path

import pytest

from batch import run_group
from logger import (
    LOGGER_NAME,
    LogContext,
    clear_log_context,
    format_context,
    get_log_context,
    get_logger,
    set_log_context,
    setup_logging,
    short_channel,
)

CHANNEL_ID = "UCuAXFkgsw1L7xaCfnd5JJOw"


def test_short_channel():
    assert short_channel(CHANNEL_ID) == "UCuAXFkg"
    assert short_channel("@GoogleDevelopers") == "GoogleDevelo"
    assert short_channel("Linus Tech Tips") == "Linus Tech"


def test_format_context_orders_fields():
    fields = {"channel": CHANNEL_ID, "zone": "x", "group": "1/3", "run": 2}
    assert format_context(fields) == "[run 2 | group 1/3 | UCuAXFkg | zone x] "
    assert format_context({}) == ""


def test_set_and_clear_context():
    set_log_context(run=1, group="2/2")
    set_log_context(group=None, channel=CHANNEL_ID)
    assert get_log_context() == {"run": 1, "channel": CHANNEL_ID}

    clear_log_context()
    assert get_log_context() == {}


def test_log_context_restores_outer_fields(caplog):
    log = get_logger("test")
    set_log_context(run=4)

    with caplog.at_level(logging.DEBUG, logger=LOGGER_NAME):
        with LogContext(log, "group work", group="1/2"):
            assert get_log_context() == {"run": 4, "group": "1/2"}

    assert get_log_context() == {"run": 4}
    messages = [r.getMessage() for r in caplog.records]
    assert messages[0] == "START: group work"
    assert messages[1].startswith("DONE: group work in ")


def test_log_context_reports_failure(caplog):
    log = get_logger("test")

    with caplog.at_level(logging.DEBUG, logger=LOGGER_NAME):
        with pytest.raises(ValueError):
            with LogContext(log, "lookup", run=1):
                raise ValueError("bad id")

    failed = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert failed[0].getMessage().startswith("FAILED: lookup after ")
    assert "ValueError: bad id" in failed[0].getMessage()
    assert get_log_context() == {}


def test_workers_inherit_caller_context():
    set_log_context(run=7, group="1/1")

    outcomes = run_group(["a", "b"], lambda item: get_log_context())

    assert outcomes["a"] == ({"run": 7, "group": "1/1", "channel": "a"}, None)
    assert outcomes["b"][0]["channel"] == "b"
    assert get_log_context() == {"run": 7, "group": "1/1"}


def test_setup_logging_writes_context_to_file(test_config):
    logger = setup_logging(console_level="ERROR")
    setup_logging(console_level="ERROR")
    assert len(logger.handlers) == 2

    with LogContext(get_logger("batch"), "3 channels", group="1/1"):
        get_logger("batch").info("listing uploads")
    for handler in logger.handlers:
        handler.flush()

    log_dir = Path(test_config.log_dir)
    log_files = sorted(log_dir.glob("feed_*.log"))
    assert log_files
    content = log_files[-1].read_text(encoding="utf-8")
    assert "[group 1/1] listing uploads" in content
    assert (log_dir / "latest.log").exists()
