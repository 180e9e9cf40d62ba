"""Tests for console helpers and structlog configuration."""

import json
import logging
import logging.handlers
from unittest.mock import patch

import pytest
import structlog

from execmon import logging as console
from execmon.config import Config


@pytest.fixture
def patched_state_dir(tmp_path):
    with patch.object(Config, "state_dir", new_callable=lambda: property(lambda self: tmp_path)):
        yield tmp_path


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()
    for handler in logging.getLogger().handlers:
        handler.close()
    logging.getLogger().handlers.clear()


def test_info_goes_to_stdout(capsys):
    console.info("hello")
    captured = capsys.readouterr()
    assert "hello" in captured.out
    assert "[info]" in captured.out
    assert captured.err == ""


def test_warn_and_error_go_to_stderr(capsys):
    console.warn("careful")
    console.error("broken")
    captured = capsys.readouterr()
    assert "careful" in captured.err
    assert "broken" in captured.err
    assert captured.out == ""


def test_domain_helpers(capsys):
    console.metrics_listening("127.0.0.1", 2112, "/metrics")
    console.heartbeat(cycles=12, names=3, total=40, failures=1)
    out = capsys.readouterr().out
    assert "http://127.0.0.1:2112/metrics" in out
    assert "3 names" in out
    assert "12 cycles, 1 failed" in out


def test_schema_mismatch_message(capsys):
    console.schema_mismatch(28, 40)
    err = capsys.readouterr().err
    assert "(28)" in err
    assert "(40)" in err


def test_configure_writes_json_lines(patched_state_dir):
    """configure() sends structlog events to the rotating JSON log."""
    config = Config()
    console.configure(config)

    structlog.get_logger().info("cycle_published", names=2, total=12)
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = (patched_state_dir / "daemon.log").read_text().splitlines()
    event = json.loads(lines[-1])
    assert event["event"] == "cycle_published"
    assert event["names"] == 2
    assert event["level"] == "info"
    assert event["source"] == "daemon"
    assert "ts" in event


def test_configure_formats_stdlib_records_the_same_way(patched_state_dir):
    """Records from plain logging (e.g. libraries) get the same fields."""
    console.configure(Config())

    logging.getLogger("some.library").warning("library said %s", "hi")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = (patched_state_dir / "daemon.log").read_text().splitlines()
    event = json.loads(lines[-1])
    assert event["event"] == "library said hi"
    assert event["level"] == "warning"
    assert event["source"] == "daemon"
    assert "ts" in event


def test_configure_uses_rotation_settings(patched_state_dir):
    config = Config()
    config.system.log_max_bytes = 1024
    config.system.log_backup_count = 2
    console.configure(config)

    (handler,) = logging.getLogger().handlers
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 1024
    assert handler.backupCount == 2


def test_configure_cli_routes_warnings_to_stderr(capsys):
    """One-shot commands keep structured warnings off stdout."""
    console.configure_cli()
    log = structlog.get_logger()
    log.info("ignored")
    log.warning("schema_mismatch", key=1)

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "schema_mismatch" in captured.err
    assert "ignored" not in captured.err
