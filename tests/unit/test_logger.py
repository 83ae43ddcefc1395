"""
tests/unit/test_logger.py — Logging Setup Tests

setup_logging() writes JSON lines carrying the bound gateway context, and
keeps websockets chatter out of the file.
"""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from clawchat.observability.logger import bind_gateway, clear_gateway, get_logger, setup_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    clear_gateway()
    structlog.reset_defaults()


def _read_lines(log_dir):
    for handler in logging.getLogger().handlers:
        handler.flush()
    text = (log_dir / "clawchat.log").read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class TestSetupLogging:
    def test_json_file_with_gateway_context(self, tmp_path, restore_logging):
        setup_logging(level="DEBUG", log_dir=tmp_path)
        bind_gateway("ws://gateway.test", "work")

        get_logger("clawchat.tests", component="logger").info("gateway_client.connected", attempt=1)

        entry = _read_lines(tmp_path)[-1]
        assert entry["event"] == "gateway_client.connected"
        assert entry["level"] == "info"
        assert entry["gateway_url"] == "ws://gateway.test"
        assert entry["session_key"] == "work"
        assert entry["component"] == "logger"
        assert entry["attempt"] == 1
        assert "timestamp" in entry

    def test_level_filters_and_library_loggers_quieted(self, tmp_path, restore_logging):
        setup_logging(level="DEBUG", log_dir=tmp_path)
        logging.getLogger("websockets.client").debug("frame chatter")
        get_logger("clawchat.tests").debug("kept")

        events = [e["event"] for e in _read_lines(tmp_path)]
        assert "kept" in events
        assert "frame chatter" not in events
