"""Tests for the structured logging configuration."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import structlog

from anifunnel.logging import setup_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging state between tests."""
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    structlog.reset_defaults()


def test_setup_creates_log_dir_and_files(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("anifunnel.test").info("hello")

    assert (log_dir / "anifunnel.log").exists()
    assert (log_dir / "scrobble.log").exists()


def test_main_log_human_readable(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("anifunnel.daemon").info("test_event", key="value")

    content = (log_dir / "anifunnel.log").read_text()
    assert "test_event" in content
    assert "key=value" in content
    with pytest.raises(json.JSONDecodeError):
        json.loads(content.strip())


def test_scrobble_log_is_json(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("anifunnel.sync.engine").info("progress_advanced", media_id=5, progress=6)

    data = json.loads((log_dir / "scrobble.log").read_text().strip())
    assert data["event"] == "progress_advanced"
    assert data["media_id"] == 5
    assert data["level"] == "info"
    assert "timestamp" in data


def test_scrobble_log_only_has_sync_events(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("anifunnel.server.webhook").info("webhook_event")
    structlog.get_logger("anifunnel.sync.matcher").info("matcher_event")

    scrobble = (log_dir / "scrobble.log").read_text()
    assert "matcher_event" in scrobble
    assert "webhook_event" not in scrobble

    main = (log_dir / "anifunnel.log").read_text()
    assert "matcher_event" in main
    assert "webhook_event" in main


def test_level_filtering(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="warning", log_dir=log_dir)

    log = structlog.get_logger("anifunnel.test")
    log.info("should_not_appear")
    log.warning("should_appear")

    content = (log_dir / "anifunnel.log").read_text()
    assert "should_not_appear" not in content
    assert "should_appear" in content


def test_rotation_parameters(tmp_path: Path):
    setup_logging(log_level="info", log_dir=tmp_path / "logs")

    rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
    assert len(rotating) == 2
    for handler in rotating:
        assert handler.maxBytes == 10 * 1024 * 1024
        assert handler.backupCount == 5


def test_no_log_dir_no_handlers():
    setup_logging(log_level="info", log_dir=None)
    assert logging.getLogger().handlers == []


def test_console_handler(tmp_path: Path):
    setup_logging(log_level="info", log_dir=None, console=True)

    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert type(handlers[0]) is logging.StreamHandler


def test_noisy_libraries_are_quietened():
    setup_logging(log_level="debug", log_dir=None)
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
