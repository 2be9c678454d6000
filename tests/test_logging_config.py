"""
Tests for logging setup.
"""

import logging

import pytest

from retain import logging_config


@pytest.fixture
def log_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(logging_config.settings, "log_dir", str(tmp_path / "logs"))
    monkeypatch.setattr(logging_config.settings, "log_level", "DEBUG")
    yield tmp_path / "logs"
    root = logging.getLogger("retain")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.NOTSET)
    root.propagate = True


def test_creates_context_log_files(log_settings):
    logger = logging_config.setup_logging(context="worker")
    logging.getLogger("retain.analysis").error("backend unavailable")

    assert logger.level == logging.DEBUG
    assert (log_settings / "worker.log").exists()
    assert "backend unavailable" in (log_settings / "worker.error.log").read_text()


def test_repeated_setup_does_not_stack_handlers(log_settings):
    logging_config.setup_logging()
    logger = logging_config.setup_logging()

    assert len(logger.handlers) == 3


def test_file_logging_can_be_disabled(monkeypatch, log_settings):
    monkeypatch.setattr(logging_config.settings, "log_file_enabled", False)

    logger = logging_config.setup_logging()

    assert [type(h) for h in logger.handlers] == [logging.StreamHandler]
    assert not log_settings.exists()
