"""Unit tests for logging setup."""

import logging

import pytest

from streamasr import log


@pytest.fixture
def fresh_logger(monkeypatch):
    logger = logging.getLogger("streamasr")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    monkeypatch.setattr(log, "_initialized", False)
    logger.handlers.clear()
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_only(self, fresh_logger):
        """Without a file only the console handler is installed."""
        logger = log.setup_logging("debug")
        assert logger is fresh_logger
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1

    def test_rotating_file(self, fresh_logger, tmp_path):
        """A log file gets a rotating handler and receives records."""
        path = tmp_path / "logs" / "asr.log"
        logger = log.setup_logging("INFO", str(path), max_bytes=1024, backup_count=2)
        logging.getLogger("streamasr.recognizer").info("hello from recognizer")
        for handler in logger.handlers:
            handler.flush()
        assert len(logger.handlers) == 2
        assert "hello from recognizer" in path.read_text(encoding="utf-8")

    def test_idempotent(self, fresh_logger):
        """A second call does not add handlers."""
        log.setup_logging()
        log.setup_logging()
        assert len(fresh_logger.handlers) == 1
