"""Tests for logging configuration."""

import logging

from pathdiag.logging_config import configure_logging, get_logger, setup_logging


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_console_only(self):
        logger = setup_logging(level="INFO")
        assert logger.name == "pathdiag"
        assert logger.level == logging.INFO
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_file_logging(self, tmp_path):
        """Test the rotating file handler records debug messages."""
        log_file = tmp_path / "logs" / "trace.log"
        logger = setup_logging(level="WARNING", log_file=str(log_file), enable_file=True)

        get_logger("pathdiag.traceroute.core").debug("probe sent")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert "probe sent" in log_file.read_text()
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()

    def test_configure_debug(self):
        configure_logging(debug=True)
        assert logging.getLogger("pathdiag").level == logging.DEBUG
        configure_logging()
        assert logging.getLogger("pathdiag").level == logging.WARNING
