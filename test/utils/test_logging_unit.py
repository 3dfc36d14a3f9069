"""Unit tests for setup_logging."""

import logging

import pytest

from handoff_orchestrator.utils.logging import setup_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger("handoff_orchestrator")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handlers, level, propagate = saved
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


class TestSetupLogging:
    def test_default_logs_info_to_stderr(self, package_logger):
        assert setup_logging() is None

        assert package_logger.level == logging.INFO
        assert [type(h) for h in package_logger.handlers] == [logging.StreamHandler]
        assert package_logger.handlers[0].level == logging.INFO

    def test_verbose_adds_debug_file_handler(self, package_logger, tmp_path):
        log_file = tmp_path / "logs" / "hoc.log"
        assert setup_logging(verbose=True, log_file=log_file) == log_file

        stream, file_handler = package_logger.handlers
        assert stream.level == logging.DEBUG
        assert isinstance(file_handler, logging.FileHandler)
        package_logger.debug("turn detail")
        file_handler.flush()
        assert "turn detail" in log_file.read_text()

    def test_repeated_setup_replaces_handlers(self, package_logger):
        setup_logging()
        setup_logging()
        assert len(package_logger.handlers) == 1
