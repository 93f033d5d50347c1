"""
Unit tests for nostream.logging_setup module.
"""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from nostream.logging_setup import setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    package_logger = logging.getLogger("nostream")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


def test_console_and_file(temp_dir):
    log_file = temp_dir / "logs" / "nostream.log"
    logger = setup_logging("debug", log_file=log_file)

    assert logger.name == "nostream"
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2
    assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)

    logging.getLogger("nostream.messenger").info("written to file")
    for handler in logger.handlers:
        handler.flush()
    assert "nostream.messenger - INFO - written to file" in log_file.read_text(encoding="utf-8")


def test_repeated_setup_replaces_handlers(temp_dir):
    setup_logging("INFO", log_file=temp_dir / "a.log")
    logger = setup_logging("WARNING")

    assert logger.level == logging.WARNING
    assert len(logger.handlers) == 1
    assert not any(isinstance(h, RotatingFileHandler) for h in logger.handlers)


def test_silent_configuration():
    logger = setup_logging(logging.ERROR, console=False)
    assert [type(h) for h in logger.handlers] == [logging.NullHandler]


def test_unknown_level_falls_back_to_info():
    assert setup_logging("LOUD", console=False).level == logging.INFO
