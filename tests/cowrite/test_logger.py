"""Tests for stderr logging."""

import pytest

from cowrite import logger as logger_module
from cowrite.logger import Logger, get_logger, init_logger


@pytest.fixture(autouse=True)
def reset_global_logger():
    saved = logger_module._logger
    yield
    logger_module._logger = saved


class TestLogger:
    def test_error_with_suggestion(self, capsys):
        logger = Logger(use_colors=False)
        logger.error("Persist error", suggestion="Check directory permissions")

        captured = capsys.readouterr()
        assert "Error: Persist error" in captured.err
        assert "Check directory permissions" in captured.err
        assert captured.out == ""

    def test_warning(self, capsys):
        Logger(use_colors=False).warning("Ignoring unreadable comments file")
        assert "Warning: Ignoring unreadable comments file" in capsys.readouterr().err

    def test_info_goes_to_stderr(self, capsys):
        Logger(use_colors=False).info("Cowrite MCP server running on stdio")

        captured = capsys.readouterr()
        assert "running on stdio" in captured.err
        assert captured.out == ""

    def test_debug_hidden_unless_verbose(self, capsys):
        Logger(verbose=False, use_colors=False).debug("Comment added", id="c1")
        assert capsys.readouterr().err == ""

    def test_debug_with_details(self, capsys):
        Logger(verbose=True, use_colors=False).debug("Comment added", id="c1", offset=4)

        err = capsys.readouterr().err
        assert "DEBUG: Comment added" in err
        assert "id='c1'" in err
        assert "offset=4" in err

    def test_timestamps(self, capsys):
        Logger(use_colors=False, timestamps=True).info("hello")
        assert capsys.readouterr().err.startswith("[")

    def test_exception_traceback_only_when_verbose(self, capsys):
        try:
            raise RuntimeError("kaput")
        except RuntimeError as e:
            Logger(verbose=False, use_colors=False).exception("Handler failed", e)
            quiet = capsys.readouterr().err
            Logger(verbose=True, use_colors=False).exception("Handler failed", e)
            loud = capsys.readouterr().err

        assert "Error: Handler failed: kaput" in quiet
        assert "Traceback" not in quiet
        assert "Traceback" in loud

    def test_no_colors_when_not_a_tty(self, capsys):
        logger = Logger(use_colors=True)
        logger.error("plain")
        assert "\033[" not in capsys.readouterr().err


def test_init_logger_replaces_global():
    logger = init_logger(verbose=True)
    assert get_logger() is logger
    assert logger.verbose


def test_get_logger_creates_quiet_default():
    logger_module._logger = None
    logger = get_logger()
    assert isinstance(logger, Logger)
    assert not logger.verbose
    assert get_logger() is logger
