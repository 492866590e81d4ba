"""Tests for the shared stderr logger."""

import pytest

from code_comments import log
from code_comments.log import Logger, get_logger, init_logger


@pytest.fixture(autouse=True)
def reset_global_logger(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(log, "_logger", None)


class TestLogger:
    """Tests for Logger class."""

    def test_error_goes_to_stderr(self, capsys):
        """Errors never reach stdout."""
        logger = Logger(use_colors=False)
        logger.error("Revision not found")

        captured = capsys.readouterr()
        assert captured.err == "Error: Revision not found\n"
        assert captured.out == ""

    def test_warning_with_details(self, capsys):
        """Warnings accept key-value details."""
        logger = Logger(use_colors=False)
        logger.warning("Thread anchor could not be remapped", thread="01ABC", revision="abc123")

        captured = capsys.readouterr()
        assert "Warning: Thread anchor could not be remapped" in captured.err
        assert "thread='01ABC'" in captured.err
        assert "revision='abc123'" in captured.err

    def test_quiet_suppresses_info_only(self, capsys):
        """Quiet loggers still report warnings."""
        logger = Logger(use_colors=False, quiet=True)
        logger.info("Watching 2 files")
        logger.warning("Source file disappeared")

        captured = capsys.readouterr()
        assert "Watching" not in captured.err
        assert "Warning: Source file disappeared" in captured.err

    def test_debug_requires_verbose(self, capsys):
        """Debug output is only printed in verbose mode."""
        Logger(verbose=False, use_colors=False).debug("Running git", args=["diff"])
        assert capsys.readouterr().err == ""

        Logger(verbose=True, use_colors=False).debug("Running git", args=["diff"])
        captured = capsys.readouterr()
        assert "DEBUG: Running git" in captured.err
        assert "args=['diff']" in captured.err

    def test_exception_traceback_in_verbose_mode(self, capsys):
        """Tracebacks are added only when verbose."""
        try:
            raise ValueError("bad hunk")
        except ValueError as e:
            Logger(verbose=False, use_colors=False).exception("Parse failed", e)
            quiet = capsys.readouterr().err
            Logger(verbose=True, use_colors=False).exception("Parse failed", e)
            loud = capsys.readouterr().err

        assert "Error: Parse failed: bad hunk" in quiet
        assert "Traceback" not in quiet
        assert "Traceback" in loud

    def test_colorize(self):
        """ANSI codes wrap text only when colors are enabled."""
        logger = Logger(use_colors=False)
        assert logger._colorize("text", "31") == "text"

        logger.use_colors = True  # Override TTY check
        assert logger._colorize("text", "31") == "\033[31mtext\033[0m"


class TestGlobalLogger:
    """Tests for global logger initialization."""

    def test_init_logger(self):
        """init_logger replaces the shared instance."""
        logger = init_logger(verbose=True, use_colors=False)

        assert get_logger() is logger
        assert logger.verbose is True

    def test_get_logger_before_init_is_quiet(self, capsys):
        """Library code can log before any entry point configured logging."""
        logger = get_logger()
        logger.info("not shown")
        logger.debug("not shown either")

        assert logger.quiet is True
        assert get_logger() is logger
        assert capsys.readouterr().err == ""
