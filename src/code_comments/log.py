"""Stderr logging shared by the CLI, the MCP server and the synchronizer.

stdout carries command output (and the MCP protocol), so every message
goes to stderr. Debug lines only appear with --verbose.
"""

import sys
import traceback
from typing import Any


class Logger:
    """Stderr logger with optional ANSI colors.

    Attributes:
        verbose: Print DEBUG messages and exception tracebacks
        use_colors: Wrap messages in ANSI color codes (only on a TTY)
        quiet: Suppress INFO messages; warnings and errors still print
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True, quiet: bool = False) -> None:
        self.verbose = verbose
        self.quiet = quiet
        self.use_colors = use_colors and sys.stderr.isatty()

    def _colorize(self, text: str, color_code: str) -> str:
        if not self.use_colors:
            return text
        return f"\033[{color_code}m{text}\033[0m"

    def _emit(self, text: str, color_code: str, details: dict[str, Any]) -> None:
        formatted = self._colorize(text, color_code)
        if details:
            formatted += " (" + " ".join(f"{k}={v!r}" for k, v in details.items()) + ")"
        print(formatted, file=sys.stderr)

    def debug(self, message: str, **kwargs: Any) -> None:
        if self.verbose:
            self._emit(f"DEBUG: {message}", "36", kwargs)  # Cyan

    def info(self, message: str) -> None:
        if not self.quiet:
            self._emit(message, "37", {})  # White

    def warning(self, message: str, **kwargs: Any) -> None:
        self._emit(f"Warning: {message}", "33", kwargs)  # Yellow

    def error(self, message: str) -> None:
        self._emit(f"Error: {message}", "31", {})  # Red

    def exception(self, message: str, exc: BaseException) -> None:
        """Log an error for exc; the traceback is added in verbose mode."""
        self.error(f"{message}: {exc}")
        if self.verbose:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            print(self._colorize(tb, "90"), file=sys.stderr)  # Gray


# Set by the CLI / MCP entry points
_logger: Logger | None = None


def init_logger(verbose: bool = False, use_colors: bool = True, quiet: bool = False) -> Logger:
    """Replace the shared logger."""
    global _logger
    _logger = Logger(verbose=verbose, use_colors=use_colors, quiet=quiet)
    return _logger


def get_logger() -> Logger:
    """Shared logger; quiet until an entry point calls init_logger()."""
    global _logger
    if _logger is None:
        _logger = Logger(verbose=False, quiet=True)
    return _logger
