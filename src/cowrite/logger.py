"""Stderr logging shared by the store, the watchers, the MCP server and the CLI.

Stdout carries the MCP stdio transport, so nothing here ever prints to it.
Debug lines appear only with ``--verbose``; colors only when stderr is a
terminal.
"""

import sys
import time
import traceback
from typing import Any

# level -> (prefix, ANSI color)
_STYLES = {
    "debug": ("DEBUG: ", "36"),
    "info": ("", "37"),
    "warning": ("Warning: ", "33"),
    "error": ("Error: ", "31"),
    "hint": ("  -> ", "33"),
    "trace": ("", "90"),
}


class Logger:
    """Line-oriented stderr logger.

    Attributes:
        verbose: Print debug lines and exception tracebacks
        use_colors: Wrap lines in ANSI colors (forced off when stderr is not a tty)
        timestamps: Prefix each line with the local time (used by ``serve``)
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True, timestamps: bool = False) -> None:
        self.verbose = verbose
        self.use_colors = use_colors and sys.stderr.isatty()
        self.timestamps = timestamps

    def _emit(self, level: str, message: str) -> None:
        prefix, color = _STYLES[level]
        line = prefix + message
        if self.use_colors:
            line = f"\033[{color}m{line}\033[0m"
        if self.timestamps:
            line = f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] {line}"
        sys.stderr.write(line + "\n")
        sys.stderr.flush()

    def debug(self, message: str, **fields: Any) -> None:
        """Log a debug line with optional ``key=value`` details."""
        if not self.verbose:
            return
        if fields:
            message += " (" + " ".join(f"{key}={value!r}" for key, value in fields.items()) + ")"
        self._emit("debug", message)

    def info(self, message: str) -> None:
        self._emit("info", message)

    def warning(self, message: str) -> None:
        self._emit("warning", message)

    def error(self, message: str, suggestion: str | None = None) -> None:
        self._emit("error", message)
        if suggestion:
            self._emit("hint", suggestion)

    def exception(self, message: str, exc: BaseException) -> None:
        """Log ``message: exc``; the traceback follows in verbose mode."""
        self.error(f"{message}: {exc}")
        if self.verbose:
            self._emit("trace", "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))


_logger: Logger | None = None


def init_logger(verbose: bool = False, use_colors: bool = True, timestamps: bool = False) -> Logger:
    """Replace the process-wide logger and return it."""
    global _logger
    _logger = Logger(verbose=verbose, use_colors=use_colors, timestamps=timestamps)
    return _logger


def get_logger() -> Logger:
    """Process-wide logger; a quiet default until ``init_logger`` runs."""
    global _logger
    if _logger is None:
        _logger = Logger()
    return _logger
