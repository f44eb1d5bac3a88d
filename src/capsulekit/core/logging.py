"""Centralized logging for capsulekit.

Four verbosity levels:
- QUIET (0): warnings + errors
- NORMAL (1): info + warnings + errors
- VERBOSE (2): per-capsule progress
- DEBUG (3): plugin output, cache rebuilds, lock traffic

Usage:
    from capsulekit.core.logging import get_logger, set_verbosity

    logger = get_logger(__name__)
    set_verbosity(2)

    logger.verbose("Scanning kjv.tar.gz")
    logger.warning("Manifest unreadable")
"""

from __future__ import annotations

import sys
import threading
from enum import IntEnum

from capsulekit.core.log_bus import LogRecord, get_log_bus


class VerbosityLevel(IntEnum):
    """Verbosity levels for capsulekit."""

    QUIET = 0  # Warnings + errors
    NORMAL = 1  # Info + warnings + errors
    VERBOSE = 2  # Detailed info
    DEBUG = 3  # Everything


LEVEL_NAMES: dict[str, VerbosityLevel] = {
    "quiet": VerbosityLevel.QUIET,
    "normal": VerbosityLevel.NORMAL,
    "verbose": VerbosityLevel.VERBOSE,
    "debug": VerbosityLevel.DEBUG,
}

_VERBOSITY: VerbosityLevel = VerbosityLevel.NORMAL
_USE_COLORS: bool = True
# When stdout carries machine-readable output, warnings go to stderr.
_STDOUT_RESERVED: bool = False

# Serializes console writes from worker threads.
_PRINT_LOCK = threading.Lock()


def set_verbosity(level: int | str | VerbosityLevel) -> None:
    """Set global verbosity level.

    Args:
        level: 0-3, a level name (quiet|normal|verbose|debug) or VerbosityLevel
    """
    global _VERBOSITY

    if isinstance(level, str):
        level = LEVEL_NAMES[level.strip().lower()]
    elif isinstance(level, int):
        level = VerbosityLevel(level)

    _VERBOSITY = level


def get_verbosity() -> VerbosityLevel:
    """Get current verbosity level."""
    return _VERBOSITY


def set_colors(enabled: bool) -> None:
    """Enable or disable colored output."""
    global _USE_COLORS
    _USE_COLORS = enabled


def apply_logging_policy(level: str, *, colors: bool = True, json_output: bool = False) -> None:
    """Apply the resolved `logging.level` and `logging.colors` settings.

    With `json_output`, stdout is left to the JSON result: verbosity drops
    to QUIET and warnings are printed to stderr.
    """
    global _STDOUT_RESERVED

    set_verbosity(VerbosityLevel.QUIET if json_output else level)
    set_colors(colors)
    _STDOUT_RESERVED = json_output


class CapsuleLogger:
    """Logger with verbosity support."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "VERBOSE": "\033[34m",  # Blue
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "RESET": "\033[0m",
    }

    def __init__(self, name: str):
        self.name = name

    def is_enabled_for(self, level: VerbosityLevel) -> bool:
        return level <= _VERBOSITY

    def _format_message(self, level: str, message: str) -> str:
        if _USE_COLORS and sys.stdout.isatty():
            color = self.COLORS.get(level, "")
            reset = self.COLORS["RESET"]
            return f"{color}[{level.lower()}]{reset} {message}"
        return f"[{level.lower()}] {message}"

    def _log(self, level: VerbosityLevel, level_name: str, message: str) -> None:
        """Publish to the LogBus, then print if the verbosity allows it.

        Errors are always printed, to stderr.
        """
        plain = f"[{level_name.lower()}] {message}"
        get_log_bus().publish(LogRecord(level_name=level_name, plain=plain, logger_name=self.name))

        if level_name != "ERROR" and not self.is_enabled_for(level):
            return

        formatted = self._format_message(level_name, message)
        with _PRINT_LOCK:
            to_stderr = level_name == "ERROR" or _STDOUT_RESERVED
            print(formatted, file=sys.stderr if to_stderr else sys.stdout)

    def debug(self, message: str) -> None:
        self._log(VerbosityLevel.DEBUG, "DEBUG", message)

    def verbose(self, message: str) -> None:
        self._log(VerbosityLevel.VERBOSE, "VERBOSE", message)

    def info(self, message: str) -> None:
        self._log(VerbosityLevel.NORMAL, "INFO", message)

    def warning(self, message: str) -> None:
        self._log(VerbosityLevel.QUIET, "WARNING", message)

    def error(self, message: str) -> None:
        self._log(VerbosityLevel.QUIET, "ERROR", message)


_LOGGERS: dict[str, CapsuleLogger] = {}


def get_logger(name: str = __name__) -> CapsuleLogger:
    """Get logger instance for module.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    if name not in _LOGGERS:
        _LOGGERS[name] = CapsuleLogger(name)

    return _LOGGERS[name]
