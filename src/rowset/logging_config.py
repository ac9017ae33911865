"""
Logging Configuration for the Rowset evaluator.

Provides centralized logger setup for the debug trace log.
The trace logger writes to stderr and, when enabled, to a file in the
log directory.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

# Log directory priority:
# 1. ROWSET_LOG_DIR (explicit)
# 2. CWD/.rowset (fallback)
def _get_log_directory() -> Path:
    """Get the log directory path."""
    log_dir = os.getenv("ROWSET_LOG_DIR")
    if not log_dir:
        log_dir = str(Path.cwd() / ".rowset")
    return Path(log_dir)


def _ensure_log_directory() -> Path:
    """Ensure log directory exists and return its path."""
    log_dir = _get_log_directory()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


# File logging is opt-in for a library: set ROWSET_DEBUG_LOG=1 to enable
DEBUG_LOG_ENABLED = os.getenv("ROWSET_DEBUG_LOG", "") != ""


def _stderr_level() -> int:
    """Resolve the console level from ROWSET_LOG_LEVEL (default WARNING)."""
    name = os.getenv("ROWSET_LOG_LEVEL", "WARNING").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def _create_file_handler(log_filename: str) -> Optional[logging.FileHandler]:
    """
    Create a file handler for the specified log file.

    Args:
        log_filename: Name of the log file (e.g., 'debug_trace.log')

    Returns:
        Configured FileHandler, or None if logging is disabled
    """
    if not DEBUG_LOG_ENABLED:
        return None

    try:
        log_dir = _ensure_log_directory()
        log_path = log_dir / log_filename
        handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        return handler
    except OSError:
        return None


class FlushingStreamHandler(logging.StreamHandler):
    """StreamHandler that flushes after every emit.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a handler.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    def emit(self, record):
        super().emit(record)
        self.flush()


def _create_stderr_handler() -> logging.StreamHandler:
    """Create a stderr handler for console output with auto-flush."""
    handler = FlushingStreamHandler(sys.stderr)
    handler.setLevel(_stderr_level())
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    return handler


def get_debug_trace_logger() -> logging.Logger:
    """
    Get the debug trace logger for evaluation engines.

    Output goes to .rowset/debug_trace.log (when enabled) and stderr.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("rowset.debug_trace")

    # Only configure once
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        logger.propagate = False  # Don't propagate to root logger

        file_handler = _create_file_handler("debug_trace.log")
        if file_handler:
            logger.addHandler(file_handler)

        stderr_handler = _create_stderr_handler()
        logger.addHandler(stderr_handler)

    return logger


# Pre-create logger for import convenience
debug_trace_logger = get_debug_trace_logger()


def configure_logger_for_debug_trace(logger_name: str) -> logging.Logger:
    """
    Configure a logger to also write to the debug trace handlers.

    Args:
        logger_name: Name of the logger to configure (e.g., __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    for handler in debug_trace_logger.handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    return logger


def suppress_stderr_logging():
    """
    Suppress stderr logging for the trace logger.

    File logging continues to work normally.
    """
    for handler in debug_trace_logger.handlers:
        if isinstance(handler, FlushingStreamHandler):
            handler.setLevel(logging.CRITICAL + 1)  # Effectively disable


def restore_stderr_logging():
    """Restore stderr logging to the configured level."""
    for handler in debug_trace_logger.handlers:
        if isinstance(handler, FlushingStreamHandler):
            handler.setLevel(_stderr_level())
