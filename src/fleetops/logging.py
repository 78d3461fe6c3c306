"""Logging utilities for fleetops.

Provides:
- Console and file logging setup with verbosity levels
- A TRACE level below DEBUG for raw tool output
- Structured ``key=value`` context on log messages
- Performance timing scopes
- Redaction of connection secrets from every emitted record
"""

import logging
import re
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Raw subprocess output is logged at TRACE
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

_SECRET_PATTERNS = [
    re.compile(r"((?:ansible_password|ansible_ssh_pass|ansible_become_pass|passphrase)[\"']?\s*[:=]\s*[\"']?)([^\s\"',}]+)"),
    re.compile(r"(\bpassword=)(\S+)"),
]
REDACTED = "********"


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Convert a level name to a logging level.

    Raises:
        ValueError: If level name is invalid
    """
    level_map = {
        "trace": TRACE,
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }
    level_lower = level_name.lower()
    if level_lower not in level_map:
        valid = ", ".join(level_map.keys())
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level_map[level_lower]


def redact(text: str) -> str:
    """Mask password-like values in a string."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Masks connection secrets in log records before they are emitted.

    The message is rendered once, redacted, and stored back with its
    arguments cleared.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    debug: bool = False,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure root logging for fleetops.

    Args:
        level: Console logging level
        format_string: Custom format string (uses default if None)
        debug: If True, use the debug format with timestamps and line numbers
        log_file: Optional path to also write logs to
        file_level: Optional separate level for the file (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file="/tmp/fleetops.log", file_level=logging.DEBUG)
    """
    if format_string is None:
        format_string = DEBUG_FORMAT if debug or level <= logging.DEBUG else DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    redactor = SecretRedactingFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    console_handler.addFilter(redactor)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        file_handler.addFilter(redactor)
        root_logger.addHandler(file_handler)


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **context: Any,
) -> Generator[None, None, None]:
    """Time an operation and log its duration on exit.

    Example:
        >>> with log_performance(logger, "Ad-hoc shell", hosts=3):
        ...     await runner.shell(hosts, "uptime")
        INFO: Ad-hoc shell completed in 1.204s (hosts=3)
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        message = f"{operation} completed in {duration:.3f}s"
        if context:
            message += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
        logger.log(level, message)


class StructuredLogger:
    """Logger that appends ``key=value`` context to every message.

    Example:
        >>> logger = StructuredLogger("fleetops.orchestrator", task_id="t1")
        >>> logger.info("Task started", hosts=2)
        INFO [fleetops.orchestrator] Task started (task_id=t1, hosts=2)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = context.copy()

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a child logger with additional context."""
        return StructuredLogger(self.logger.name, **{**self.context, **context})

    def _format_message(self, message: str, **extra: Any) -> str:
        combined = {**self.context, **extra}
        if not combined:
            return message
        context_str = ", ".join(f"{k}={v}" for k, v in combined.items())
        return f"{message} ({context_str})"

    def debug(self, message: str, **extra: Any) -> None:
        self.logger.debug(self._format_message(message, **extra))

    def info(self, message: str, **extra: Any) -> None:
        self.logger.info(self._format_message(message, **extra))

    def warning(self, message: str, **extra: Any) -> None:
        self.logger.warning(self._format_message(message, **extra))

    def error(self, message: str, **extra: Any) -> None:
        self.logger.error(self._format_message(message, **extra))

    def exception(self, message: str, **extra: Any) -> None:
        """Log an error with the active exception's traceback."""
        self.logger.exception(self._format_message(message, **extra))


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a structured logger."""
    return StructuredLogger(name, **context)
