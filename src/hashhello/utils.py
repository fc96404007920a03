"""
hashhello - Utility functions.

Provides helpers for dial input, formatting, validation and logging setup.
"""

import logging
import logging.handlers
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

from .constants import LOG_BACKUP_COUNT, LOG_DATE_FORMAT, LOG_FORMAT, LOG_MAX_BYTES, NUMERIC_ID_LENGTH

logger = logging.getLogger(__name__)

_NUMERIC_ID_PATTERN = re.compile(rf"^\d{{{NUMERIC_ID_LENGTH}}}$")


def normalize_dial_input(value: str) -> str:
    """
    Strip everything but digits from user-typed input.

    ``"#123 456 789"`` and ``"123-456-789"`` both become ``"123456789"``.
    """
    return re.sub(r"\D", "", value or "")


def validate_numeric_id(numeric_id: str) -> bool:
    """
    Validate a numeric id format.

    Returns:
        True if exactly nine decimal digits, False otherwise
    """
    return isinstance(numeric_id, str) and bool(_NUMERIC_ID_PATTERN.match(numeric_id))


def format_timestamp(timestamp_ms: int, format_str: str = "%Y-%m-%d %H:%M") -> str:
    """
    Format a millisecond epoch timestamp in local time.

    Returns the input as a string if it cannot be converted.
    """
    try:
        return datetime.fromtimestamp(int(timestamp_ms) / 1000).strftime(format_str)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.debug(f"Failed to format timestamp '{timestamp_ms}': {e}")
        return str(timestamp_ms)


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None, console: bool = True,
                  console_level: Optional[str] = None, log_filename: str = "hashhello.log") -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name
        log_dir: Directory for a rotating log file, or None for no file
        console: Whether to log to the terminal through rich
        console_level: Minimum level shown on the terminal, defaults to level
        log_filename: Name of the log file inside log_dir
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if console:
        console_handler = RichHandler(show_path=False, rich_tracebacks=True)
        if console_level:
            console_handler.setLevel(getattr(logging, console_level.upper(), logging.WARNING))
        root.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / log_filename,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(file_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())
