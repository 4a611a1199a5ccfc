"""
Logging configuration for maboroshi.
"""
import logging
import sys
from collections import deque
from pathlib import Path
from typing import List, Optional


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for terminal output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'        # Reset
    }

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        reset = self.COLORS['RESET']
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{reset}"
        return super().format(record)


class RecentLogHandler(logging.Handler):
    """Keeps the last few log messages for the status area of the UI.

    Consecutive duplicates are collapsed so a repeating warning does not
    flush everything else out of view.
    """

    def __init__(self, capacity: int = 50, level: int = logging.INFO):
        super().__init__(level)
        self.capacity = capacity
        self._entries: deque = deque(maxlen=capacity)
        self.setFormatter(logging.Formatter('%(message)s'))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        if self._entries and self._entries[-1] == message:
            return
        self._entries.append(message)

    def entries(self) -> List[str]:
        """Return a copy of the retained messages, oldest first."""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console: bool = True,
) -> logging.Logger:
    """Setup logging configuration for maboroshi.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        console: Whether to log to stdout (off while the terminal UI owns the screen)

    Returns:
        The package root logger
    """
    # Create logger
    logger = logging.getLogger('maboroshi')
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    # Console handler with colors
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level.upper()))
        console_formatter = ColoredFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module.

    Args:
        name: Module name

    Returns:
        Logger instance
    """
    return logging.getLogger(f'maboroshi.{name}')


# Exceptions
class MaboroshiError(Exception):
    """Base exception for maboroshi."""
    pass


class PlayerError(MaboroshiError):
    """Errors raised by the media player process manager."""
    pass


class StartupFailure(PlayerError):
    """The player process could not be started or never became reachable."""
    pass


class PlayerNotRunning(PlayerError):
    """A command was issued while the player process is not running."""

    def __init__(self, message: str = "player not running"):
        super().__init__(message)


class TransportError(PlayerError):
    """The control channel to the player failed."""
    pass


class ResolutionError(MaboroshiError):
    """A track could not be turned into a playable stream URL."""
    pass


class TrackNotFound(ResolutionError):
    pass


class ExtractorFailure(ResolutionError):
    pass


class ResolutionTimeout(ResolutionError):
    pass


class PersistenceError(MaboroshiError):
    """Favorites could not be read or written."""
    pass


class ConfigurationError(MaboroshiError):
    """Configuration related errors."""
    pass


class SearchError(MaboroshiError):
    """Search functionality errors."""
    pass
