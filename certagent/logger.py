"""
Centralized logging setup for the certificate agent.

Console output is colored when attached to a terminal; an optional log file
under LOG_DIR receives the same records without colors.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union


DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

LEVEL_NAMES = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def parse_level(level: Union[str, int, None]) -> int:
    """
    Convert a level name (case-insensitive) or number to a logging level.

    Unknown names fall back to INFO.
    """
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    return LEVEL_NAMES.get(level.strip().lower(), logging.INFO)


class ColoredFormatter(logging.Formatter):
    """
    Formatter that colors the level name, and warning/error messages.

    Colors are only applied when stdout is a terminal.
    """

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str = None, use_colors: bool = True):
        super().__init__(fmt or DEFAULT_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        original_levelname = record.levelname
        original_msg = record.msg

        if self.use_colors:
            color = self.COLORS.get(record.levelname, "")
            reset = self.COLORS["RESET"]
            record.levelname = f"{color}{record.levelname}{reset}"
            if original_levelname in ("WARNING", "ERROR", "CRITICAL"):
                record.msg = f"{color}{record.msg}{reset}"

        result = super().format(record)

        record.levelname = original_levelname
        record.msg = original_msg

        return result


class StructuredLogger(logging.Logger):
    """
    Logger with helpers for the renewal log layout.
    """

    def section(self, title: str) -> None:
        """Log a section header."""
        self.info("=" * 60)
        self.info(title)
        self.info("=" * 60)

    def success(self, message: str) -> None:
        """Log a success message (INFO level)."""
        self.info(f"[OK] {message}")

    def failure(self, message: str) -> None:
        """Log a failure message (ERROR level)."""
        self.error(f"[FAIL] {message}")


_logger: Optional[StructuredLogger] = None


def setup_logger(
    name: str = "CertAgent",
    level: Union[str, int, None] = "info",
    use_colors: bool = True,
    log_file: Optional[str] = None,
) -> StructuredLogger:
    """
    Setup and configure the global logger.

    Args:
        name: Logger name
        level: Level name (e.g. "debug", "info") or logging constant
        use_colors: Enable colored console output
        log_file: Optional file path for log output; parent directories
                  are created when missing

    Returns:
        Configured StructuredLogger instance
    """
    global _logger

    logging.setLoggerClass(StructuredLogger)
    logger = logging.getLogger(name)
    logger.__class__ = StructuredLogger

    numeric_level = parse_level(level)
    logger.setLevel(numeric_level)

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            logger.warning(f"Cannot open log file {log_file}: {e}")
        else:
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
            logger.addHandler(file_handler)

    _logger = logger
    return logger


def get_logger() -> StructuredLogger:
    """
    Get the global logger instance, creating a default one on first use.
    """
    global _logger

    if _logger is None:
        _logger = setup_logger()

    return _logger
