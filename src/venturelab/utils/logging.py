"""
Logging configuration for venturelab.

Provides:
- Console logging with rich formatting
- Optional file logging
- Structured context (run_id, hypothesis, etc.)
"""

import logging
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "uvicorn.access")


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    rich_tracebacks: bool = True,
    show_path: bool = False,
) -> logging.Logger:
    """
    Set up logging for venturelab.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for logging
        rich_tracebacks: Enable rich exception formatting
        show_path: Show file paths in console logs

    Returns:
        Root logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = []

    console_handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=rich_tracebacks,
        show_time=True,
        show_path=show_path,
        markup=False,
    )
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%Y-%m-%d %H:%M:%S]"))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class StructuredLogger:
    """
    Logger that prefixes every message with fixed context.

    Usage:
        logger = StructuredLogger(__name__, run_id=7)
        logger.info("Starting research")
        # Output: [run_id=7] Starting research
    """

    def __init__(self, name: str, **context: Any):
        self.logger = logging.getLogger(name)
        self.context = context

    def _format_message(self, msg: str) -> str:
        if not self.context:
            return msg
        context_str = " ".join(f"{k}={v}" for k, v in self.context.items())
        return f"[{context_str}] {msg}"

    def debug(self, msg: str, **kwargs: Any) -> None:
        self.logger.debug(self._format_message(msg), **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self.logger.info(self._format_message(msg), **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self.logger.warning(self._format_message(msg), **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self.logger.error(self._format_message(msg), **kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        self.logger.exception(self._format_message(msg), **kwargs)

    def add_context(self, **context: Any) -> "StructuredLogger":
        """Return a new logger with additional context fields."""
        return StructuredLogger(self.logger.name, **{**self.context, **context})
