"""Logging configuration for chat-capture.

Every component logs under the ``chat_capture`` namespace. Long-running
processes call ``setup_logging()`` once for their component, which attaches a
file handler writing to ~/chat-capture/logs/<name>.log and, optionally, a
stderr handler. Modules only ever call ``get_logger()``.
"""

import logging
import sys
from pathlib import Path

DEFAULT_LOG_DIR = Path.home() / "chat-capture" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure logging for a chat-capture component.

    Child loggers (``chat_capture.<name>.<module>``) inherit the handlers
    configured here. If the log directory cannot be created, only the console
    handler is attached.

    Args:
        name: Component name, e.g. "collector" (also the log filename)
        log_dir: Directory for log files (defaults to ~/chat-capture/logs/)
        level: Logging level (defaults to INFO)
        console: Whether to also log to stderr (defaults to True)

    Returns:
        Configured logger instance
    """
    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR

    logger = logging.getLogger(f"chat_capture.{name}")
    logger.setLevel(level)

    # Already configured by an earlier call
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")
    except OSError:
        file_handler = None

    if file_handler is not None:
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console or file_handler is None:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a chat-capture module.

    Args:
        name: Dotted logger name, prefixed with 'chat_capture.'
            (e.g. "agent.page", "collector.ingest")

    Returns:
        Logger instance
    """
    return logging.getLogger(f"chat_capture.{name}")
