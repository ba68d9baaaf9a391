"""
Storyreel Logging Configuration

Every module logs under the ``storyreel`` namespace so one call to
``setup_logging`` controls the pipeline, workers, provider clients and API.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "storyreel"

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
VERBOSE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(funcName)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers that would otherwise log every provider poll
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_configured = False


def resolve_level(level: Union[str, int, None]) -> int:
    """Turn "debug", "INFO" or a numeric level into a logging level; unknown names map to INFO."""
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: Union[str, int, None] = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    verbose: bool = False,
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Level name or number
        log_file: Optional file that receives the same records as the console
        verbose: Include line numbers and function names
        console_output: Write to stdout

    Returns:
        The ``storyreel`` root logger
    """
    global _configured

    numeric_level = resolve_level(level)
    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(VERBOSE_FORMAT if verbose else DEFAULT_FORMAT, datefmt=DATE_FORMAT)
    handlers: list = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if numeric_level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    root_logger.debug(f"Logging configured at {logging.getLevelName(numeric_level)}")
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Return ``storyreel.<name>``, configuring defaults on first use."""
    if not _configured:
        setup_logging()
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
