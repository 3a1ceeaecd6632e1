"""Logging configuration for quarry.

Uses loguru. A console handler on stderr is always installed; a rotating
file handler is added when ``QUARRY_LOG_DIR`` is set.

Environment variables:
- QUARRY_LOG_LEVEL: Global log level (default: INFO)
- QUARRY_LOG_DIR: Directory for rotating log files (default: unset, no file log)
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from time import perf_counter

from loguru import logger

_global_log_level = os.getenv("QUARRY_LOG_LEVEL", "INFO").upper()


def _log_filter(record) -> bool:
    """Only let through records at or above the configured global level."""
    try:
        return record["level"].no >= logger.level(_global_log_level).no
    except ValueError:
        return True  # Unknown level name, allow the message


# Remove default handler
logger.remove()

logger.add(
    sys.stderr,
    level=0,  # Accept all, let filter decide
    filter=_log_filter,
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan> - <level>{message}</level>",
    colorize=True,
)

if _log_dir := os.getenv("QUARRY_LOG_DIR"):
    Path(_log_dir).mkdir(parents=True, exist_ok=True)
    logger.add(
        Path(_log_dir) / "quarry_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}",
        rotation="10 MB",
        retention="7 days",
        enqueue=True,
    )

# Records logged through the bare logger still need a name for the format string
logger.configure(extra={"name": "quarry"})


def get_logger(name: str):
    """Get a logger with the given name bound to context.

    Args:
        name: Module or component name

    Returns:
        Logger instance with name bound
    """
    return logger.bind(name=name)


@contextmanager
def log_timing(operation: str, log_instance=None, level: str = "debug"):
    """Context manager for timing operations with automatic logging.

    Yields:
        dict with 'elapsed_ms' key (populated after context exits)

    Example:
        with log_timing("embedding chunks", log) as timing:
            vectors = await embeddings.embed_documents(texts)
    """
    log_fn = log_instance or logger
    timing = {"elapsed_ms": 0.0}
    start = perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (perf_counter() - start) * 1000
        getattr(log_fn, level)(f"{operation}: {timing['elapsed_ms']:.1f}ms")


__all__ = ["logger", "get_logger", "log_timing"]
