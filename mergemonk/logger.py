"""Loguru setup shared by the webhook and the review pipeline.

Records go to stdout and to a daily rotated file under ``APP_LOG_DIR``
(``./logs`` by default). Context bound with :func:`log_with_context` is
rendered through ``{extra}`` so every line of a review run carries its
repository and pull request number.
"""

from __future__ import annotations

import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger as _logger

LOG_DIR_ENV = "APP_LOG_DIR"
LOG_LEVEL_ENV = "APP_LOG_LEVEL"
DEFAULT_LOG_DIR = Path.cwd() / "logs"

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "{extra} <level>{message}</level>"
)

_configured = False


def configure_logger(*, log_dir: str | Path | None = None, level: str | None = None) -> None:
    """Install the stdout and file sinks; later calls are no-ops."""

    global _configured
    if _configured:
        return

    target_dir = Path(log_dir or os.getenv(LOG_DIR_ENV) or DEFAULT_LOG_DIR).expanduser().resolve()
    target_dir.mkdir(parents=True, exist_ok=True)

    _logger.remove()
    _logger.add(
        sys.stdout,
        level=level or os.getenv(LOG_LEVEL_ENV, "INFO"),
        format=LOG_FORMAT,
        colorize=sys.stdout.isatty(),
    )
    # Tracebacks may include webhook payloads, so variable values stay out of the file
    _logger.add(
        target_dir / "mergemonk-{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format=LOG_FORMAT,
        rotation="50 MB",
        retention="10 days",
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )
    _configured = True


def get_logger(*, log_dir: str | Path | None = None, level: str | None = None):
    configure_logger(log_dir=log_dir, level=level)
    return _logger


def log_with_context(logger_instance, **context: str | int | None) -> Any:
    """Bind the non-empty context fields, e.g. ``repository`` and ``pull_number``."""
    return logger_instance.bind(**{key: value for key, value in context.items() if value is not None})


@contextmanager
def log_timing(logger_instance, operation: str, **context: str | int | None) -> Iterator[Any]:
    """Log how long the wrapped block took, and whether it raised.

    Usage:
        with log_timing(logger, "post_review", repository="owner/repo"):
            ...
    """
    ctx_logger = log_with_context(logger_instance, **context)
    ctx_logger.debug(f"Starting {operation}")
    started = time.perf_counter()
    try:
        yield ctx_logger
    except Exception as exc:
        ctx_logger.error(f"Failed {operation} after {time.perf_counter() - started:.3f}s: {exc}")
        raise
    ctx_logger.debug(f"Completed {operation} in {time.perf_counter() - started:.3f}s")


def log_success(logger_instance, message: str, **context: str | int | None) -> None:
    log_with_context(logger_instance, **context).info(f"=== SUCCESS: {message} ===")


def log_failure(logger_instance, message: str, error: Exception | None = None, **context: str | int | None) -> None:
    suffix = f" | Error: {error}" if error else ""
    log_with_context(logger_instance, **context).error(f"=== FAILURE: {message}{suffix} ===")
