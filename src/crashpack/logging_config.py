"""
Centralized Logging Configuration

Two kinds of logging are used:

- Module loggers (``logging.getLogger(__name__)``) for developer-facing detail.
  ``configure_logging()`` attaches console and optional file handlers to the
  ``crashpack`` logger.
- The run log: one human-readable line per step, written to
  ``diagnostics.log`` inside the staging area and echoed to stdout. It travels
  inside the archive, so support can see what was skipped or failed.

Usage:
    from crashpack.logging_config import configure_logging, open_run_log

    configure_logging(log_level="DEBUG")

    run_log = open_run_log(staging_dir)
    run_log.info("Recording OS version")
    close_run_log(run_log)

Environment Variables:
    CRASHPACK_LOG_DIR - Directory for the developer log file
    CRASHPACK_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

RUN_LOG_NAME = "crashpack.run"
RUN_LOG_FILENAME = "diagnostics.log"


def configure_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    log_to_console: bool = True,
    log_filename: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the ``crashpack`` package logger.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for a developer log file. No file is written if None
            and CRASHPACK_LOG_DIR is unset.
        log_to_console: Whether to log to stderr
        log_filename: Custom log filename (default: crashpack_<timestamp>.log)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("crashpack")

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    if log_level is None:
        log_level = os.environ.get("CRASHPACK_LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console output stays on stderr so it never interleaves with the run log
    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.WARNING)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_dir is None and "CRASHPACK_LOG_DIR" in os.environ:
        log_dir = Path(os.environ["CRASHPACK_LOG_DIR"])

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_filename = f"crashpack_{timestamp}.log"

        file_handler = logging.FileHandler(log_dir / log_filename, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.debug(f"Logging to: {log_dir / log_filename}")

    return logger


def open_run_log(staging_dir: Path, echo: bool = True) -> logging.Logger:
    """
    Attach the run log to ``<staging_dir>/diagnostics.log``.

    Args:
        staging_dir: Staging directory owning the log file
        echo: Also write each line to stdout

    Returns:
        The run logger
    """
    run_log = logging.getLogger(RUN_LOG_NAME)
    close_run_log(run_log)
    run_log.setLevel(logging.INFO)
    # The run log is a product artifact, keep it out of the developer log
    run_log.propagate = False

    formatter = logging.Formatter(fmt="%(message)s")

    file_handler = logging.FileHandler(Path(staging_dir) / RUN_LOG_FILENAME, mode="a", encoding="utf-8")
    file_handler.setFormatter(formatter)
    run_log.addHandler(file_handler)

    if echo:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        run_log.addHandler(stream_handler)

    return run_log


def close_run_log(run_log: Optional[logging.Logger] = None) -> None:
    """Flush and detach every handler of the run log."""
    run_log = run_log or logging.getLogger(RUN_LOG_NAME)
    for handler in list(run_log.handlers):
        handler.flush()
        handler.close()
        run_log.removeHandler(handler)
