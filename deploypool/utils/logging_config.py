"""Centralized logging configuration for deploypool."""

import logging
import os
import pathlib
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging() -> None:
    """Configure logging for the dispatcher and every worker process.

    Respects DEPLOYPOOL_LOG_LEVEL environment variable:
    - DEBUG: Verbose logging
    - INFO: Info and above (default)
    - WARNING: Warning and above
    - ERROR: Error and above

    When DEPLOYPOOL_LOG_DIR is set, errors are also written to error.log and
    everything to combined.log inside that directory.
    """
    log_level_name = os.getenv("DEPLOYPOOL_LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format=LOG_FORMAT,
    )

    root = logging.getLogger()

    # Set level on all existing handlers
    for handler in root.handlers:
        handler.setLevel(log_level)

    log_dir = os.getenv("DEPLOYPOOL_LOG_DIR")
    if log_dir:
        add_file_handlers(root, pathlib.Path(log_dir), log_level)


def add_file_handlers(logger: logging.Logger, log_dir: pathlib.Path, log_level: int) -> None:
    """Attach error.log and combined.log handlers, once per logger."""
    log_dir.mkdir(parents=True, exist_ok=True)

    existing = {
        getattr(handler, "baseFilename", None) for handler in logger.handlers
    }

    for name, level in (("error.log", logging.ERROR), ("combined.log", log_level)):
        path = str((log_dir / name).resolve())
        if path in existing:
            continue

        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
