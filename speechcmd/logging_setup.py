"""Logging configuration for the speechcmd daemon."""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    """Configure root logging with a console handler and an optional file handler.

    Args:
        level: Logging level name (e.g. "INFO").
        log_file: Optional path of the log file to append to.
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers from a previous call
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"Could not open log file {log_file}: {e}")
