"""Logging setup for the hoc command line."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from handoff_orchestrator.constants import LOG_DIR

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> Optional[Path]:
    """Configure the package logger for stderr and an optional log file.

    Returns the log file path when file logging is enabled.
    """
    package_logger = logging.getLogger("handoff_orchestrator")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    stream_handler.setFormatter(formatter)
    package_logger.addHandler(stream_handler)

    if log_file is None and verbose:
        log_file = LOG_DIR / f"hoc-{datetime.now().strftime('%Y-%m-%dT%H-%M-%S')}.log"

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    package_logger.propagate = False
    return log_file
