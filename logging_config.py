"""
Logging setup for the lithophane tools.

Every module logs under the `lithophane` namespace
(`lithophane.pipeline`, `lithophane.scad`); the command-line entry points
call `setup_logging` once. Status lines meant for the user stay as prints.
"""
import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_NAMESPACE = "lithophane"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


def setup_logging(level: int = logging.INFO, log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    Route `lithophane.*` records to stdout and, optionally, a file.

    Args:
        level: Threshold for the namespace and every handler.
        log_file: Overwritten on each call when given.

    Returns:
        The configured namespace logger.
    """
    logger = logging.getLogger(LOG_NAMESPACE)
    logger.setLevel(level)

    # A second call replaces the handlers and releases any open log file.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="w", encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug("Logging initialized.")
    return logger
