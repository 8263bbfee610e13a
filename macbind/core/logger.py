# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Logging setup for macbind.

All modules log through children of the "macbind" logger. The CLI calls
configure_logging() once per process; library code never configures handlers.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import ObservabilityConfig

ROOT_LOGGER_NAME = "macbind"

FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
CONSOLE_FORMAT = "[%(asctime)s] [%(name)s:%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _parse_level(level: str) -> int:
    """Convert string level to logging constant"""
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level.upper(), logging.INFO)


def configure_logging(
    settings: Optional[ObservabilityConfig] = None,
    log_file: Optional[Path] = None,
    console: Optional[bool] = None,
) -> logging.Logger:
    """
    Install handlers on the macbind logger.

    Args:
        settings: Observability settings (level, rotation)
        log_file: Rotating log file; None disables file output
        console: Override settings.console

    Returns:
        The configured "macbind" logger
    """
    settings = settings or ObservabilityConfig()
    level = _parse_level(settings.log_level)
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    # Reconfiguring replaces handlers instead of stacking them
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level)

    want_console = settings.console if console is None else console

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            # Fall back to stderr so the run is still observable
            print(f"macbind: cannot open log file {log_file}: {e}", file=sys.stderr)
            want_console = True
        else:
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
            file_handler.setLevel(level)
            logger.addHandler(file_handler)

    if want_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, DATE_FORMAT))
        console_handler.setLevel(level)
        logger.addHandler(console_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger
