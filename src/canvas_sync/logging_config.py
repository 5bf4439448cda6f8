#!/usr/bin/env python3
"""Logging configuration for Canvas Sync."""

import logging
import os
import sys
from pathlib import Path
from typing import Optional


LOG_LEVEL_ENV = 'CANVAS_SYNC_LOG_LEVEL'


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Setup logging configuration for Canvas Sync.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
               If None, reads from CANVAS_SYNC_LOG_LEVEL env var, defaults to INFO
        log_file: Optional path to log file. If None, logs to console only
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, 'INFO')
    level = level.upper()

    numeric_level = getattr(logging, level, None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s %(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    simple_formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    # Use detailed formatter for DEBUG, simple for others
    if numeric_level == logging.DEBUG:
        console_handler.setFormatter(detailed_formatter)
    else:
        console_handler.setFormatter(simple_formatter)

    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)

    # Suppress noisy third-party loggers
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('requests').setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug(f"Canvas Sync logging initialized at {logging.getLevelName(numeric_level)} level")
    if log_file:
        logger.debug(f"Logging to file: {log_file}")
