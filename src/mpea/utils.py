"""Utility functions for the enrichment pipeline."""

import logging
from pathlib import Path
from typing import Optional, Union


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level=logging.INFO):
    """Attach console and optional file handlers to the root logger.

    Module loggers under ``mpea.*`` propagate to these handlers.

    Args:
        log_dir: Directory receiving ``pipeline.log``; console only when None
        level: Logging level applied to the root logger

    Returns:
        The ``'mpea'`` package logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / 'pipeline.log'

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        root_logger.info("Logging initialized")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)

    return logging.getLogger('mpea')


def ensure_dir(path: Path) -> Path:
    """Create ``path`` with its parents if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path
