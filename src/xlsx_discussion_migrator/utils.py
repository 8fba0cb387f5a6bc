"""
Utility functions for the discussion migration tool.
"""

from __future__ import annotations

import logging

DEFAULT_LOG_FILE = "migration.log"


def setup_logging(*, verbose: bool = False, log_file: str | None = DEFAULT_LOG_FILE) -> None:
    """Configure logging for the migration process.

    Messages go to stderr and, unless ``log_file`` is ``None``, are appended to ``log_file``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(level=level, format="%(asctime)s - %(levelname)s - %(message)s", handlers=handlers)
