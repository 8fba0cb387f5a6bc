"""
Workbook Discussion Migration Tool

Carries the open review discussions (threaded comments) of a generated API
documentation workbook over to the workbook regenerated from a newer API
description, re-anchoring each discussion on the element it was about.
"""

from __future__ import annotations

from .cli import main
from .config import MigrationOptions
from .exceptions import MappingError, MigrationError, PackageError
from .mapping_store import read_mappings, write_mappings
from .migrator import DiscussionMigrator, MigrationResult, MigrationStats, migrate_discussions
from .models import CellMapping, FailureReason, MappingContext, PlacementStrategy, WorksheetMapping
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "CellMapping",
    "DiscussionMigrator",
    "FailureReason",
    "MappingContext",
    "MappingError",
    "MigrationError",
    "MigrationOptions",
    "MigrationResult",
    "MigrationStats",
    "PackageError",
    "PlacementStrategy",
    "WorksheetMapping",
    "main",
    "migrate_discussions",
    "read_mappings",
    "setup_logging",
    "write_mappings",
]
