"""
Custom exception classes for the workbook discussion migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class PackageError(MigrationError):
    """Raised when a workbook package cannot be opened, parsed or located."""


class MappingError(MigrationError, ValueError):
    """Raised when a cell mapping would break the one-location-per-anchor rule."""
