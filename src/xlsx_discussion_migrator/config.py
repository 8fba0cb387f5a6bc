"""
Options controlling where discussions go when they lose their placement.
"""

from __future__ import annotations

from dataclasses import dataclass

from .cells import is_column
from .collisions import DEFAULT_SEARCH_WINDOW

DEFAULT_OVERFLOW_SHEET = "Info"
DEFAULT_OVERFLOW_COLUMN = "V"
DEFAULT_REPORT_SHEET = "Lost discussions"
DEFAULT_DISPLAY_NAME = "Comment Author"


@dataclass(frozen=True)
class MigrationOptions:
    """Settings of one migration run.

    Attributes:
        overflow_sheet: Sheet receiving threads that cannot stay on their own sheet
        overflow_column: Column of the overflow sheet the threads are stacked in
        search_window: Rows probed below a taken cell before sharing it
        report_sheet: Name of the sheet listing threads that could not be migrated
        write_report: Whether to add the report sheet when some threads failed
        default_display_name: Display name for authors missing from the source directory
    """

    overflow_sheet: str = DEFAULT_OVERFLOW_SHEET
    overflow_column: str = DEFAULT_OVERFLOW_COLUMN
    search_window: int = DEFAULT_SEARCH_WINDOW
    report_sheet: str = DEFAULT_REPORT_SHEET
    write_report: bool = True
    default_display_name: str = DEFAULT_DISPLAY_NAME

    def __post_init__(self) -> None:
        if not self.overflow_sheet.strip():
            msg = "Overflow sheet name must not be empty"
            raise ValueError(msg)
        if not is_column(self.overflow_column):
            msg = f"Invalid overflow column: {self.overflow_column!r}"
            raise ValueError(msg)
        object.__setattr__(self, "overflow_column", self.overflow_column.upper())
        if self.search_window < 0:
            msg = f"Search window must not be negative, got {self.search_window}"
            raise ValueError(msg)
        if self.write_report and not self.report_sheet.strip():
            msg = "Report sheet name must not be empty"
            raise ValueError(msg)
