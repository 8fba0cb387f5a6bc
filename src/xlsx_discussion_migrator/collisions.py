"""Find a free cell when the computed destination is already taken."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .cells import make_cell_reference, normalize_cell_reference, split_cell_reference

if TYPE_CHECKING:
    from collections.abc import Iterable

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_SEARCH_WINDOW = 5


class CollisionResolver:
    """Tracks the cells claimed during one run.

    The claimed set starts with the cells that already carry a comment in the
    destination workbook and grows with every placement, so two threads
    placed in the same run never land on the same cell by accident.
    """

    def __init__(self, search_window: int = DEFAULT_SEARCH_WINDOW, occupied: Iterable[tuple[str, str]] = ()) -> None:
        self.search_window: int = search_window
        self._claimed: set[tuple[str, str]] = set()
        for sheet, cell in occupied:
            self.claim(sheet, cell)

    @staticmethod
    def _key(sheet: str, cell: str) -> tuple[str, str]:
        return sheet.casefold(), normalize_cell_reference(cell)

    def __len__(self) -> int:
        return len(self._claimed)

    def is_claimed(self, sheet: str, cell: str) -> bool:
        return self._key(sheet, cell) in self._claimed

    def claim(self, sheet: str, cell: str) -> None:
        self._claimed.add(self._key(sheet, cell))

    def same_sheet(self, sheet: str, cell: str) -> str:
        """Return ``cell`` if free, else the first free cell up to ``search_window`` rows below it.

        When the whole window is taken the original cell is returned and the
        thread ends up sharing it.
        """
        if not self.is_claimed(sheet, cell):
            return normalize_cell_reference(cell)
        column, row = split_cell_reference(cell)
        for candidate_row in range(row + 1, row + self.search_window + 1):
            candidate = make_cell_reference(column, candidate_row)
            if not self.is_claimed(sheet, candidate):
                logger.debug(f"{sheet}!{cell} is taken, using {candidate}")
                return candidate
        logger.debug(f"No free cell within {self.search_window} rows below {sheet}!{cell}, sharing it")
        return normalize_cell_reference(cell)

    def overflow(self, sheet: str, column: str) -> str:
        """First unclaimed cell of ``column``, scanning down from row 1."""
        row = 1
        while self.is_claimed(sheet, make_cell_reference(column, row)):
            row += 1
        return make_cell_reference(column, row)
