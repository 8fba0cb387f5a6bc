"""Helpers for A1-style cell references."""

from __future__ import annotations

from openpyxl.utils.cell import column_index_from_string, coordinate_from_string
from openpyxl.utils.exceptions import CellCoordinatesException


def split_cell_reference(cell_reference: str) -> tuple[str, int]:
    """Split a reference like ``"B12"`` into ``("B", 12)``.

    Raises:
        ValueError: If the reference is not a single A1-style cell
    """
    try:
        column, row = coordinate_from_string(cell_reference.strip())
    except CellCoordinatesException as e:
        msg = f"Invalid cell reference: {cell_reference!r}"
        raise ValueError(msg) from e
    return column.upper(), row


def column_of(cell_reference: str) -> str:
    return split_cell_reference(cell_reference)[0]


def row_of(cell_reference: str) -> int:
    return split_cell_reference(cell_reference)[1]


def is_column(column: str) -> bool:
    try:
        column_index_from_string(column)
    except ValueError:
        return False
    return True


def column_index(column: str) -> int:
    """Return the 0-based index of a column (``"A"`` -> 0, ``"V"`` -> 21)."""
    try:
        return column_index_from_string(column) - 1
    except ValueError as e:
        msg = f"Invalid column: {column!r}"
        raise ValueError(msg) from e


def make_cell_reference(column: str, row: int) -> str:
    if row < 1:
        msg = f"Row must be 1 or greater, got {row}"
        raise ValueError(msg)
    return f"{column.upper()}{row}"


def normalize_cell_reference(cell_reference: str) -> str:
    """Drop ``$`` markers and upper-case the column."""
    column, row = split_cell_reference(cell_reference)
    return make_cell_reference(column, row)
