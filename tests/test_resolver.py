"""
Tests for anchor resolution against the new workbook's mappings.
"""

import pytest

from xlsx_discussion_migrator.models import DiscussionMessage, MappingContext
from xlsx_discussion_migrator.resolver import (
    ResolutionStatus,
    find_mapping,
    heading_row_above,
    mapping_for_sheet,
    resolve,
    target_cell,
)


def _message(anchor: str, cell: str = "D7") -> DiscussionMessage:
    return DiscussionMessage(
        message_id="A",
        parent_id="",
        person_id="P1",
        created_at="",
        text="",
        sheet="Pets_get",
        cell=cell,
        anchor=anchor,
    )


@pytest.fixture
def mappings():
    context = MappingContext()
    context.add_cell("Pets_get", "B4", "paths./pets.get/@summary")
    context.add_row("Pets_get", 3, "paths./pets.get/TitleRow")
    context.add_row("Pets_get", 10, "paths./pets.get.responses.200/TitleRow")
    context.add_row("Pets_get", 12, "paths./pets.get.responses.200.responseBody.id")
    context.add_row("Pets_list", 20, "shared.anchor")
    context.add_cell("Pets_post", "C5", "shared.anchor")
    return context.freeze()


@pytest.mark.unit
class TestFindMapping:
    def test_cell_mapping(self, mappings) -> None:
        mapping = find_mapping("paths./pets.get/@summary", mappings)
        assert mapping is not None
        assert mapping.cell == "B4"

    def test_cell_mapping_wins_over_earlier_row_mapping(self, mappings) -> None:
        mapping = find_mapping("shared.anchor", mappings)
        assert mapping is not None
        assert (mapping.sheet, mapping.cell) == ("Pets_post", "C5")

    def test_case_insensitive(self, mappings) -> None:
        assert find_mapping("PATHS./PETS.GET/@SUMMARY", mappings) is not None

    def test_unknown_or_empty_anchor(self, mappings) -> None:
        assert find_mapping("paths./owners.get", mappings) is None
        assert find_mapping("", mappings) is None


@pytest.mark.unit
class TestResolve:
    def test_cell_mapping_gives_its_cell(self, mappings) -> None:
        resolution = resolve(_message("paths./pets.get/@summary"), mappings)
        assert resolution.found
        assert (resolution.sheet, resolution.cell) == ("Pets_get", "B4")

    def test_row_mapping_keeps_original_column(self, mappings) -> None:
        resolution = resolve(_message("paths./pets.get.responses.200.responseBody.id", cell="F30"), mappings)
        assert resolution.found
        assert resolution.cell == "F12"
        assert target_cell("F30", resolution.mapping) == "F12"

    def test_not_found(self, mappings) -> None:
        assert resolve(_message("paths./gone"), mappings).status is ResolutionStatus.NOT_FOUND

    def test_no_anchor(self, mappings) -> None:
        assert resolve(_message(""), mappings).status is ResolutionStatus.NO_ANCHOR


@pytest.mark.unit
class TestHeadingRowAbove:
    def test_closest_heading_above(self, mappings) -> None:
        worksheet = mapping_for_sheet("pets_get", mappings)
        assert heading_row_above(worksheet, 15) == 10
        assert heading_row_above(worksheet, 11) == 10
        assert heading_row_above(worksheet, 10) == 3
        assert heading_row_above(worksheet, 9) == 3

    def test_no_heading_above(self, mappings) -> None:
        assert heading_row_above(mapping_for_sheet("Pets_get", mappings), 2) is None
        assert heading_row_above(mapping_for_sheet("Pets_post", mappings), 50) is None
        assert heading_row_above(None, 50) is None
