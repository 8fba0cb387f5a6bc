"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings

It also provides a small workbook builder: base workbooks are written with
openpyxl, then threaded comments, participants and cell mappings are added
through the package layer the way Excel and the generator store them.
"""

from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any

import openpyxl
import pytest
from lxml import etree
from openpyxl.comments import Comment

from xlsx_discussion_migrator.mapping_store import write_mappings
from xlsx_discussion_migrator.models import MappingContext
from xlsx_discussion_migrator.package import (
    MAIN_NS,
    PERSON_CONTENT_TYPE,
    PERSON_REL_TYPE,
    THREADED_COMMENT_REL_TYPE,
    THREADED_COMMENTS_CONTENT_TYPE,
    THREADED_NS,
    WorkbookPackage,
    qn,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Generator, Sequence
    from pathlib import Path

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    A clean migration logs nothing above INFO; lost discussions and shared
    note cells are logged as warnings, so integration scenarios that expect
    them are written as unit tests.
    """
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []
    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.
    """
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        _integration_test_warnings.pop(test_nodeid, None)


class WorkbookBuilder:
    """Builds a generated workbook carrying discussions and mappings."""

    def __init__(self, path: Path, sheets: Sequence[str]) -> None:
        self.path = path
        self.sheets = list(sheets)
        self.mappings = MappingContext()
        self.people: list[tuple[str, str]] = []
        self.comments: dict[str, list[dict[str, Any]]] = {}
        self.notes: list[tuple[str, str, str]] = []

    def person(self, person_id: str, display_name: str) -> WorkbookBuilder:
        self.people.append((person_id, display_name))
        return self

    def comment(
        self,
        sheet: str,
        cell: str,
        text: str,
        *,
        comment_id: str,
        parent_id: str = "",
        person_id: str = "P1",
        done: bool = False,
        created: str = "2024-05-01T09:30:00.00",
    ) -> WorkbookBuilder:
        self.comments.setdefault(sheet, []).append(
            {
                "ref": cell,
                "dT": created,
                "personId": person_id,
                "id": comment_id,
                "parentId": parent_id,
                "done": done,
                "text": text,
            }
        )
        return self

    def note(self, sheet: str, cell: str, text: str) -> WorkbookBuilder:
        """Plain legacy note, written by openpyxl."""
        self.notes.append((sheet, cell, text))
        return self

    def map_cell(self, sheet: str, cell: str, anchor: str) -> WorkbookBuilder:
        self.mappings.add_cell(sheet, cell, anchor)
        return self

    def map_row(self, sheet: str, row: int, anchor: str) -> WorkbookBuilder:
        self.mappings.add_row(sheet, row, anchor)
        return self

    def save(self) -> Path:
        workbook = openpyxl.Workbook()
        first = workbook.active
        first.title = self.sheets[0]
        for name in self.sheets[1:]:
            workbook.create_sheet(name)
        for worksheet in workbook.worksheets:
            worksheet["A1"] = worksheet.title
        for sheet, cell, text in self.notes:
            workbook[sheet][cell].comment = Comment(text, "Reviewer")
        workbook.save(self.path)

        package = WorkbookPackage.open(self.path)
        for sheet_name, comments in self.comments.items():
            self._write_threaded_comments(package, sheet_name, comments)
        if self.people:
            self._write_people(package)
        if len(self.mappings):
            write_mappings(package, self.mappings.freeze())
        package.save()
        return self.path

    @staticmethod
    def _write_threaded_comments(package: WorkbookPackage, sheet_name: str, comments: list[dict[str, Any]]) -> None:
        sheet = package.find_sheet(sheet_name)
        assert sheet is not None, sheet_name
        root = etree.Element(qn(THREADED_NS, "ThreadedComments"), nsmap={None: THREADED_NS, "x": MAIN_NS})
        for comment in comments:
            element = etree.SubElement(root, qn(THREADED_NS, "threadedComment"))
            for attribute in ("ref", "dT", "personId", "id", "parentId"):
                if comment[attribute]:
                    element.set(attribute, comment[attribute])
            if comment["done"]:
                element.set("done", "1")
            etree.SubElement(element, qn(THREADED_NS, "text")).text = comment["text"]
        part = package.next_part_name("xl/threadedComments/threadedComment{}.xml")
        package.set_xml(part, root)
        package.ensure_override(part, THREADED_COMMENTS_CONTENT_TYPE)
        package.add_relationship(sheet.part, THREADED_COMMENT_REL_TYPE, part)

    def _write_people(self, package: WorkbookPackage) -> None:
        root = etree.Element(qn(THREADED_NS, "personList"), nsmap={None: THREADED_NS, "x": MAIN_NS})
        for person_id, display_name in self.people:
            element = etree.SubElement(root, qn(THREADED_NS, "person"))
            element.set("displayName", display_name)
            element.set("id", person_id)
            element.set("userId", f"{display_name.lower().replace(' ', '.')}@example.com")
            element.set("providerId", "AD")
        part = "xl/persons/person.xml"
        package.set_xml(part, root)
        package.ensure_override(part, PERSON_CONTENT_TYPE)
        package.add_relationship(package.workbook_part, PERSON_REL_TYPE, part)


@pytest.fixture
def workbook_builder(tmp_path: Path) -> Callable[..., WorkbookBuilder]:
    """Factory: ``workbook_builder("old.xlsx", ["Pets_get", "Info"])``."""

    def build(name: str, sheets: Sequence[str]) -> WorkbookBuilder:
        return WorkbookBuilder(tmp_path / name, sheets)

    return build


@pytest.fixture
def id_factory() -> Callable[[], str]:
    """Deterministic comment identifiers in Excel's braced form."""
    counter = itertools.count(1)
    return lambda: f"{{00000000-0000-0000-0000-{next(counter):012d}}}"
