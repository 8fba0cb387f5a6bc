"""
Tests for writing migrated threads into the destination package.
"""

import pytest
from lxml import etree

from xlsx_discussion_migrator.assembler import (
    LEGACY_PLACEHOLDER,
    O_NS,
    V_NS,
    X_NS,
    PackageAssembler,
    existing_comment_cells,
    existing_thread_roots,
)
from xlsx_discussion_migrator.models import DiscussionMessage, Person
from xlsx_discussion_migrator.package import (
    COMMENTS_REL_TYPE,
    CONTENT_TYPES_PART,
    CT_NS,
    DOC_REL_NS,
    MAIN_NS,
    PERSON_REL_TYPE,
    THREADED_COMMENT_REL_TYPE,
    THREADED_NS,
    VML_DRAWING_REL_TYPE,
    XR_NS,
    WorkbookPackage,
    qn,
)


def _message(
    message_id: str,
    parent_id: str = "",
    *,
    sheet: str = "Pets_get",
    cell: str = "B4",
    text: str = "",
    person_id: str = "P1",
) -> DiscussionMessage:
    message = DiscussionMessage(
        message_id=message_id,
        parent_id=parent_id,
        person_id=person_id,
        created_at="2024-05-01T09:30:00.00",
        text=text or f"text of {message_id}",
        sheet="Old",
        cell="A1",
    )
    message.set_destination(sheet, cell)
    return message


def _only(package: WorkbookPackage, source: str, rel_type: str) -> str:
    (part,) = package.related_parts(source, rel_type)
    return part


@pytest.mark.unit
class TestFreshSheet:
    @pytest.fixture
    def written(self, workbook_builder, id_factory):
        path = workbook_builder("new.xlsx", ["Pets_get", "Info"]).save()
        package = WorkbookPackage.open(path)
        assembler = PackageAssembler(
            package, {"P1": Person("P1", "Ada Lovelace", "ada@example.com", "AD")}, id_factory=id_factory
        )
        failures = assembler.write(
            [(0, [_message("{R}"), _message("{R1}", "{R}", person_id="P9")]), (1, [_message("{S}", cell="C7")])]
        )
        assert failures == {}
        return package

    def test_threaded_comments(self, written) -> None:
        sheet = written.find_sheet("Pets_get")
        part = _only(written, sheet.part, THREADED_COMMENT_REL_TYPE)
        elements = list(written.xml(part).iter(qn(THREADED_NS, "threadedComment")))

        assert [(e.get("id"), e.get("parentId"), e.get("ref")) for e in elements] == [
            ("{R}", None, "B4"),
            ("{R1}", "{R}", "B4"),
            ("{S}", None, "C7"),
        ]
        assert elements[0].get("dT") == "2024-05-01T09:30:00.00"
        assert elements[0].findtext(qn(THREADED_NS, "text")) == "text of {R}"

    def test_legacy_notes_per_root(self, written) -> None:
        sheet = written.find_sheet("Pets_get")
        comments = written.xml(_only(written, sheet.part, COMMENTS_REL_TYPE))

        authors = [a.text for a in comments.iter(qn(MAIN_NS, "author"))]
        notes = list(comments.iter(qn(MAIN_NS, "comment")))
        assert authors == ["tc={R}", "tc={S}"]
        assert [(n.get("ref"), n.get("authorId"), n.get(qn(XR_NS, "uid"))) for n in notes] == [
            ("B4", "0", "{R}"),
            ("C7", "1", "{S}"),
        ]
        assert notes[0].findtext(f"{qn(MAIN_NS, 'text')}/{qn(MAIN_NS, 't')}") == LEGACY_PLACEHOLDER + "text of {R}"

    def test_note_shapes(self, written) -> None:
        sheet = written.find_sheet("Pets_get")
        vml = written.xml(_only(written, sheet.part, VML_DRAWING_REL_TYPE), recover=True)

        shapes = list(vml.iter(qn(V_NS, "shape")))
        assert [s.get("id") for s in shapes] == ["_x0000_s1025", "_x0000_s1026"]
        data = shapes[1].find(qn(X_NS, "ClientData"))
        assert data.findtext(qn(X_NS, "Row")) == "6"
        assert data.findtext(qn(X_NS, "Column")) == "2"
        assert data.findtext(qn(X_NS, "Anchor")) == "1, 15, 6, 2, 3, 15, 9, 16"
        assert next(vml.iter(qn(O_NS, "idmap"))).get("data") == "1"

    def test_legacy_drawing_points_at_vml(self, written) -> None:
        sheet = written.find_sheet("Pets_get")
        vml_part = _only(written, sheet.part, VML_DRAWING_REL_TYPE)
        legacy_drawing = written.xml(sheet.part).find(qn(MAIN_NS, "legacyDrawing"))

        assert legacy_drawing is not None
        assert written.relationship_target(sheet.part, legacy_drawing.get(qn(DOC_REL_NS, "id"))) == vml_part

    def test_participants(self, written) -> None:
        people = written.xml(_only(written, written.workbook_part, PERSON_REL_TYPE))
        entries = {p.get("id"): p for p in people.iter(qn(THREADED_NS, "person"))}

        assert entries["P1"].get("displayName") == "Ada Lovelace"
        assert entries["P1"].get("providerId") == "AD"
        assert entries["P9"].get("displayName") == "Comment Author"
        assert entries["P9"].get("providerId") == "None"

    def test_content_types(self, written) -> None:
        registry = written.xml(CONTENT_TYPES_PART)
        overrides = {o.get("PartName") for o in registry.iter(qn(CT_NS, "Override"))}
        defaults = {d.get("Extension") for d in registry.iter(qn(CT_NS, "Default"))}

        assert "/xl/threadedComments/threadedComment1.xml" in overrides
        assert "/xl/comments1.xml" in overrides
        assert "/xl/persons/person.xml" in overrides
        assert "vml" in defaults

    def test_untouched_sheet(self, written) -> None:
        info = written.find_sheet("Info")
        assert written.related_parts(info.part, THREADED_COMMENT_REL_TYPE) == []

    def test_survives_save(self, written, tmp_path) -> None:
        reopened = WorkbookPackage.open(written.save(tmp_path / "saved.xlsx"))
        assert existing_thread_roots(reopened) == {("Pets_get", "B4"): "{R}", ("Pets_get", "C7"): "{S}"}
        assert sorted(existing_comment_cells(reopened)) == [
            ("Pets_get", "B4"),
            ("Pets_get", "B4"),
            ("Pets_get", "B4"),
            ("Pets_get", "C7"),
            ("Pets_get", "C7"),
        ]


@pytest.mark.unit
class TestExistingParts:
    def test_appends_after_existing_notes(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).note("Pets_get", "A2", "Hand-written note").save()
        package = WorkbookPackage.open(path)
        sheet = package.find_sheet("Pets_get")
        vml_part = _only(package, sheet.part, VML_DRAWING_REL_TYPE)
        shapes_before = len(list(package.xml(vml_part, recover=True).iter(qn(V_NS, "shape"))))

        assert PackageAssembler(package, id_factory=id_factory).write([(0, [_message("{R}", cell="D9")])]) == {}

        comments = package.xml(_only(package, sheet.part, COMMENTS_REL_TYPE))
        assert [n.get("ref") for n in comments.iter(qn(MAIN_NS, "comment"))] == ["A2", "D9"]
        assert comments.nsmap["xr"] == XR_NS
        vml = package.xml(vml_part, recover=True)
        ids = [s.get("id") for s in vml.iter(qn(V_NS, "shape"))]
        assert len(ids) == shapes_before + 1
        assert len(set(ids)) == len(ids)
        assert _only(package, sheet.part, VML_DRAWING_REL_TYPE) == vml_part
        assert len(package.xml(sheet.part).findall(qn(MAIN_NS, "legacyDrawing"))) == 1

    def test_existing_note_becomes_the_thread_note(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).note("Pets_get", "A2", "Hand-written note").save()
        package = WorkbookPackage.open(path)
        sheet = package.find_sheet("Pets_get")
        vml_part = _only(package, sheet.part, VML_DRAWING_REL_TYPE)
        shapes_before = [s.get("id") for s in package.xml(vml_part, recover=True).iter(qn(V_NS, "shape"))]

        assert PackageAssembler(package, id_factory=id_factory).write([(0, [_message("{R}", cell="A2")])]) == {}

        comments = package.xml(_only(package, sheet.part, COMMENTS_REL_TYPE))
        (note,) = comments.iter(qn(MAIN_NS, "comment"))
        assert note.get("ref") == "A2"
        assert note.get(qn(XR_NS, "uid")) == "{R}"
        authors = [a.text for a in comments.find(qn(MAIN_NS, "authors"))]
        assert authors[int(note.get("authorId"))] == "tc={R}"
        assert note.findtext(f"{qn(MAIN_NS, 'text')}/{qn(MAIN_NS, 't')}") == LEGACY_PLACEHOLDER + "text of {R}"
        shapes_after = [s.get("id") for s in package.xml(vml_part, recover=True).iter(qn(V_NS, "shape"))]
        assert shapes_after == shapes_before
        threaded = package.xml(_only(package, sheet.part, THREADED_COMMENT_REL_TYPE))
        assert [(t.get("ref"), t.get("id")) for t in threaded] == [("A2", "{R}")]

    def test_legacy_drawing_precedes_table_parts(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).save()
        package = WorkbookPackage.open(path)
        sheet = package.find_sheet("Pets_get")
        worksheet = package.xml(sheet.part)
        etree.SubElement(worksheet, qn(MAIN_NS, "tableParts")).set("count", "0")

        PackageAssembler(package, id_factory=id_factory).write([(0, [_message("{R}")])])

        names = [etree.QName(child).localname for child in package.xml(sheet.part)]
        assert names.index("legacyDrawing") == names.index("tableParts") - 1

    def test_people_are_not_duplicated(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).person("P1", "Ada Lovelace").save()
        package = WorkbookPackage.open(path)

        PackageAssembler(package, id_factory=id_factory).write([(0, [_message("{R}")])])

        people = package.xml(_only(package, package.workbook_part, PERSON_REL_TYPE))
        assert [p.get("id") for p in people.iter(qn(THREADED_NS, "person"))] == ["P1"]

    def test_anonymous_author_gets_one_synthesized_person(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).save()
        package = WorkbookPackage.open(path)

        PackageAssembler(package, id_factory=id_factory).write(
            [(0, [_message("{R}", person_id=""), _message("{R1}", "{R}", person_id="")])]
        )

        sheet = package.find_sheet("Pets_get")
        threaded = package.xml(_only(package, sheet.part, THREADED_COMMENT_REL_TYPE))
        person_ids = {t.get("personId") for t in threaded}
        assert person_ids == {"{00000000-0000-0000-0000-000000000001}"}


@pytest.mark.unit
class TestThreadAtomicity:
    def test_broken_thread_is_written_not_at_all(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).save()
        package = WorkbookPackage.open(path)

        failures = PackageAssembler(package, id_factory=id_factory).write(
            [
                (0, [_message("{R}"), _message("{R1}", "{R}", text="bad \x01 control character")]),
                (1, [_message("{S}", cell="C7")]),
            ]
        )

        assert list(failures) == [0]
        sheet = package.find_sheet("Pets_get")
        threaded = package.xml(_only(package, sheet.part, THREADED_COMMENT_REL_TYPE))
        assert [t.get("id") for t in threaded] == ["{S}"]
        comments = package.xml(_only(package, sheet.part, COMMENTS_REL_TYPE))
        assert [n.get("ref") for n in comments.iter(qn(MAIN_NS, "comment"))] == ["C7"]

    def test_thread_joining_a_failed_thread_fails_too(self, workbook_builder, id_factory) -> None:
        path = workbook_builder("new.xlsx", ["Pets_get"]).save()
        package = WorkbookPackage.open(path)

        failures = PackageAssembler(package, id_factory=id_factory).write(
            [(0, [_message("{R}", text="bad \x01")]), (1, [_message("{J}", "{R}")])]
        )

        assert sorted(failures) == [0, 1]
