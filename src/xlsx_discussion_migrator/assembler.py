"""Write migrated threads into the parts of the destination workbook.

Excel keeps one discussion in several places, all tied to the threaded
comment identifier of its root:

- ``xl/threadedComments/threadedCommentN.xml``: one ``threadedComment`` per
  message, replies pointing at the root through ``parentId``
- ``xl/commentsN.xml``: one legacy note per thread, authored ``tc=<root id>``
  and carrying the root id as ``xr:uid``
- ``xl/drawings/vmlDrawingN.vml``: the note shape of each legacy note, linked
  from the sheet's ``<legacyDrawing>``
- ``xl/persons/person.xml``: the workbook-wide participant directory

Existing parts are appended to, never replaced. A plain note already on a
cell receiving a thread becomes the legacy note of that thread.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from lxml import etree

from .cells import column_index, normalize_cell_reference, split_cell_reference
from .config import DEFAULT_DISPLAY_NAME
from .exceptions import PackageError
from .package import (
    COMMENTS_CONTENT_TYPE,
    COMMENTS_REL_TYPE,
    DOC_REL_NS,
    MAIN_NS,
    MC_NS,
    PERSON_CONTENT_TYPE,
    PERSON_REL_TYPE,
    THREADED_COMMENT_REL_TYPE,
    THREADED_COMMENTS_CONTENT_TYPE,
    THREADED_NS,
    VML_DRAWING_CONTENT_TYPE,
    VML_DRAWING_REL_TYPE,
    XR_NS,
    qn,
)
from .threads import new_comment_id

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from .models import DiscussionMessage, Person
    from .package import SheetInfo, WorkbookPackage

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

V_NS = "urn:schemas-microsoft-com:vml"
O_NS = "urn:schemas-microsoft-com:office:office"
X_NS = "urn:schemas-microsoft-com:office:excel"
XML_NS = "http://www.w3.org/XML/1998/namespace"

# Body Excel writes into the legacy note so older versions can still read the thread
LEGACY_PLACEHOLDER = (
    "[Threaded comment]\n\n"
    "Your version of Excel allows you to read this threaded comment; however, any edits to it "
    "will get removed if the file is opened in a newer version of Excel. "
    "Learn more: https://go.microsoft.com/fwlink/?linkid=870924\n\n"
    "Comment:\n    "
)

# Elements of CT_Worksheet that must come after <legacyDrawing>
_AFTER_LEGACY_DRAWING = (
    "legacyDrawingHF",
    "drawingHF",
    "picture",
    "oleObjects",
    "controls",
    "webPublishItems",
    "tableParts",
    "extLst",
)
_SHAPE_ID_RE = re.compile(r"^_x0000_s([0-9]+)$")
# Shape ids are allocated in blocks of 1024 per drawing, keyed by <o:idmap data>
_SHAPE_BLOCK = 1024


def _sheet_comment_parts(package: WorkbookPackage, sheet: SheetInfo) -> tuple[list[str], list[str]]:
    return (
        package.related_parts(sheet.part, THREADED_COMMENT_REL_TYPE),
        package.related_parts(sheet.part, COMMENTS_REL_TYPE),
    )


def _cells_of(package: WorkbookPackage, part_name: str, tag: str) -> list[str]:
    cells: list[str] = []
    for element in package.xml(part_name).iter(tag):
        reference = element.get("ref", "")
        try:
            cells.append(normalize_cell_reference(reference))
        except ValueError as e:
            msg = f"Comment in {part_name} has an invalid cell reference {reference!r}"
            raise PackageError(msg) from e
    return cells


def existing_comment_cells(package: WorkbookPackage) -> list[tuple[str, str]]:
    """Cells of ``package`` that already carry a note or a threaded comment.

    Raises:
        PackageError: If a comment part cannot be parsed
    """
    cells: list[tuple[str, str]] = []
    for sheet in package.sheets():
        threaded_parts, comment_parts = _sheet_comment_parts(package, sheet)
        for part_name in threaded_parts:
            cells.extend((sheet.name, cell) for cell in _cells_of(package, part_name, qn(THREADED_NS, "threadedComment")))
        for part_name in comment_parts:
            cells.extend((sheet.name, cell) for cell in _cells_of(package, part_name, qn(MAIN_NS, "comment")))
    return cells


def existing_thread_roots(package: WorkbookPackage) -> dict[tuple[str, str], str]:
    """``(sheet, cell)`` -> identifier of the thread root already on that cell."""
    roots: dict[tuple[str, str], str] = {}
    for sheet in package.sheets():
        threaded_parts, _ = _sheet_comment_parts(package, sheet)
        for part_name in threaded_parts:
            for element in package.xml(part_name).iter(qn(THREADED_NS, "threadedComment")):
                message_id = element.get("id", "")
                parent_id = element.get("parentId", "")
                if not message_id or (parent_id and parent_id != message_id):
                    continue
                reference = element.get("ref", "")
                try:
                    cell = normalize_cell_reference(reference)
                except ValueError as e:
                    msg = f"Threaded comment {message_id} in {part_name} has an invalid cell reference {reference!r}"
                    raise PackageError(msg) from e
                roots.setdefault((sheet.name, cell), message_id)
    return roots


def _with_namespaces(root: etree._Element, namespaces: Mapping[str, str]) -> etree._Element:
    """Copy of ``root`` declaring ``namespaces`` too; lxml cannot add declarations in place."""
    if all(root.nsmap.get(prefix) == uri for prefix, uri in namespaces.items()):
        return root
    nsmap = {**root.nsmap, **namespaces}
    copy = etree.Element(root.tag, attrib=dict(root.attrib), nsmap=nsmap)
    copy.text = root.text
    copy.extend(list(root))
    return copy


@dataclass
class _Record:
    """Elements built for one message, attached only once the whole thread built."""

    message: DiscussionMessage
    threaded: etree._Element
    note: etree._Element | None = None
    shape: etree._Element | None = None


@dataclass
class _SheetParts:
    """The comment parts of one destination sheet, created on first use."""

    sheet: SheetInfo
    threaded_part: str
    comments_part: str
    vml_part: str
    notes: dict[str, etree._Element] = field(default_factory=dict)
    next_shape: int = 0


class PackageAssembler:
    """Appends migrated messages to the destination package.

    Args:
        package: The destination workbook, modified in memory
        people: Participant directory of the source workbook
        default_display_name: Name used for authors missing from ``people``
        id_factory: Source of identifiers for synthesized participants
    """

    def __init__(
        self,
        package: WorkbookPackage,
        people: Mapping[str, Person] | None = None,
        *,
        default_display_name: str = DEFAULT_DISPLAY_NAME,
        id_factory: Callable[[], str] = new_comment_id,
    ) -> None:
        self.package = package
        self.people: dict[str, Person] = dict(people or {})
        self.default_display_name = default_display_name
        self.id_factory = id_factory
        self._sheets: dict[str, _SheetParts] = {}
        self._person_ids: list[str] = []
        self._anonymous_person_id: str | None = None

    def write(self, groups: Iterable[tuple[int, Sequence[DiscussionMessage]]]) -> dict[int, str]:
        """Write every group, a group being the messages of one thread, roots first.

        A group is written completely or not at all.

        Returns:
            Index of each group that could not be written -> reason
        """
        failures: dict[int, str] = {}
        failed_ids: set[str] = set()
        for index, messages in groups:
            group_ids = {message.message_id for message in messages}
            broken_parent = next(
                (m.parent_id for m in messages if m.parent_id in failed_ids and m.parent_id not in group_ids),
                None,
            )
            if broken_parent is not None:
                failures[index] = f"thread it joins ({broken_parent}) could not be written"
                failed_ids |= group_ids
                continue
            try:
                records = [self._build(message) for message in messages]
            except ValueError as e:
                logger.error(f"Cannot write thread {messages[0].message_id if messages else index}: {e}")
                failures[index] = str(e)
                failed_ids |= group_ids
                continue
            for record in records:
                self._attach(record)

        self._write_people()
        return failures

    # Building

    def _person_id(self, message: DiscussionMessage) -> str:
        if message.person_id:
            return message.person_id
        if self._anonymous_person_id is None:
            self._anonymous_person_id = self.id_factory()
        return self._anonymous_person_id

    def _build(self, message: DiscussionMessage) -> _Record:
        destination = message.destination
        if destination is None:
            msg = f"message {message.message_id} has no destination"
            raise ValueError(msg)
        sheet_name, cell = destination
        # Prepares the sheet's parts, so attaching cannot fail halfway through a thread
        self._sheet_parts(sheet_name)
        cell = normalize_cell_reference(cell)

        threaded = etree.Element(qn(THREADED_NS, "threadedComment"))
        threaded.set("ref", cell)
        if message.created_at:
            threaded.set("dT", message.created_at)
        threaded.set("personId", self._person_id(message))
        threaded.set("id", message.message_id)
        if message.parent_id:
            threaded.set("parentId", message.parent_id)
        etree.SubElement(threaded, qn(THREADED_NS, "text")).text = message.text
        record = _Record(message=message, threaded=threaded)

        if not message.parent_id:
            record.note = self._build_note(cell, message)
            record.shape = self._build_shape(cell)
        return record

    @staticmethod
    def _build_note(cell: str, message: DiscussionMessage) -> etree._Element:
        note = etree.Element(qn(MAIN_NS, "comment"))
        note.set("ref", cell)
        note.set("authorId", "0")
        note.set("shapeId", "0")
        note.set(qn(XR_NS, "uid"), message.message_id)
        text = etree.SubElement(note, qn(MAIN_NS, "text"))
        run = etree.SubElement(text, qn(MAIN_NS, "t"))
        run.set(qn(XML_NS, "space"), "preserve")
        run.text = LEGACY_PLACEHOLDER + message.text
        return note

    @staticmethod
    def _build_shape(cell: str) -> etree._Element:
        column, row = split_cell_reference(cell)
        # VML rows and columns are 0-based
        row_index = row - 1
        shape = etree.Element(qn(V_NS, "shape"))
        shape.set("type", "#_x0000_t202")
        shape.set(
            "style",
            "position:absolute;margin-left:59.25pt;margin-top:1.5pt;width:108pt;height:59.25pt;"
            "z-index:1;visibility:hidden",
        )
        shape.set("fillcolor", "#ffffe1")
        shape.set(qn(O_NS, "insetmode"), "auto")
        etree.SubElement(shape, qn(V_NS, "fill")).set("color2", "#ffffe1")
        shadow = etree.SubElement(shape, qn(V_NS, "shadow"))
        shadow.set("on", "t")
        shadow.set("color", "black")
        shadow.set("obscured", "t")
        etree.SubElement(shape, qn(V_NS, "path")).set(qn(O_NS, "connecttype"), "none")
        textbox = etree.SubElement(shape, qn(V_NS, "textbox"))
        textbox.set("style", "mso-direction-alt:auto")
        etree.SubElement(textbox, "div").set("style", "text-align:left")
        client_data = etree.SubElement(shape, qn(X_NS, "ClientData"))
        client_data.set("ObjectType", "Note")
        etree.SubElement(client_data, qn(X_NS, "MoveWithCells"))
        etree.SubElement(client_data, qn(X_NS, "SizeWithCells"))
        etree.SubElement(client_data, qn(X_NS, "Anchor")).text = f"1, 15, {row_index}, 2, 3, 15, {row_index + 3}, 16"
        etree.SubElement(client_data, qn(X_NS, "AutoFill")).text = "False"
        etree.SubElement(client_data, qn(X_NS, "Row")).text = str(row_index)
        etree.SubElement(client_data, qn(X_NS, "Column")).text = str(column_index(column))
        return shape

    # Attaching

    def _attach(self, record: _Record) -> None:
        sheet_name, _ = record.message.destination or ("", "")
        parts = self._sheet_parts(sheet_name)
        self.package.xml(parts.threaded_part).append(record.threaded)
        self.package.mark_dirty(parts.threaded_part)
        person_id = record.threaded.get("personId", "")
        if person_id not in self._person_ids:
            self._person_ids.append(person_id)

        if record.note is None or record.shape is None:
            return
        cell = record.note.get("ref", "")
        comments = self.package.xml(parts.comments_part)
        authors = comments.find(qn(MAIN_NS, "authors"))
        author = etree.SubElement(authors, qn(MAIN_NS, "author"))
        author.text = f"tc={record.message.message_id}"
        record.note.set("authorId", str(len(authors) - 1))
        self.package.mark_dirty(parts.comments_part)

        existing = parts.notes.get(cell)
        if existing is not None:
            self._take_over_note(parts, existing, record)
            return
        comments.find(qn(MAIN_NS, "commentList")).append(record.note)
        parts.notes[cell] = record.note
        self._add_shape(parts, record.shape)

    def _take_over_note(self, parts: _SheetParts, note: etree._Element, record: _Record) -> None:
        """Turn the plain note already on the cell into the shadow of the migrated thread.

        A cell holds one note, so the note keeps its place and shape and takes
        the identity, author and body of the thread root.
        """
        cell = note.get("ref", "")
        for attribute in ("authorId", qn(XR_NS, "uid")):
            note.set(attribute, record.note.get(attribute, ""))
        for child in note.findall(qn(MAIN_NS, "text")):
            note.remove(child)
        note.append(record.note.find(qn(MAIN_NS, "text")))
        logger.info(f"{parts.sheet.name}!{cell} had a plain note, it now carries the migrated thread")
        if self._find_shape(parts, cell) is None:
            self._add_shape(parts, record.shape)

    def _find_shape(self, parts: _SheetParts, cell: str) -> etree._Element | None:
        column, row = split_cell_reference(cell)
        for shape in self.package.xml(parts.vml_part, recover=True).iter(qn(V_NS, "shape")):
            client_data = shape.find(qn(X_NS, "ClientData"))
            if client_data is None or client_data.get("ObjectType") != "Note":
                continue
            position = (
                client_data.findtext(qn(X_NS, "Row"), "").strip(),
                client_data.findtext(qn(X_NS, "Column"), "").strip(),
            )
            if position == (str(row - 1), str(column_index(column))):
                return shape
        return None

    def _add_shape(self, parts: _SheetParts, shape: etree._Element) -> None:
        shape.set("id", f"_x0000_s{parts.next_shape}")
        parts.next_shape += 1
        self.package.xml(parts.vml_part, recover=True).append(shape)
        self.package.mark_dirty(parts.vml_part)

    def _sheet_parts(self, sheet_name: str) -> _SheetParts:
        key = sheet_name.casefold()
        if key not in self._sheets:
            sheet = self.package.find_sheet(sheet_name)
            if sheet is None:
                msg = f"Destination sheet {sheet_name!r} does not exist"
                raise ValueError(msg)
            vml_part = self._vml_part(sheet)
            comments_part = self._comments_part(sheet)
            notes = {
                normalize_cell_reference(element.get("ref", "")): element
                for element in self.package.xml(comments_part).iter(qn(MAIN_NS, "comment"))
                if element.get("ref")
            }
            self._sheets[key] = _SheetParts(
                sheet=sheet,
                threaded_part=self._threaded_part(sheet),
                comments_part=comments_part,
                vml_part=vml_part,
                notes=notes,
                next_shape=self._next_shape_id(vml_part),
            )
        return self._sheets[key]

    def _threaded_part(self, sheet: SheetInfo) -> str:
        existing = self.package.related_parts(sheet.part, THREADED_COMMENT_REL_TYPE)
        if existing:
            return existing[0]
        part = self.package.next_part_name("xl/threadedComments/threadedComment{}.xml")
        root = etree.Element(qn(THREADED_NS, "ThreadedComments"), nsmap={None: THREADED_NS, "x": MAIN_NS})
        self.package.set_xml(part, root)
        self.package.ensure_override(part, THREADED_COMMENTS_CONTENT_TYPE)
        self.package.add_relationship(sheet.part, THREADED_COMMENT_REL_TYPE, part)
        logger.debug(f"Created {part} for sheet {sheet.name!r}")
        return part

    def _comments_part(self, sheet: SheetInfo) -> str:
        namespaces = {"mc": MC_NS, "xr": XR_NS}
        existing = self.package.related_parts(sheet.part, COMMENTS_REL_TYPE)
        if existing:
            part = existing[0]
            root = self.package.xml(part)
            extended = _with_namespaces(root, namespaces)
            if extended is not root:
                self.package.set_xml(part, extended)
                root = extended
        else:
            part = self.package.next_part_name("xl/comments{}.xml")
            root = etree.Element(qn(MAIN_NS, "comments"), nsmap={None: MAIN_NS, **namespaces})
            self.package.set_xml(part, root)
            self.package.ensure_override(part, COMMENTS_CONTENT_TYPE)
            self.package.add_relationship(sheet.part, COMMENTS_REL_TYPE, part)
            logger.debug(f"Created {part} for sheet {sheet.name!r}")

        ignorable = root.get(qn(MC_NS, "Ignorable"), "").split()
        if "xr" not in ignorable:
            root.set(qn(MC_NS, "Ignorable"), " ".join([*ignorable, "xr"]))
        if root.find(qn(MAIN_NS, "authors")) is None:
            root.insert(0, etree.Element(qn(MAIN_NS, "authors")))
        if root.find(qn(MAIN_NS, "commentList")) is None:
            root.find(qn(MAIN_NS, "authors")).addnext(etree.Element(qn(MAIN_NS, "commentList")))
        self.package.mark_dirty(part)
        return part

    def _vml_part(self, sheet: SheetInfo) -> str:
        existing = self.package.related_parts(sheet.part, VML_DRAWING_REL_TYPE)
        if existing:
            part = existing[0]
            rel_id = next(
                rel.rel_id for rel in self.package.relationships(sheet.part) if rel.target == part
            )
        else:
            part = self.package.next_part_name("xl/drawings/vmlDrawing{}.vml")
            root = etree.Element("xml", nsmap={"v": V_NS, "o": O_NS, "x": X_NS})
            layout = etree.SubElement(root, qn(O_NS, "shapelayout"))
            layout.set(qn(V_NS, "ext"), "edit")
            idmap = etree.SubElement(layout, qn(O_NS, "idmap"))
            idmap.set(qn(V_NS, "ext"), "edit")
            idmap.set("data", str(self._next_idmap_block()))
            shape_type = etree.SubElement(root, qn(V_NS, "shapetype"))
            shape_type.set("id", "_x0000_t202")
            shape_type.set("coordsize", "21600,21600")
            shape_type.set(qn(O_NS, "spt"), "202")
            shape_type.set("path", "m,l,21600r21600,l21600,xe")
            etree.SubElement(shape_type, qn(V_NS, "stroke")).set("joinstyle", "miter")
            path = etree.SubElement(shape_type, qn(V_NS, "path"))
            path.set("gradientshapeok", "t")
            path.set(qn(O_NS, "connecttype"), "rect")
            self.package.set_xml(part, root)
            self.package.ensure_default("vml", VML_DRAWING_CONTENT_TYPE)
            rel_id = self.package.add_relationship(sheet.part, VML_DRAWING_REL_TYPE, part)
            logger.debug(f"Created {part} for sheet {sheet.name!r}")
        self._ensure_legacy_drawing(sheet, rel_id)
        return part

    def _vml_parts(self) -> list[str]:
        return [name for name in self.package.part_names() if name.lower().endswith(".vml")]

    def _next_idmap_block(self) -> int:
        blocks = [0]
        for part in self._vml_parts():
            for idmap in self.package.xml(part, recover=True).iter(qn(O_NS, "idmap")):
                blocks.extend(int(value) for value in re.findall(r"[0-9]+", idmap.get("data", "")))
        return max(blocks) + 1

    def _next_shape_id(self, vml_part: str) -> int:
        root = self.package.xml(vml_part, recover=True)
        used = [
            int(match.group(1))
            for shape in root.iter(qn(V_NS, "shape"))
            if (match := _SHAPE_ID_RE.match(shape.get("id", "")))
        ]
        if used:
            return max(used) + 1
        idmap = next(root.iter(qn(O_NS, "idmap")), None)
        blocks = re.findall(r"[0-9]+", idmap.get("data", "")) if idmap is not None else []
        block = int(blocks[0]) if blocks else 1
        return block * _SHAPE_BLOCK + 1

    def _ensure_legacy_drawing(self, sheet: SheetInfo, rel_id: str) -> None:
        worksheet = self.package.xml(sheet.part)
        legacy_drawing = worksheet.find(qn(MAIN_NS, "legacyDrawing"))
        if legacy_drawing is not None:
            if legacy_drawing.get(qn(DOC_REL_NS, "id")) != rel_id:
                legacy_drawing.set(qn(DOC_REL_NS, "id"), rel_id)
                self.package.mark_dirty(sheet.part)
            return

        if worksheet.nsmap.get("r") != DOC_REL_NS:
            worksheet = _with_namespaces(worksheet, {"r": DOC_REL_NS})
            self.package.set_xml(sheet.part, worksheet)
        legacy_drawing = etree.Element(qn(MAIN_NS, "legacyDrawing"))
        legacy_drawing.set(qn(DOC_REL_NS, "id"), rel_id)
        follower = next(
            (child for child in worksheet if isinstance(child.tag, str) and etree.QName(child).localname in _AFTER_LEGACY_DRAWING),
            None,
        )
        if follower is not None:
            follower.addprevious(legacy_drawing)
        else:
            worksheet.append(legacy_drawing)
        self.package.mark_dirty(sheet.part)

    # Participants

    def _write_people(self) -> None:
        if not self._person_ids:
            return
        existing_parts = self.package.related_parts(self.package.workbook_part, PERSON_REL_TYPE)
        if existing_parts:
            part = existing_parts[0]
            root = self.package.xml(part)
        else:
            part = "xl/persons/person.xml"
            if self.package.has_part(part):
                part = self.package.next_part_name("xl/persons/person{}.xml")
            root = etree.Element(qn(THREADED_NS, "personList"), nsmap={None: THREADED_NS, "x": MAIN_NS})
            self.package.set_xml(part, root)
            self.package.ensure_override(part, PERSON_CONTENT_TYPE)
            self.package.add_relationship(self.package.workbook_part, PERSON_REL_TYPE, part)
            logger.debug(f"Created {part}")

        known = {element.get("id", "") for element in root.iter(qn(THREADED_NS, "person"))}
        added = 0
        for person_id in self._person_ids:
            if person_id in known:
                continue
            source = self.people.get(person_id)
            element = etree.SubElement(root, qn(THREADED_NS, "person"))
            element.set("displayName", source.display_name if source and source.display_name else self.default_display_name)
            element.set("id", person_id)
            if source and source.user_id:
                element.set("userId", source.user_id)
            element.set("providerId", source.provider_id if source else "None")
            known.add(person_id)
            added += 1
        self.package.mark_dirty(part)
        logger.debug(f"Added {added} participants to {part}")
