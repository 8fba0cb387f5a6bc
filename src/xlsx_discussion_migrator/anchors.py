"""Deterministic anchors for the elements of an API description.

An anchor mirrors the traversal path through the description, so
regenerating from an unchanged description always yields the same strings:

    paths./pets.get                      operation
    paths./pets.get.responses.200        response
    paths./pets.post.requestBody.name    request body property
    components.schemas.Pet.properties.id component schema property
    paths./pets.get/@summary             detail row of an element
    paths./pets.get/TitleRow             section heading row
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

HEADING_SUFFIX = "/TitleRow"
SCHEMA_DESCRIPTION_HEADER_SUFFIX = "/SchemaDescriptionHeader"
HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
DEFAULT_MAX_DEPTH = 10

_HTML_ENTITY_RE = re.compile(r"&lt;|&gt;|&amp;|&quot;|&apos;")
_NON_SLUG_RE = re.compile(r"[^a-z0-9_]")
_WHITESPACE_RE = re.compile(r"\s+")


def slugify(text: str) -> str:
    """Lower-case ``text``, turn whitespace into ``_`` and drop everything else."""
    slug = _WHITESPACE_RE.sub("_", text.lower())
    slug = _HTML_ENTITY_RE.sub("", slug)
    return _NON_SLUG_RE.sub("", slug)


def operation_anchor(path: str, method: str) -> str:
    return f"paths.{path}.{method.lower()}"


def response_anchor(operation: str, status_code: str | int) -> str:
    return f"{operation}.responses.{status_code}"


def request_body_anchor(operation: str) -> str:
    return f"{operation}.requestBody"


def response_body_anchor(response: str) -> str:
    return f"{response}.responseBody"


def headers_anchor(anchor: str) -> str:
    return f"{anchor}.headers"


def parameter_anchor(parameter_name: str | None) -> str:
    return f"components.parameters.{parameter_name or ''}"


def schema_anchor(schema_name: str) -> str:
    return f"components.schemas.{schema_name}"


def property_anchor(anchor: str, property_name: str) -> str:
    return f"{anchor}.{slugify(property_name)}"


def detail_anchor(anchor: str, detail: str) -> str:
    """Anchor of a detail row of an element, e.g. ``paths./pets.get/@summary``."""
    return f"{anchor}/@{slugify(detail)}"


def body_format_anchor(anchor: str) -> str:
    return f"{anchor}/@bodyformat"


def schema_description_header_anchor(anchor: str) -> str:
    return f"{anchor}{SCHEMA_DESCRIPTION_HEADER_SUFFIX}"


def title_row_anchor(anchor: str) -> str:
    return f"{anchor}{HEADING_SUFFIX}"


def is_heading_anchor(anchor: str) -> bool:
    return anchor.casefold().endswith(HEADING_SUFFIX.casefold())


def iter_anchors(description: Mapping[str, Any], *, max_depth: int = DEFAULT_MAX_DEPTH) -> Iterator[str]:
    """Yield every anchor of a parsed API description in traversal order.

    Args:
        description: The API description as loaded from JSON or YAML
        max_depth: Maximum nesting level followed inside schemas

    Yields:
        Anchor strings, operations first (in path order), then component schemas
    """
    for path, path_item in (description.get("paths") or {}).items():
        if not isinstance(path_item, dict):
            continue
        shared_parameters = path_item.get("parameters") or []
        for method in HTTP_METHODS:
            operation = path_item.get(method)
            if not isinstance(operation, dict):
                continue
            yield from _iter_operation(path, method, operation, shared_parameters, max_depth)

    for name, schema in ((description.get("components") or {}).get("schemas") or {}).items():
        anchor = schema_anchor(name)
        yield anchor
        yield schema_description_header_anchor(anchor)
        yield from _iter_schema_properties(f"{anchor}.properties", schema, 1, max_depth)


def _iter_operation(
    path: str,
    method: str,
    operation: dict[str, Any],
    shared_parameters: list[Any],
    max_depth: int,
) -> Iterator[str]:
    anchor = operation_anchor(path, method)
    yield anchor
    yield title_row_anchor(anchor)
    for detail in ("operationId", "summary", "description", "deprecated"):
        if detail in operation:
            yield detail_anchor(anchor, detail)

    seen_parameters: set[str] = set()
    for parameter in [*shared_parameters, *(operation.get("parameters") or [])]:
        name = _parameter_name(parameter)
        if name and name not in seen_parameters:
            seen_parameters.add(name)
            yield parameter_anchor(name)

    request_body = operation.get("requestBody")
    if isinstance(request_body, dict):
        body = request_body_anchor(anchor)
        yield body
        yield title_row_anchor(body)
        yield body_format_anchor(body)
        yield from _iter_schema_properties(body, _first_media_schema(request_body), 1, max_depth)

    for status_code, response in (operation.get("responses") or {}).items():
        response_key = response_anchor(anchor, status_code)
        yield response_key
        yield title_row_anchor(response_key)
        if not isinstance(response, dict):
            continue
        headers = response.get("headers") or {}
        if headers:
            header_key = headers_anchor(response_key)
            yield header_key
            for header_name in headers:
                yield property_anchor(header_key, header_name)
        schema = _first_media_schema(response)
        if schema:
            body = response_body_anchor(response_key)
            yield body
            yield from _iter_schema_properties(body, schema, 1, max_depth)


def _iter_schema_properties(anchor: str, schema: Any, depth: int, max_depth: int) -> Iterator[str]:
    if not isinstance(schema, dict) or depth > max_depth:
        return
    if schema.get("type") == "array" or "items" in schema:
        yield from _iter_schema_properties(anchor, schema.get("items"), depth + 1, max_depth)
    for composite in ("allOf", "oneOf", "anyOf"):
        for part in schema.get(composite) or []:
            yield from _iter_schema_properties(anchor, part, depth + 1, max_depth)
    for property_name, property_schema in (schema.get("properties") or {}).items():
        key = property_anchor(anchor, property_name)
        yield key
        yield from _iter_schema_properties(key, property_schema, depth + 1, max_depth)


def _first_media_schema(container: dict[str, Any]) -> dict[str, Any] | None:
    for media in (container.get("content") or {}).values():
        if isinstance(media, dict) and isinstance(media.get("schema"), dict):
            return media["schema"]
    return None


def _parameter_name(parameter: Any) -> str:
    if not isinstance(parameter, dict):
        return ""
    if "$ref" in parameter:
        return str(parameter["$ref"]).rsplit("/", 1)[-1]
    return str(parameter.get("name") or "")
