"""Namespace-tolerant navigation helpers for SPL (HL7 v3) XML trees.

SPL documents declare the ``urn:hl7-org:v3`` default namespace, but fixtures and
hand-edited files frequently omit it. All lookups here therefore match on local
element names, so the same helpers work on both.

Paths use ``/`` separated local names with an optional trailing ``@attribute``:

    >>> path_attr(section, "id/@root")
    >>> find_all(section, "subject/manufacturedProduct/subjectOf/document")
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterator, List, Optional

SPL_NAMESPACE = "urn:hl7-org:v3"
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"

_WHITESPACE_RE = re.compile(r"\s+")


def local_name(element: ET.Element) -> str:
    """Return the element tag without its ``{namespace}`` prefix."""
    tag = element.tag
    if not isinstance(tag, str):
        # Comments and processing instructions
        return ""
    return tag.rsplit("}", 1)[-1]


def children(element: ET.Element, name: str | None = None) -> List[ET.Element]:
    """Return direct children in document order, optionally filtered by local name."""
    return [c for c in element if name is None or local_name(c) == name]


def child(element: ET.Element, name: str) -> Optional[ET.Element]:
    """Return the first direct child with the given local name."""
    for c in element:
        if local_name(c) == name:
            return c
    return None


def _split_path(path: str) -> tuple[list[str], str | None]:
    parts = [p for p in path.strip("/").split("/") if p]
    attribute = None
    if parts and parts[-1].startswith("@"):
        attribute = parts.pop()[1:]
    return parts, attribute


def find_all(element: ET.Element, path: str) -> List[ET.Element]:
    """Return every element reachable by following ``path`` from ``element``.

    Each segment fans out over all matching children, preserving document order.
    """
    segments, _ = _split_path(path)
    current = [element]
    for segment in segments:
        current = [c for node in current for c in children(node, segment)]
        if not current:
            break
    return current


def find(element: ET.Element, path: str) -> Optional[ET.Element]:
    """Return the first element matched by ``path`` or None."""
    matches = find_all(element, path)
    return matches[0] if matches else None


def exists(element: ET.Element, path: str) -> bool:
    return find(element, path) is not None


def attr(element: ET.Element | None, name: str) -> Optional[str]:
    """Return a stripped attribute value, treating empty strings as missing."""
    if element is None:
        return None
    value = element.get(name)
    if value is None and name == "type":
        value = element.get(f"{{{XSI_NAMESPACE}}}type")
    if value is None:
        return None
    value = value.strip()
    return value or None


def path_attr(element: ET.Element, path: str) -> Optional[str]:
    """Resolve ``segment/.../@attribute`` (or a bare ``@attribute``) to a value."""
    segments, attribute = _split_path(path)
    if attribute is None:
        raise ValueError(f"Path must end with an @attribute segment: {path!r}")
    target = element
    for segment in segments:
        target = child(target, segment)
        if target is None:
            return None
    return attr(target, attribute)


def text_of(element: ET.Element | None) -> Optional[str]:
    """Flatten all descendant text with whitespace collapsed."""
    if element is None:
        return None
    text = _WHITESPACE_RE.sub(" ", "".join(element.itertext())).strip()
    return text or None


def path_text(element: ET.Element, path: str) -> Optional[str]:
    return text_of(find(element, path))


def iter_descendants(element: ET.Element, name: str) -> Iterator[ET.Element]:
    """Yield descendants (excluding ``element`` itself) with the given local name."""
    for node in element.iter():
        if node is not element and local_name(node) == name:
            yield node


def parse_document(path: str | Path) -> ET.Element:
    """Parse an SPL file and return the document root element."""
    return ET.parse(str(path)).getroot()


def find_structured_body(root: ET.Element) -> Optional[ET.Element]:
    """Locate ``component/structuredBody`` under a document root.

    Accepts the structured body itself, returning it unchanged.
    """
    if local_name(root) == "structuredBody":
        return root
    body = find(root, "component/structuredBody")
    if body is not None:
        return body
    return next(iter_descendants(root, "structuredBody"), None)
