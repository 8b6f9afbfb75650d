"""Natural keys used to recognise records written by an earlier run.

Keep this logic centralized so every strategy and every store agree on what
"the same record" means. A record whose key builder returns None is
unkeyable: the writer gives it a per-run synthetic key, so it is always
inserted and never matched against anything.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional
from uuid import uuid4

from splingest.storage.schemas import EntityKind, Record

SYNTHETIC_KEY_PREFIX = "UNKEYED:"

KeyBuilder = Callable[[Mapping[str, Any]], Optional[str]]


def _join(*parts: Any) -> Optional[str]:
    """Join key fragments, or None if any fragment is missing."""
    if any(p is None or (isinstance(p, str) and not p.strip()) for p in parts):
        return None
    return ":".join(str(p) for p in parts)


def section_key(props: Mapping[str, Any]) -> Optional[str]:
    """Priority chain: link identifier, then section GUID, then code and title."""
    if props.get("link_id"):
        return f"LINK:{props['link_id']}"
    if props.get("section_guid"):
        return f"GUID:{props['section_guid']}"
    code, title = props.get("code"), props.get("title")
    if code and title:
        return f"CODE_TITLE:{code}:{title}"
    return None


def hierarchy_key(props: Mapping[str, Any]) -> Optional[str]:
    key = _join(props.get("parent_section_id"), props.get("child_section_id"))
    return f"PARENT_CHILD:{key}" if key else None


_KEY_BUILDERS: Dict[EntityKind, KeyBuilder] = {
    EntityKind.SECTION: section_key,
    EntityKind.SECTION_HIERARCHY: hierarchy_key,
    EntityKind.DOCUMENT_REFERENCE: lambda p: _join(
        p.get("section_id"), p.get("reference_system"), p.get("reference_id")
    ),
    EntityKind.SECTION_LINK: lambda p: _join(
        p.get("section_id"), p.get("target_section_id"), p.get("href")
    ),
    EntityKind.OBSERVATION_MEDIA: lambda p: _join(p.get("section_id"), p.get("media_id")),
    EntityKind.TEXT_CONTENT: lambda p: _join(
        p.get("section_id"), p.get("sequence_number"), p.get("content_type")
    ),
    EntityKind.RENDERED_MEDIA: lambda p: _join(
        p.get("section_id"), p.get("content_sequence"), p.get("referenced_object")
    ),
    EntityKind.SECTION_INDEX: lambda p: _join(p.get("section_id")),
    EntityKind.TOLERANCE_SPECIFICATION: lambda p: _join(
        p.get("section_id"), p.get("specification_code")
    ),
    EntityKind.CERTIFICATION_LINK: lambda p: _join(p.get("section_id"), p.get("product_code")),
    EntityKind.REMS_PROTOCOL: lambda p: _join(p.get("section_id"), p.get("protocol_code")),
    EntityKind.REMS_MATERIAL: lambda p: _join(p.get("section_id"), p.get("material_guid")),
}


def natural_key(record: Record) -> Optional[str]:
    """Return the natural key of ``record`` or None when it is unkeyable."""
    builder = _KEY_BUILDERS.get(record.kind)
    if builder is None:
        return None
    return builder(record.properties)


def synthetic_key() -> str:
    """A key unique to this call, for unkeyable records."""
    return f"{SYNTHETIC_KEY_PREFIX}{uuid4().hex}"


def is_synthetic(key: str) -> bool:
    return key.startswith(SYNTHETIC_KEY_PREFIX)
