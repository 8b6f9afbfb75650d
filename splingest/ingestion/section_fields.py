"""Field-level extraction for SPL ``section`` elements.

Pure functions: they read an element and return plain data. Nothing here
touches persistence, so discovery can call them for every section up front.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from splingest.ingestion.spl_xml import attr, child, path_attr, text_of


class SectionAttributes(BaseModel):
    """Descriptive attributes of one section, as found in the source document."""

    model_config = ConfigDict(frozen=True)

    link_id: Optional[str] = Field(None, description="Section ID attribute, target of linkHtml")
    section_guid: Optional[str] = Field(None, description="id/@root of the section")
    code: Optional[str] = None
    code_system: Optional[str] = None
    code_system_name: Optional[str] = None
    display_name: Optional[str] = None
    title: Optional[str] = None
    effective_time_low: Optional[str] = None
    effective_time_high: Optional[str] = None

    def to_properties(self) -> dict:
        """Return the non-empty attributes as record properties."""
        return self.model_dump(exclude_none=True)


def extract_section_guid(section: ET.Element) -> Optional[str]:
    """Return the section's ``id/@root`` (its correlation key), if any."""
    guid = path_attr(section, "id/@root")
    return guid.lower() if guid else None


def extract_effective_time(section: ET.Element) -> tuple[Optional[str], Optional[str]]:
    """Return ``(low, high)`` from ``effectiveTime``.

    A point-in-time ``effectiveTime/@value`` is reported as the low bound.
    """
    effective = child(section, "effectiveTime")
    if effective is None:
        return None, None
    value = attr(effective, "value")
    if value:
        return value, None
    return path_attr(effective, "low/@value"), path_attr(effective, "high/@value")


def extract_section_attributes(section: ET.Element) -> SectionAttributes:
    """Extract the descriptive attributes of a section element."""
    code_el = child(section, "code")
    low, high = extract_effective_time(section)
    return SectionAttributes(
        link_id=attr(section, "ID"),
        section_guid=extract_section_guid(section),
        code=attr(code_el, "code"),
        code_system=attr(code_el, "codeSystem"),
        code_system_name=attr(code_el, "codeSystemName"),
        display_name=attr(code_el, "displayName"),
        title=text_of(child(section, "title")),
        effective_time_low=low,
        effective_time_high=high,
    )
