"""Document-level header fields of an SPL file."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Optional

from pydantic import BaseModel, Field

from splingest.ingestion.spl_xml import attr, child, local_name, path_attr, text_of


class DocumentHeader(BaseModel):
    """Identifying header of one SPL document version."""

    document_guid: Optional[str] = Field(None, description="id/@root of the document")
    set_guid: Optional[str] = Field(None, description="setId/@root shared across versions")
    version_number: Optional[int] = None
    document_code: Optional[str] = None
    document_display_name: Optional[str] = None
    title: Optional[str] = None
    effective_time: Optional[str] = None

    @property
    def document_key(self) -> Optional[str]:
        """Stable scope for deduplication.

        The document GUID identifies one version. Without it, fall back to
        ``setId`` plus version number.
        """
        if self.document_guid:
            return self.document_guid
        if self.set_guid:
            return f"{self.set_guid}:v{self.version_number or 0}"
        return None


def extract_document_header(root: ET.Element) -> DocumentHeader:
    """Read the header of a ``document`` root element.

    Raises:
        ValueError: If ``root`` is not an SPL ``document`` element
    """
    if local_name(root) != "document":
        raise ValueError(f"Expected an SPL <document> root, got <{local_name(root)}>")

    version = path_attr(root, "versionNumber/@value")
    try:
        version_number = int(version) if version else None
    except ValueError:
        version_number = None

    code_el = child(root, "code")
    document_guid = path_attr(root, "id/@root")
    set_guid = path_attr(root, "setId/@root")
    return DocumentHeader(
        document_guid=document_guid.lower() if document_guid else None,
        set_guid=set_guid.lower() if set_guid else None,
        version_number=version_number,
        document_code=attr(code_el, "code"),
        document_display_name=attr(code_el, "displayName"),
        title=text_of(child(root, "title")),
        effective_time=path_attr(root, "effectiveTime/@value"),
    )
