"""Pydantic models for persisted ingestion records."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityKind(str, Enum):
    """Kinds of records written during ingestion."""

    SECTION = "section"
    SECTION_HIERARCHY = "section_hierarchy"
    DOCUMENT_REFERENCE = "document_reference"
    SECTION_LINK = "section_link"
    OBSERVATION_MEDIA = "observation_media"
    TEXT_CONTENT = "text_content"
    RENDERED_MEDIA = "rendered_media"
    SECTION_INDEX = "section_index"
    TOLERANCE_SPECIFICATION = "tolerance_specification"
    CERTIFICATION_LINK = "certification_link"
    REMS_PROTOCOL = "rems_protocol"
    REMS_MATERIAL = "rems_material"

    @property
    def count_label(self) -> str:
        """Key used for this kind in result counters."""
        if self is EntityKind.SECTION:
            return "unit"
        if self is EntityKind.SECTION_HIERARCHY:
            return "edge"
        return self.value

    @property
    def label(self) -> str:
        """Neo4j node label, e.g. ``SectionHierarchy``."""
        return "".join(part.capitalize() for part in self.value.split("_"))


class Record(BaseModel):
    """A generic persisted record of one entity kind.

    ``scope`` bounds deduplication (one document version); ``id`` is assigned
    by the store on insert.
    """

    model_config = ConfigDict(extra="forbid")

    kind: EntityKind
    scope: str = Field(..., min_length=1, description="Deduplication scope (document key)")
    properties: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = Field(default=None, description="Store-assigned identifier")

    def to_neo4j_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in self.properties.items() if v is not None}
        data["scope"] = self.scope
        return data

    def with_id(self, record_id: str) -> "Record":
        return self.model_copy(update={"id": record_id})
