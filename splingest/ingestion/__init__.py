"""SPL parsing and section discovery."""

from splingest.ingestion.correlation_graph import (
    CorrelationGraph,
    DiscoveredUnit,
    DiscoveryDefect,
    HierarchyEdge,
)
from splingest.ingestion.discovery import DiscoveryTraversal, discover
from splingest.ingestion.document_header import DocumentHeader, extract_document_header
from splingest.ingestion.section_fields import SectionAttributes, extract_section_attributes

__all__ = [
    "CorrelationGraph",
    "DiscoveredUnit",
    "DiscoveryDefect",
    "DiscoveryTraversal",
    "DocumentHeader",
    "HierarchyEdge",
    "SectionAttributes",
    "discover",
    "extract_document_header",
    "extract_section_attributes",
]
