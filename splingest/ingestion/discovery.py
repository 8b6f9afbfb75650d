"""Single-pass discovery of the section tree of an SPL document.

Walks ``structuredBody/component/section`` and every nested
``section/component/section`` in document order and builds a
:class:`CorrelationGraph`. No persistence calls are made here, so discovery
can be re-run freely on the same tree.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Callable, Optional

from loguru import logger

from splingest.ingestion.correlation_graph import (
    CorrelationGraph,
    DiscoveredUnit,
    DiscoveryDefect,
    HierarchyEdge,
)
from splingest.ingestion.section_fields import SectionAttributes, extract_section_attributes
from splingest.ingestion.spl_xml import children, find_structured_body, local_name

AttributeExtractor = Callable[[ET.Element], SectionAttributes]


class DiscoveryTraversal:
    """Build a correlation graph from an SPL tree.

    Malformed sections (no ``id/@root``, a repeated one, or attributes that fail
    to extract) are recorded as defects and skipped. Their children are still
    discovered, detached from the skipped parent.

    Example:
        >>> graph = DiscoveryTraversal().discover(document_root)
        >>> len(graph), len(graph.edges)
    """

    def __init__(self, extract: AttributeExtractor = extract_section_attributes) -> None:
        self._extract = extract

    def discover(self, tree: ET.Element, *, document_key: str | None = None) -> CorrelationGraph:
        """Traverse ``tree`` (a document root or its structured body).

        Args:
            tree: SPL ``document`` or ``structuredBody`` element
            document_key: Optional identifier carried on the graph

        Returns:
            The populated correlation graph
        """
        graph = CorrelationGraph(document_key=document_key)
        body = find_structured_body(tree)
        if body is None:
            logger.warning("No structuredBody found under <{}>; nothing to discover", local_name(tree))
            return graph

        self._visit_children(graph, body, parent_key=None, level=0, parent_dropped=False)

        logger.debug(
            "Discovered {} sections, {} hierarchy edges, {} defects",
            len(graph.units),
            len(graph.edges),
            len(graph.defects),
        )
        return graph

    def _visit_children(
        self,
        graph: CorrelationGraph,
        container: ET.Element,
        *,
        parent_key: Optional[str],
        level: int,
        parent_dropped: bool,
    ) -> None:
        sections = [
            section
            for component in children(container, "component")
            for section in children(component, "section")
        ]
        for sequence, section in enumerate(sections, start=1):
            unit = self._build_unit(graph, section, parent_key, level, sequence)

            if unit is not None:
                if parent_key is not None:
                    graph.add_edge(
                        HierarchyEdge(
                            parent_key=parent_key,
                            child_key=unit.correlation_key,
                            sequence_number=sequence,
                        )
                    )
                elif parent_dropped:
                    logger.warning(
                        "Dropping hierarchy edge to section {}: parent section was skipped",
                        unit.correlation_key,
                    )

            self._visit_children(
                graph,
                section,
                parent_key=unit.correlation_key if unit is not None else None,
                level=level + 1,
                parent_dropped=unit is None,
            )

    def _build_unit(
        self,
        graph: CorrelationGraph,
        section: ET.Element,
        parent_key: Optional[str],
        level: int,
        sequence: int,
    ) -> Optional[DiscoveredUnit]:
        ordinal = len(graph.units) + len(graph.defects)

        try:
            attributes = self._extract(section)
        except Exception as exc:
            return self._defect(graph, ordinal, level, f"attribute extraction failed: {exc}")

        key = attributes.section_guid
        if not key:
            return self._defect(graph, ordinal, level, "missing correlation key (id/@root)")
        if key in graph:
            return self._defect(graph, ordinal, level, "duplicate correlation key", key)

        holder = graph.unit_by_link_id(attributes.link_id) if attributes.link_id else None
        if holder is not None:
            # Repeated ID: fall back to the GUID key
            message = (
                f"Section {key} repeats ID {attributes.link_id} of section "
                f"{holder.correlation_key}; keying it by id/@root instead"
            )
            logger.warning(message)
            graph.warnings.append(message)
            attributes = attributes.model_copy(update={"link_id": None})

        unit = DiscoveredUnit(
            correlation_key=key,
            nesting_level=level,
            ordinal=ordinal,
            parent_key=parent_key,
            sequence_number=sequence,
            attributes=attributes,
            source_node=section,
        )
        graph.add_unit(unit)
        return unit

    @staticmethod
    def _defect(
        graph: CorrelationGraph,
        ordinal: int,
        level: int,
        reason: str,
        key: str | None = None,
    ) -> None:
        logger.warning(
            "Skipping section #{} at level {}: {}{}",
            ordinal,
            level,
            reason,
            f" ({key})" if key else "",
        )
        graph.add_defect(
            DiscoveryDefect(ordinal=ordinal, nesting_level=level, reason=reason, correlation_key=key)
        )
        return None


def discover(tree: ET.Element, *, document_key: str | None = None) -> CorrelationGraph:
    """Convenience wrapper around :class:`DiscoveryTraversal`."""
    return DiscoveryTraversal().discover(tree, document_key=document_key)
