"""In-memory correlation graph built by discovery and filled in by persistence.

The graph is an arena: units are stored once, in discovery order, and every
cross-reference (parent, edge endpoint, server identifier) goes through the
document-supplied correlation key. Server identifiers are recorded in an
append-only table once the unit batch has been written.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, DefaultDict, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from splingest.ingestion.section_fields import SectionAttributes


class DiscoveredUnit(BaseModel):
    """One section found during discovery."""

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    correlation_key: str = Field(..., min_length=1, frozen=True)
    nesting_level: int = Field(..., ge=0)
    ordinal: int = Field(..., ge=0, description="Position in discovery (document) order")
    parent_key: Optional[str] = None
    sequence_number: int = Field(1, ge=1, description="1-based position among siblings")
    attributes: SectionAttributes = Field(default_factory=SectionAttributes)
    server_id: Optional[str] = None
    # Read-only handle to the XML element for later phases; never persisted
    source_node: Any = Field(default=None, exclude=True, repr=False)

    @property
    def is_resolved(self) -> bool:
        return self.server_id is not None


class HierarchyEdge(BaseModel):
    """Parent/child relationship between two units."""

    model_config = ConfigDict(frozen=True)

    parent_key: str
    child_key: str
    sequence_number: int = Field(..., ge=1)


class DiscoveryDefect(BaseModel):
    """A section skipped during discovery."""

    ordinal: int
    nesting_level: int
    reason: str
    correlation_key: Optional[str] = None


class CorrelationGraph:
    """Units and edges of one document, keyed by correlation key.

    Created per ingestion call and discarded afterwards.
    """

    def __init__(self, document_key: str | None = None) -> None:
        self.document_key = document_key
        self.units: List[DiscoveredUnit] = []
        self.edges: List[HierarchyEdge] = []
        self.defects: List[DiscoveryDefect] = []
        self.warnings: List[str] = []
        self._by_key: Dict[str, DiscoveredUnit] = {}
        self._by_link_id: Dict[str, DiscoveredUnit] = {}
        self._server_ids: Dict[str, str] = {}
        self._owners: Dict[str, str] = {}
        self._references: DefaultDict[str, Dict[str, str]] = defaultdict(dict)

    # -- construction -------------------------------------------------------

    def add_unit(self, unit: DiscoveredUnit) -> None:
        """Append a unit.

        Raises:
            ValueError: If the correlation key is already present
        """
        if unit.correlation_key in self._by_key:
            raise ValueError(f"Duplicate correlation key: {unit.correlation_key}")
        self.units.append(unit)
        self._by_key[unit.correlation_key] = unit
        link_id = unit.attributes.link_id
        if link_id and link_id not in self._by_link_id:
            self._by_link_id[link_id] = unit

    def add_edge(self, edge: HierarchyEdge) -> None:
        """Append an edge between two known units.

        Raises:
            KeyError: If either endpoint is not in the graph
        """
        for key in (edge.parent_key, edge.child_key):
            if key not in self._by_key:
                raise KeyError(f"Edge endpoint not in graph: {key}")
        self.edges.append(edge)

    def add_defect(self, defect: DiscoveryDefect) -> None:
        self.defects.append(defect)

    # -- lookup -------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.units)

    def __iter__(self) -> Iterator[DiscoveredUnit]:
        return iter(self.units)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def get(self, key: str) -> Optional[DiscoveredUnit]:
        return self._by_key.get(key)

    def unit_by_link_id(self, link_id: str) -> Optional[DiscoveredUnit]:
        """Find a unit by its ``ID`` attribute (the target of ``linkHtml``)."""
        return self._by_link_id.get(link_id)

    def roots(self) -> List[DiscoveredUnit]:
        return [u for u in self.units if u.parent_key is None]

    def children_of(self, key: str) -> List[DiscoveredUnit]:
        """Children of a unit, ordered by sequence number."""
        kids = [u for u in self.units if u.parent_key == key]
        return sorted(kids, key=lambda u: u.sequence_number)

    def ancestors(self, key: str) -> List[DiscoveredUnit]:
        """Ancestors of a unit, root first."""
        chain: List[DiscoveredUnit] = []
        unit = self._by_key.get(key)
        seen = set()
        while unit is not None and unit.parent_key is not None:
            if unit.parent_key in seen:
                break
            seen.add(unit.parent_key)
            parent = self._by_key.get(unit.parent_key)
            if parent is None:
                break
            chain.append(parent)
            unit = parent
        chain.reverse()
        return chain

    def levels(self) -> List[List[DiscoveredUnit]]:
        """Units grouped by nesting level, shallowest first, discovery order within."""
        by_level: DefaultDict[int, List[DiscoveredUnit]] = defaultdict(list)
        for unit in self.units:
            by_level[unit.nesting_level].append(unit)
        return [by_level[level] for level in sorted(by_level)]

    def sibling_groups(self) -> List[List[DiscoveredUnit]]:
        """Units grouped by parent, level by level.

        Top-level units and units orphaned by a discovery defect share their
        level's ``None`` group.
        """
        groups: List[List[DiscoveredUnit]] = []
        for level in self.levels():
            by_parent: Dict[Optional[str], List[DiscoveredUnit]] = {}
            for unit in level:
                by_parent.setdefault(unit.parent_key, []).append(unit)
            groups.extend(by_parent.values())
        return groups

    # -- server identifiers -------------------------------------------------

    def record_server_id(self, key: str, server_id: str) -> None:
        """Record the persisted identifier of a unit.

        The table is append-only and one-to-one: recording the same identifier
        twice is a no-op, a different identifier for an already mapped key or
        an identifier already held by another key is an error.

        Raises:
            KeyError: If the key is not in the graph
            ValueError: If the key or the identifier is already mapped
        """
        unit = self._by_key.get(key)
        if unit is None:
            raise KeyError(f"Unknown correlation key: {key}")
        existing = self._server_ids.get(key)
        if existing is not None and existing != server_id:
            raise ValueError(
                f"Correlation key {key} already mapped to {existing}, refusing {server_id}"
            )
        owner = self._owners.get(server_id)
        if owner is not None and owner != key:
            raise ValueError(
                f"Record {server_id} already belongs to section {owner}, refusing {key}"
            )
        self._server_ids[key] = server_id
        self._owners[server_id] = key
        unit.server_id = server_id

    def server_id_for(self, key: str | None) -> Optional[str]:
        if key is None:
            return None
        return self._server_ids.get(key)

    @property
    def server_ids(self) -> Dict[str, str]:
        """Copy of the correlation key to server identifier table."""
        return dict(self._server_ids)

    def resolved_units(self) -> List[DiscoveredUnit]:
        return [u for u in self.units if u.server_id is not None]

    def resolvable_edges(self) -> List[HierarchyEdge]:
        """Edges whose parent and child both have server identifiers."""
        return [
            e
            for e in self.edges
            if e.parent_key in self._server_ids and e.child_key in self._server_ids
        ]

    # -- records written by later phases ------------------------------------

    def register_reference(self, kind: str, reference: str, record_id: str) -> None:
        """Remember a record written by one phase so a later phase can point at it."""
        self._references[kind].setdefault(reference, record_id)

    def reference_id(self, kind: str, reference: str | None) -> Optional[str]:
        if reference is None:
            return None
        return self._references.get(kind, {}).get(reference)
