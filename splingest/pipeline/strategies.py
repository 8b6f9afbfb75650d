"""Ingestion strategies.

All strategies share one contract and one sequence:

1. write the discovered sections and map their server identifiers,
2. write the hierarchy edges whose endpoints both resolved,
3. run the phase table.

They differ only in how units and edges are batched, which changes the number
of store round-trips but never what ends up persisted:

- ``per_unit``: one batch per section, edge and phase unit (O(N) round-trips)
- ``nested_batch``: one batch per sibling group, level by level
- ``staged``: one batch per entity kind (O(K) round-trips)
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Type

from loguru import logger

from splingest.ingestion.correlation_graph import CorrelationGraph, DiscoveredUnit, HierarchyEdge
from splingest.pipeline.context import IngestionContext
from splingest.pipeline.phases import Phase, PhaseOrchestrator
from splingest.pipeline.remapper import IdentifierRemapper
from splingest.pipeline.results import IngestionResult
from splingest.storage.bulk_writer import DeduplicatingBulkWriter
from splingest.storage.schemas import EntityKind, Record
from splingest.utils.errors import PersistenceError, RemapError


class IngestionStrategy:
    """Base strategy: the shared write sequence, batching left to subclasses."""

    name = "base"

    def __init__(
        self,
        writer: DeduplicatingBulkWriter,
        phases: Sequence[Phase],
        *,
        remapper: IdentifierRemapper | None = None,
        progress_interval: int = 50,
    ) -> None:
        self.writer = writer
        self.phases = list(phases)
        self.remapper = remapper or IdentifierRemapper()
        self.progress_interval = progress_interval

    # -- batching (overridden) ----------------------------------------------

    def unit_batches(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        raise NotImplementedError

    def edge_batches(
        self, graph: CorrelationGraph, edges: Sequence[HierarchyEdge]
    ) -> List[List[HierarchyEdge]]:
        raise NotImplementedError

    def phase_groups(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        raise NotImplementedError

    # -- record builders ----------------------------------------------------

    @staticmethod
    def unit_record(scope: str, unit: DiscoveredUnit, document_key: str | None = None) -> Record:
        properties = unit.attributes.to_properties()
        properties["section_guid"] = unit.correlation_key
        properties["nesting_level"] = unit.nesting_level
        if document_key:
            properties["document_key"] = document_key
        return Record(kind=EntityKind.SECTION, scope=scope, properties=properties)

    @staticmethod
    def edge_record(scope: str, graph: CorrelationGraph, edge: HierarchyEdge) -> Record:
        return Record(
            kind=EntityKind.SECTION_HIERARCHY,
            scope=scope,
            properties={
                "parent_section_id": graph.server_id_for(edge.parent_key),
                "child_section_id": graph.server_id_for(edge.child_key),
                "parent_section_guid": edge.parent_key,
                "child_section_guid": edge.child_key,
                "sequence_number": edge.sequence_number,
            },
        )

    # -- execution ----------------------------------------------------------

    def run(self, ctx: IngestionContext, result: IngestionResult) -> IngestionResult:
        """Persist ``ctx.graph`` and run the phase table.

        Failures writing or mapping sections stop the run, since every later
        step depends on section identifiers. A failed edge write is recorded
        and the phases still run.
        """
        graph = ctx.graph
        result.strategy = self.name
        result.units_discovered = len(graph)

        # Step 1: Sections and identifier remap
        ctx.report(f"Writing {len(graph)} sections ({self.name})")
        try:
            for batch in self.unit_batches(graph):
                ctx.check_cancelled()
                candidates = [self.unit_record(ctx.scope, u, graph.document_key) for u in batch]
                outcomes = self.writer.write(EntityKind.SECTION, ctx.scope, candidates)
                result.record_writes(EntityKind.SECTION, outcomes)
                remap = self.remapper.remap(graph, batch, outcomes)
                for key in remap.missing:
                    result.add_warning(f"Section {key} has no server identifier")
        except (PersistenceError, RemapError) as exc:
            logger.error("Section write failed, skipping remaining steps: {}", exc)
            result.add_error(f"sections: {exc}", fatal=True)
            result.units_resolved = len(graph.resolved_units())
            return result
        result.units_resolved = len(graph.resolved_units())

        # Step 2: Hierarchy edges
        edges = graph.resolvable_edges()
        resolvable = set(edges)
        for edge in graph.edges:
            if edge not in resolvable:
                logger.warning(
                    "Dropping hierarchy edge {} -> {}: endpoint has no server identifier",
                    edge.parent_key,
                    edge.child_key,
                )
                result.add_warning(f"Dropped edge {edge.parent_key} -> {edge.child_key}")
        ctx.report(f"Writing {len(edges)} hierarchy edges")
        try:
            for batch in self.edge_batches(graph, edges):
                ctx.check_cancelled()
                candidates = [self.edge_record(ctx.scope, graph, e) for e in batch]
                outcomes = self.writer.write(EntityKind.SECTION_HIERARCHY, ctx.scope, candidates)
                result.record_writes(EntityKind.SECTION_HIERARCHY, outcomes)
        except PersistenceError as exc:
            logger.error("Hierarchy edge write failed: {}", exc)
            result.add_error(f"hierarchy: {exc}", fatal=True)

        # Step 3: Remaining phases
        orchestrator = PhaseOrchestrator(
            self.writer, self.phases, progress_interval=self.progress_interval
        )
        orchestrator.run(ctx, self.phase_groups(graph), result)
        return result


class PerUnitStrategy(IngestionStrategy):
    """One write per section, per edge and per unit in every phase."""

    name = "per_unit"

    def unit_batches(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        return [[unit] for unit in graph.units]

    def edge_batches(
        self, graph: CorrelationGraph, edges: Sequence[HierarchyEdge]
    ) -> List[List[HierarchyEdge]]:
        return [[edge] for edge in edges]

    def phase_groups(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        return [[unit] for unit in graph.units]


class NestedBatchStrategy(IngestionStrategy):
    """One write per sibling group, shallowest level first."""

    name = "nested_batch"

    def unit_batches(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        return graph.sibling_groups()

    def edge_batches(
        self, graph: CorrelationGraph, edges: Sequence[HierarchyEdge]
    ) -> List[List[HierarchyEdge]]:
        by_parent: Dict[str, List[HierarchyEdge]] = {}
        for edge in edges:
            by_parent.setdefault(edge.parent_key, []).append(edge)
        return list(by_parent.values())

    def phase_groups(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        return graph.sibling_groups()


class StagedStrategy(IngestionStrategy):
    """One write per entity kind for the whole document."""

    name = "staged"

    def unit_batches(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        return [list(graph.units)] if graph.units else []

    def edge_batches(
        self, graph: CorrelationGraph, edges: Sequence[HierarchyEdge]
    ) -> List[List[HierarchyEdge]]:
        return [list(edges)] if edges else []

    def phase_groups(self, graph: CorrelationGraph) -> List[List[DiscoveredUnit]]:
        return [list(graph.units)] if graph.units else []


STRATEGIES: Dict[str, Type[IngestionStrategy]] = {
    PerUnitStrategy.name: PerUnitStrategy,
    NestedBatchStrategy.name: NestedBatchStrategy,
    StagedStrategy.name: StagedStrategy,
}


def select_strategy(
    name: str,
    writer: DeduplicatingBulkWriter,
    phases: Sequence[Phase],
    *,
    progress_interval: int = 50,
    remapper: Optional[IdentifierRemapper] = None,
) -> IngestionStrategy:
    """Instantiate the strategy registered under ``name``.

    Raises:
        ValueError: If ``name`` is not a known strategy
    """
    try:
        strategy_cls = STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown ingestion strategy: {name!r} (known: {', '.join(STRATEGIES)})"
        ) from None
    return strategy_cls(writer, phases, remapper=remapper, progress_interval=progress_interval)
