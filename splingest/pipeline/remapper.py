"""Propagate server identifiers of written units back onto the graph."""

from __future__ import annotations

from typing import List, Sequence

from loguru import logger
from pydantic import BaseModel, Field

from splingest.ingestion.correlation_graph import CorrelationGraph, DiscoveredUnit
from splingest.storage.bulk_writer import WriteOutcome
from splingest.utils.errors import RemapError


class RemapReport(BaseModel):
    mapped: int = 0
    missing: List[str] = Field(default_factory=list, description="Keys left without a server id")


class IdentifierRemapper:
    """Align unit write outcomes with the units they were built from.

    Alignment uses the explicit ``position`` on each outcome, never the order
    in which a store happened to return rows.
    """

    def remap(
        self,
        graph: CorrelationGraph,
        units: Sequence[DiscoveredUnit],
        outcomes: Sequence[WriteOutcome],
    ) -> RemapReport:
        """Record ``CorrelationKey -> ServerID`` for each written unit.

        Args:
            graph: Graph owning ``units``
            units: Units in the order their candidates were passed to the writer
            outcomes: Writer outcomes for those candidates

        Returns:
            Summary of mapped and missing keys

        Raises:
            RemapError: If outcomes cannot be aligned with ``units``
        """
        if len(units) != len(outcomes):
            raise RemapError(f"Wrote {len(outcomes)} unit records for {len(units)} units")

        report = RemapReport()
        for position, (unit, outcome) in enumerate(zip(units, outcomes)):
            if outcome.position != position:
                raise RemapError(
                    f"Outcome at index {position} reports position {outcome.position}"
                )

            record_id = outcome.record.id
            if not record_id:
                logger.warning(
                    "Section {} has no identifier after write; dependents will be skipped",
                    unit.correlation_key,
                )
                report.missing.append(unit.correlation_key)
                continue

            try:
                graph.record_server_id(unit.correlation_key, record_id)
            except (KeyError, ValueError) as exc:
                raise RemapError(str(exc)) from exc
            report.mapped += 1

        return report
