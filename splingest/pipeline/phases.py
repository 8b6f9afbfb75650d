"""Phase table and the orchestrator that runs it over every discovered unit.

A phase is a handler that stages records for one unit, plus an optional
predicate deciding which units it applies to. Phases run strictly one after
another; within a phase, units are taken in the groups the ingestion strategy
supplies and each group's staged records are flushed through the
deduplicating writer, one batch per entity kind.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, Iterable, List, Optional, Sequence

from loguru import logger

from splingest.ingestion.correlation_graph import DiscoveredUnit
from splingest.pipeline.context import IngestionContext
from splingest.pipeline.results import IngestionResult, PhaseReport
from splingest.storage.bulk_writer import DeduplicatingBulkWriter
from splingest.storage.schemas import EntityKind, Record
from splingest.utils.errors import IngestionCancelled, PersistenceError

Handler = Callable[[IngestionContext, DiscoveredUnit], Iterable[Record]]
Predicate = Callable[[IngestionContext, DiscoveredUnit], bool]
ReferenceKey = Callable[[Record], Optional[str]]


@dataclass(frozen=True)
class Phase:
    """One entry in the phase table.

    Attributes:
        name: Phase name, also used in configuration
        handler: Stages records for one unit
        predicate: Restricts the phase to matching units; None means every unit
        prerequisite: When True, a failed flush stops all later phases
        reference_key: If set, written records are registered on the graph under
            this key so later phases can resolve references to them
    """

    name: str
    handler: Handler
    predicate: Optional[Predicate] = None
    prerequisite: bool = False
    reference_key: Optional[ReferenceKey] = None
    description: str = ""

    def applies_to(self, ctx: IngestionContext, unit: DiscoveredUnit) -> bool:
        if self.predicate is None:
            return True
        return bool(self.predicate(ctx, unit))


class PhaseOrchestrator:
    """Run phases over unit groups, containing failures where possible.

    - An exception from a handler for one unit is recorded and the unit skipped.
    - A persistence failure ends the phase and marks the result unsuccessful;
      later phases still run unless the failed phase is a prerequisite.
    - Cancellation stops everything and propagates to the caller.
    """

    def __init__(
        self,
        writer: DeduplicatingBulkWriter,
        phases: Sequence[Phase],
        *,
        progress_interval: int = 50,
    ) -> None:
        self.writer = writer
        self.phases = list(phases)
        self.progress_interval = max(1, progress_interval)

    def run(
        self,
        ctx: IngestionContext,
        groups: Sequence[Sequence[DiscoveredUnit]],
        result: IngestionResult,
    ) -> List[PhaseReport]:
        """Run every phase in order over ``groups``."""
        reports: List[PhaseReport] = []
        for index, phase in enumerate(self.phases):
            ctx.check_cancelled()
            report = self.run_phase(ctx, phase, groups, result)
            reports.append(report)
            result.phases.append(report)

            if report.failed and phase.prerequisite:
                for skipped in self.phases[index + 1 :]:
                    skipped_report = PhaseReport(name=skipped.name, skipped=True)
                    reports.append(skipped_report)
                    result.phases.append(skipped_report)
                result.add_warning(
                    f"Phase {phase.name} failed; skipped {len(self.phases) - index - 1} later phases"
                )
                break
        return reports

    def run_phase(
        self,
        ctx: IngestionContext,
        phase: Phase,
        groups: Sequence[Sequence[DiscoveredUnit]],
        result: IngestionResult,
    ) -> PhaseReport:
        report = PhaseReport(name=phase.name)
        total = sum(len(group) for group in groups)

        with ctx.scoped("current_phase", phase.name):
            ctx.report(f"Phase {phase.name}: starting over {total} sections")
            seen = 0
            for group in groups:
                staged: DefaultDict[EntityKind, List[Record]] = defaultdict(list)

                for unit in group:
                    ctx.check_cancelled()
                    seen += 1
                    if seen % self.progress_interval == 0:
                        ctx.report(f"Phase {phase.name}: {seen}/{total} sections")

                    if unit.server_id is None or not self._eligible(ctx, phase, unit, report, result):
                        report.units_skipped += 1
                        continue

                    try:
                        records = ctx.run_scoped(
                            "current_unit", unit, lambda: list(phase.handler(ctx, unit))
                        )
                    except IngestionCancelled:
                        raise
                    except Exception as exc:  # noqa: BLE001
                        report.unit_errors += 1
                        message = f"{phase.name}: section {unit.correlation_key}: {exc}"
                        logger.warning("Phase {} failed for section {}: {}", phase.name, unit.correlation_key, exc)
                        result.add_error(message)
                        continue

                    report.units_processed += 1
                    for record in records:
                        staged[record.kind].append(record)
                        report.records_staged += 1

                try:
                    self._flush(ctx, phase, staged, result)
                except PersistenceError as exc:
                    report.failed = True
                    logger.error("Phase {} write failed: {}", phase.name, exc)
                    result.add_error(f"{phase.name}: {exc}", fatal=True)
                    break

            ctx.report(
                f"Phase {phase.name}: done ({report.units_processed} processed, "
                f"{report.records_staged} records staged, {report.unit_errors} errors)"
            )
        return report

    @staticmethod
    def _eligible(
        ctx: IngestionContext,
        phase: Phase,
        unit: DiscoveredUnit,
        report: PhaseReport,
        result: IngestionResult,
    ) -> bool:
        try:
            return phase.applies_to(ctx, unit)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Predicate for phase {} failed on section {}: {}", phase.name, unit.correlation_key, exc
            )
            report.unit_errors += 1
            result.add_error(f"{phase.name}: predicate failed for section {unit.correlation_key}: {exc}")
            return False

    def _flush(
        self,
        ctx: IngestionContext,
        phase: Phase,
        staged: DefaultDict[EntityKind, List[Record]],
        result: IngestionResult,
    ) -> None:
        for kind, records in staged.items():
            outcomes = self.writer.write(kind, ctx.scope, records)
            result.record_writes(kind, outcomes)
            if phase.reference_key is None:
                continue
            for outcome in outcomes:
                reference = phase.reference_key(outcome.record)
                if reference and outcome.record.id:
                    ctx.graph.register_reference(kind.value, reference, outcome.record.id)
