"""Aggregate result of one ingestion call."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from splingest.storage.bulk_writer import WriteOutcome
from splingest.storage.schemas import EntityKind


class PhaseReport(BaseModel):
    """What one phase did."""

    name: str
    units_processed: int = 0
    units_skipped: int = 0
    unit_errors: int = 0
    records_staged: int = 0
    failed: bool = False
    skipped: bool = False


class IngestionResult(BaseModel):
    """Result of ingesting one document.

    Ingestion is best-effort: counts reflect everything that was written even
    when ``success`` is False.
    """

    model_config = ConfigDict(extra="allow")

    document_key: Optional[str] = None
    source_path: Optional[str] = None
    strategy: str = ""
    success: bool = True
    created_counts: Dict[str, int] = Field(default_factory=dict)
    existing_counts: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    phases: List[PhaseReport] = Field(default_factory=list)
    units_discovered: int = 0
    units_resolved: int = 0
    round_trips: int = 0
    processing_time: float = 0.0
    cancelled: bool = False
    error: Optional[str] = None

    def record_writes(self, kind: EntityKind, outcomes: Sequence[WriteOutcome]) -> None:
        """Fold bulk write outcomes into the counters."""
        label = kind.count_label
        created = sum(1 for o in outcomes if o.is_new)
        existing = sum(1 for o in outcomes if not o.is_new and o.duplicate_of is None)
        if created:
            self.created_counts[label] = self.created_counts.get(label, 0) + created
        if existing:
            self.existing_counts[label] = self.existing_counts.get(label, 0) + existing

    def add_error(self, message: str, *, fatal: bool = False) -> None:
        self.errors.append(message)
        if fatal:
            self.success = False
            if self.error is None:
                self.error = message

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def total_created(self) -> int:
        return sum(self.created_counts.values())
