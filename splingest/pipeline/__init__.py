"""Pipeline orchestrators for end-to-end workflows."""

from splingest.pipeline.context import CancellationToken, IngestionContext
from splingest.pipeline.ingestion_pipeline import IngestionPipeline, IngestOptions, ingest
from splingest.pipeline.results import IngestionResult, PhaseReport
from splingest.pipeline.strategies import select_strategy

__all__ = [
    "CancellationToken",
    "IngestOptions",
    "IngestionContext",
    "IngestionPipeline",
    "IngestionResult",
    "PhaseReport",
    "ingest",
    "select_strategy",
]
