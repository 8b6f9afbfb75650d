"""End-to-end SPL document ingestion pipeline.

This module orchestrates the complete document processing workflow:
1. Document parsing and header extraction (dedup scope)
2. Section discovery into an in-memory correlation graph
3. Section write and server identifier remap
4. Hierarchy edge write
5. Dependent phases (references, media, content, indexing, conditional phases)
"""

import time
import xml.etree.ElementTree as ET
from pathlib import Path
from types import TracebackType
from typing import Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from splingest.ingestion.discovery import DiscoveryTraversal
from splingest.ingestion.document_header import DocumentHeader, extract_document_header
from splingest.ingestion.spl_xml import local_name, parse_document
from splingest.pipeline.context import CancellationToken, IngestionContext, ProgressCallback
from splingest.pipeline.results import IngestionResult
from splingest.pipeline.section_phases import build_phase_table
from splingest.pipeline.strategies import select_strategy
from splingest.storage.bulk_writer import DeduplicatingBulkWriter
from splingest.storage.record_store import InMemoryRecordStore, RecordStore
from splingest.utils.config import Config, StrategyName
from splingest.utils.errors import IngestionCancelled


class IngestOptions(BaseModel):
    """Per-call overrides of the configured ingestion settings."""

    scope: Optional[str] = Field(
        default=None, description="Deduplication scope; defaults to the document key"
    )
    strategy: Optional[StrategyName] = None
    enabled_phases: Optional[List[str]] = None
    timeout_seconds: Optional[float] = None


class IngestionPipeline:
    """End-to-end SPL ingestion pipeline.

    Parses SPL files, discovers their section trees and persists them through
    the configured strategy into Neo4j (or an in-memory store).

    Example:
        >>> pipeline = IngestionPipeline(config)
        >>> result = pipeline.process_document("label.xml")
        >>> print(f"Created {result.created_counts.get('unit', 0)} sections")
    """

    def __init__(self, config: Config, store: RecordStore | None = None) -> None:
        """Initialize the ingestion pipeline.

        Args:
            config: Application configuration
            store: Record store to use; created from ``config.database`` when omitted
        """
        self.config = config
        self.store: RecordStore | None = store
        self.discovery = DiscoveryTraversal()

        # Processing statistics
        self.stats: Dict[str, float] = {
            "documents_processed": 0,
            "documents_failed": 0,
            "units_created": 0,
            "records_created": 0,
            "round_trips": 0,
            "total_processing_time": 0.0,
        }

        logger.info("IngestionPipeline initialized")

    def initialize_components(self) -> None:
        """Create and connect the record store if one was not injected.

        This is called lazily when first needed to avoid startup overhead.
        """
        if self.store is not None:
            return

        if self.config.database.backend == "memory":
            logger.info("Using in-memory record store")
            self.store = InMemoryRecordStore()
            return

        from splingest.storage.neo4j_manager import Neo4jManager

        manager = Neo4jManager(self.config.database)
        manager.connect()
        self.store = manager

    def ingest(
        self,
        tree: ET.Element,
        options: IngestOptions | None = None,
        *,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IngestionResult:
        """Ingest one parsed SPL tree.

        The caller owns the unit of work; this method only issues reads and
        batched writes against the store.

        Args:
            tree: SPL ``document`` root (or its ``structuredBody``)
            options: Per-call overrides
            progress: Receives human-readable milestones at phase boundaries
            cancel_token: Polled between units; fires :class:`IngestionCancelled`

        Returns:
            Aggregate result with created/existing counts and errors
        """
        start_time = time.time()
        options = options or IngestOptions()
        settings = self.config.ingestion

        self.initialize_components()
        if self.store is None:
            raise RuntimeError("Record store is not initialized")

        header = self._header(tree)
        scope = options.scope or (header.document_key if header else None)
        result = IngestionResult(document_key=scope)
        if not scope:
            result.add_error(
                "No deduplication scope: document has no id/setId and none was given",
                fatal=True,
            )
            return result

        # Step 1: Discover the section tree (no persistence)
        graph = self.discovery.discover(tree, document_key=scope)
        for defect in graph.defects:
            result.add_warning(f"Skipped section #{defect.ordinal}: {defect.reason}")
        for warning in graph.warnings:
            result.add_warning(warning)

        # Step 2: Persist through the selected strategy
        writer = DeduplicatingBulkWriter(self.store)
        strategy = select_strategy(
            options.strategy or settings.strategy,
            writer,
            build_phase_table(
                options.enabled_phases if options.enabled_phases is not None else settings.enabled_phases
            ),
            progress_interval=settings.progress_interval,
        )
        token = cancel_token or CancellationToken(options.timeout_seconds or settings.timeout_seconds)
        ctx = IngestionContext(graph, scope, settings, progress=progress, cancel_token=token)

        ctx.report(f"Discovered {len(graph)} sections and {len(graph.edges)} edges")
        try:
            strategy.run(ctx, result)
        except IngestionCancelled as exc:
            logger.warning("Ingestion of {} cancelled: {}", scope, exc)
            result.cancelled = True
            result.add_error(str(exc), fatal=True)

        result.round_trips = writer.round_trips
        result.processing_time = time.time() - start_time
        self._update_stats(result)

        ctx.report(
            f"Ingestion of {scope} finished: success={result.success}, "
            f"created={result.created_counts}, round_trips={result.round_trips}"
        )
        return result

    def process_document(
        self,
        path: Path | str,
        *,
        force_reingest: bool | None = None,
        options: IngestOptions | None = None,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IngestionResult:
        """Parse and ingest one SPL file inside a single unit of work.

        Args:
            path: Path to the SPL XML file
            force_reingest: Delete the document's existing records first
                (defaults to ``pipeline.force_reingest``)
            options: Per-call overrides
            progress: Progress callback
            cancel_token: Cancellation token

        Returns:
            IngestionResult with processing details
        """
        start_time = time.time()
        path = Path(path)
        if force_reingest is None:
            force_reingest = self.config.pipeline.force_reingest

        logger.info(f"Processing document: {path.name}")

        try:
            self.initialize_components()
            if self.store is None:
                raise RuntimeError("Record store is not initialized")

            root = parse_document(path)

            with self.store.unit_of_work():
                if force_reingest:
                    header = self._header(root)
                    scope = (options.scope if options else None) or (
                        header.document_key if header else None
                    )
                    if scope:
                        removed = self.store.delete_scope(scope)
                        logger.info("Force re-ingest: removed {} records for {}", removed, scope)

                result = self.ingest(root, options, progress=progress, cancel_token=cancel_token)

            result.source_path = str(path)
            return result

        except Exception as e:
            processing_time = time.time() - start_time
            logger.error(f"Failed to process {path.name}: {e}")
            self.stats["documents_failed"] += 1
            result = IngestionResult(success=False, processing_time=processing_time, error=str(e))
            result.errors.append(str(e))
            result.source_path = str(path)
            return result

    def process_batch(
        self,
        paths: List[Path | str],
        *,
        force_reingest: bool | None = None,
        options: IngestOptions | None = None,
    ) -> List[IngestionResult]:
        """Process multiple SPL files, one unit of work each.

        Args:
            paths: Paths to SPL XML files
            force_reingest: Delete existing records for each document first
            options: Per-call overrides applied to every document

        Returns:
            List of IngestionResult objects
        """
        logger.info(f"Processing batch of {len(paths)} documents")

        results = []
        for path in paths:
            result = self.process_document(path, force_reingest=force_reingest, options=options)
            results.append(result)

            successful = sum(1 for r in results if r.success)
            logger.info(f"Progress: {len(results)}/{len(paths)} processed, {successful} successful")

        total_units = sum(r.created_counts.get("unit", 0) for r in results)
        total_time = sum(r.processing_time for r in results)
        successful_count = sum(1 for r in results if r.success)

        logger.info(
            f"Batch processing complete: {successful_count}/{len(paths)} successful, "
            f"{total_units} sections created, {total_time:.2f}s total"
        )
        return results

    @staticmethod
    def _header(tree: ET.Element) -> Optional[DocumentHeader]:
        if local_name(tree) != "document":
            return None
        return extract_document_header(tree)

    def _update_stats(self, result: IngestionResult) -> None:
        if result.success:
            self.stats["documents_processed"] += 1
        else:
            self.stats["documents_failed"] += 1
        self.stats["units_created"] += result.created_counts.get("unit", 0)
        self.stats["records_created"] += result.total_created
        self.stats["round_trips"] += result.round_trips
        self.stats["total_processing_time"] += result.processing_time

    def get_statistics(self) -> Dict[str, float]:
        """Get pipeline processing statistics.

        Returns:
            Dictionary with processing statistics
        """
        return self.stats.copy()

    def health_check(self) -> Dict[str, bool]:
        """Check health of all pipeline components.

        Returns:
            Dictionary with component health status
        """
        health = {}

        try:
            health["store"] = bool(self.store.health_check()) if self.store else False
        except Exception:  # noqa: BLE001
            health["store"] = False

        health["discovery"] = self.discovery is not None
        return health

    def close(self) -> None:
        """Clean up pipeline resources."""
        if self.store is not None and hasattr(self.store, "close"):
            self.store.close()

        logger.info("IngestionPipeline closed")

    def __enter__(self) -> "IngestionPipeline":
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.close()


def ingest(
    tree: ET.Element,
    options: IngestOptions | None = None,
    *,
    store: RecordStore,
    config: Config | None = None,
    progress: ProgressCallback | None = None,
    cancel_token: CancellationToken | None = None,
) -> IngestionResult:
    """Ingest a parsed SPL tree into ``store`` with a throwaway pipeline."""
    pipeline = IngestionPipeline(config or Config(), store=store)
    return pipeline.ingest(tree, options, progress=progress, cancel_token=cancel_token)
