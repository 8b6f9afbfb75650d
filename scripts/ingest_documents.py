#!/usr/bin/env python3
"""SPL document ingestion CLI script.

This script discovers the section tree of each SPL XML file and persists it,
with its dependent records, into Neo4j (or an in-memory store for dry runs).
Re-running on the same files is safe: existing records are matched, not
duplicated.

Usage:
    python scripts/ingest_documents.py label.xml
    python scripts/ingest_documents.py --directory data/raw/
    python scripts/ingest_documents.py --strategy per_unit --memory label.xml
    python scripts/ingest_documents.py --config config/custom.yaml file1.xml file2.xml

Options:
    --directory, -d: Process SPL files in directory
    --config, -c: Path to config file (default: config/config.yaml)
    --strategy, -s: Override the ingestion strategy (per_unit, nested_batch, staged)
    --memory: Use the in-memory store instead of Neo4j
    --verbose, -v: Enable verbose logging
    --dry-run: Show what would be processed without actually doing it
"""

import argparse
import sys
import time
from pathlib import Path

from loguru import logger

from splingest.pipeline.ingestion_pipeline import IngestionPipeline, IngestOptions
from splingest.utils.config import load_config


def find_spl_files(paths: list[Path], patterns: list[str]) -> list[Path]:
    """Find all SPL files from the given paths.

    Args:
        paths: List of file or directory paths
        patterns: Glob patterns used when scanning directories

    Returns:
        Sorted, de-duplicated list of file paths
    """
    spl_files: list[Path] = []

    for path in paths:
        if path.is_file():
            if path.suffix.lower() == ".xml":
                spl_files.append(path)
            else:
                logger.warning(f"Skipping unsupported file: {path}")
        elif path.is_dir():
            for pattern in patterns:
                spl_files.extend(path.rglob(pattern))
        else:
            logger.warning(f"Path does not exist: {path}")

    # De-dup while preserving sort order.
    return sorted({p.resolve() for p in spl_files})


def main():
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Ingest SPL documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument("paths", nargs="*", type=Path, help="SPL files or directories to process")

    parser.add_argument(
        "--directory", "-d", type=Path, help="Directory containing SPL files to process"
    )

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )

    parser.add_argument(
        "--strategy",
        "-s",
        choices=["per_unit", "nested_batch", "staged"],
        help="Ingestion strategy (default: from config)",
    )

    parser.add_argument(
        "--memory", action="store_true", help="Use the in-memory store instead of Neo4j"
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be processed without actually doing it",
    )

    parser.add_argument(
        "--force-reingest",
        action="store_true",
        help="Delete each document's existing records before ingesting it",
    )

    args = parser.parse_args()

    # Collect all paths to process
    paths_to_process = args.paths or []
    if args.directory:
        paths_to_process.append(args.directory)

    if not paths_to_process:
        parser.error("No files or directories specified. Use --help for usage.")

    # Configure logging
    log_level = "DEBUG" if args.verbose else "INFO"
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=log_level,
    )

    pipeline = None
    try:
        # Load configuration
        logger.info(f"Loading configuration from {args.config}")
        config = load_config(args.config)

        # Add file logging
        log_file = Path(config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation=config.logging.rotation,
            retention=config.logging.retention,
            level="DEBUG",
            serialize=config.logging.format == "json",
        )

        if args.memory:
            config.database.backend = "memory"

        spl_files = find_spl_files(paths_to_process, config.pipeline.file_patterns)

        if not spl_files:
            logger.error("No SPL files found to process")
            return 1

        logger.info(f"Found {len(spl_files)} documents to process")

        if args.dry_run:
            logger.info("Dry run mode - would process:")
            for spl_file in spl_files:
                logger.info(f"  {spl_file}")
            return 0

        logger.info("Initializing ingestion pipeline...")
        pipeline = IngestionPipeline(config)
        pipeline.initialize_components()

        # Check component health
        health = pipeline.health_check()
        unhealthy = [comp for comp, healthy in health.items() if not healthy]
        if unhealthy:
            logger.warning(f"Unhealthy components: {', '.join(unhealthy)}")
            logger.warning("Pipeline may not work correctly")

        options = IngestOptions(strategy=args.strategy)
        start_time = time.time()

        results = []
        for i, spl_path in enumerate(spl_files, 1):
            logger.info(f"Processing {i}/{len(spl_files)}: {spl_path.name}")
            result = pipeline.process_document(
                spl_path, force_reingest=args.force_reingest, options=options
            )
            results.append(result)

            if result.success:
                logger.success(
                    f"✓ {spl_path.name}: {result.created_counts.get('unit', 0)} sections created, "
                    f"{result.existing_counts.get('unit', 0)} existing, "
                    f"{result.round_trips} round-trips, {result.processing_time:.2f}s"
                )
            else:
                logger.error(f"✗ {spl_path.name}: {result.error}")

        # Calculate statistics
        total_time = time.time() - start_time
        successful = [r for r in results if r.success]
        failed = [r for r in results if not r.success]
        total_records = sum(r.total_created for r in results)

        # Print summary
        logger.info("=" * 50)
        logger.info("INGESTION SUMMARY")
        logger.info("=" * 50)
        logger.info(f"Total documents: {len(results)}")
        logger.info(f"Successful: {len(successful)}")
        logger.info(f"Failed: {len(failed)}")
        logger.info(f"Total records created: {total_records}")
        logger.info(f"Total processing time: {total_time:.2f}s")

        if failed:
            logger.warning("Failed documents:")
            for result in failed:
                logger.warning(f"  - {result.source_path}: {result.error}")

        # Pipeline statistics
        pipeline_stats = pipeline.get_statistics()
        logger.info("Pipeline statistics:")
        for key, value in pipeline_stats.items():
            logger.info(f"  {key}: {value}")

        return 0 if successful else 1

    except Exception as e:
        logger.error(f"Ingestion failed: {e}")
        return 1
    finally:
        if pipeline is not None:
            pipeline.close()


if __name__ == "__main__":
    sys.exit(main())
