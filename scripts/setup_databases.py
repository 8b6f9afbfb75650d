#!/usr/bin/env python3
"""Database setup script for initializing the Neo4j record store.

Creates the scope indexes used by deduplicating lookups. It can be run
multiple times safely (idempotent).

Usage:
    python scripts/setup_databases.py [--config config/config.yaml]

Environment variables:
    NEO4J_URI - Neo4j connection URI (default: bolt://localhost:7687)
    NEO4J_USER - Neo4j username (default: neo4j)
    NEO4J_PASSWORD - Neo4j password
"""

import argparse
import sys
from pathlib import Path

from loguru import logger

from splingest.storage.neo4j_manager import Neo4jManager
from splingest.utils.config import load_config


def setup_neo4j(config) -> bool:
    """Set up Neo4j database indexes.

    Args:
        config: Application configuration

    Returns:
        True if setup successful, False otherwise
    """
    logger.info("Setting up Neo4j database...")

    neo4j_manager = Neo4jManager(config.database)
    try:
        neo4j_manager.connect()
        neo4j_manager.create_schema()

        if neo4j_manager.health_check():
            logger.success("Neo4j setup completed successfully")
            return True
        logger.error("Neo4j health check failed after setup")
        return False

    except Exception as e:
        logger.error(f"Neo4j setup failed: {e}")
        return False
    finally:
        neo4j_manager.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialize Neo4j indexes for SPL ingestion.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config", "-c", type=Path, default=Path("config/config.yaml"), help="Config file"
    )
    return parser.parse_args()


def main():
    """Main setup function."""
    args = parse_args()
    logger.info("Starting database setup...")

    try:
        config = load_config(args.config)
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    if config.database.backend != "neo4j":
        logger.info("Configured backend is {}; nothing to set up", config.database.backend)
        return 0

    return 0 if setup_neo4j(config) else 1


if __name__ == "__main__":
    sys.exit(main())
