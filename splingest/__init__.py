"""Staged bulk ingestion of hierarchical SPL regulatory documents."""

__version__ = "0.1.0"
