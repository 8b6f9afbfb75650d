"""Shared utilities: configuration and error types."""
