"""Optimistic concurrency race harness for a single versioned PostgreSQL row."""

__version__ = "0.1.0"
