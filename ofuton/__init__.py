"""A small S3-compatible object storage server backed by a local directory and SQLite."""

__version__ = "2025.8.1"