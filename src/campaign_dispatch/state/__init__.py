"""Durable state: database backends and the repository."""

from .backends import DatabaseBackend, PostgresBackend, SQLiteBackend, create_backend
from .repository import Repository

__all__ = [
    "DatabaseBackend",
    "SQLiteBackend",
    "PostgresBackend",
    "create_backend",
    "Repository",
]
