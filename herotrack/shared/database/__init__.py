"""Database connection management for herotrack services.

Provides connection pooling, health checks, and repository base classes
for PostgreSQL, with in-memory fallbacks for development.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
    storage_connection_manager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
    DuplicateError,
)
from .archive import ArchivableRepository

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "storage_connection_manager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
    "ArchivableRepository",
]
