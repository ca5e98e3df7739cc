"""Database connection management for Guardian services.

Provides connection pooling, health checks, and the repository base
class used by the PostgreSQL-backed alert, filter and link stores.
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
]
