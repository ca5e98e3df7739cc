"""Base repository pattern for PostgreSQL-backed stores.

Provides the common upsert / lookup / count operations; subclasses
supply row mapping and any entity-specific queries.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement entity-specific logic while inheriting:
    - Connection management
    - Error wrapping into RepositoryError
    - Logging patterns
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        table_name: str,
        id_column: str = "id",
        columns: Optional[Sequence[str]] = None,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager
            table_name: Name of the database table
            id_column: Primary key column used for lookups and upserts
            columns: Column order expected by _row_to_entity (default *)
        """
        self.connection_manager = connection_manager
        self.table_name = table_name
        self.id_column = id_column
        self.select_columns = ", ".join(columns) if columns else "*"

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={"table_name": table_name}
        )

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity."""

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to a column -> value mapping."""

    def _fetch_one(self, query: str, params: Sequence[Any]) -> Optional[tuple]:
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.fetchone()
        except RepositoryError:
            raise
        except Exception as e:
            self._log_failure("fetch_one", e)
            raise RepositoryError(str(e)) from e

    def _fetch_all(self, query: str, params: Sequence[Any]) -> List[tuple]:
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return list(cur.fetchall())
        except RepositoryError:
            raise
        except Exception as e:
            self._log_failure("fetch_all", e)
            raise RepositoryError(str(e)) from e

    def _execute(self, query: str, params: Sequence[Any]) -> int:
        """Run a write statement and commit; returns the affected row count."""
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    conn.commit()
                    return cur.rowcount
        except RepositoryError:
            raise
        except Exception as e:
            self._log_failure("execute", e)
            raise RepositoryError(str(e)) from e

    def _log_failure(self, operation: str, error: Exception) -> None:
        logger.error(
            "REPOSITORY_OPERATION_FAILED",
            extra={
                "table_name": self.table_name,
                "operation": operation,
                "error": str(error),
                "error_type": type(error).__name__,
            }
        )

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID.

        Returns:
            Entity if found, None otherwise
        """
        row = self._fetch_one(
            f"SELECT {self.select_columns} FROM {self.table_name} WHERE {self.id_column} = %s",
            (entity_id,)
        )
        if row is None:
            return None
        return self._row_to_entity(row)

    def save(self, entity: T) -> T:
        """Save entity (insert or update).

        Args:
            entity: Entity to save

        Returns:
            Saved entity
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        values = list(params.values())
        placeholders = ["%s"] * len(values)

        update_clause = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in columns if col != self.id_column
        )

        query = f"""
            INSERT INTO {self.table_name} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT ({self.id_column}) DO UPDATE SET {update_clause}
        """
        self._execute(query, values)
        return entity

    def delete(self, entity_id: str) -> bool:
        """Delete entity by ID.

        Returns:
            True if deleted, False if not found
        """
        return self._execute(
            f"DELETE FROM {self.table_name} WHERE {self.id_column} = %s",
            (entity_id,)
        ) > 0

    def count(self) -> int:
        row = self._fetch_one(f"SELECT COUNT(*) FROM {self.table_name}", ())
        return row[0] if row else 0
