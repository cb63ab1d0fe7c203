"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Provides common functionality for all repositories including:
- Session management patterns
- Error handling wrappers
- Common query operations
- Logging setup

============================================================
USAGE
============================================================
All domain repositories inherit from BaseRepository.
Session is injected via constructor; the caller owns the
transaction (Database.session_scope()).

============================================================
"""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    ConnectionError,
    IntegrityError,
    QueryError,
    RecordNotFoundError,
)


# Type variable for ORM model
T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """
    Base class for all repositories.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    - Provides common CRUD patterns
    - Wraps database errors in repository exceptions
    - Manages logging for all operations

    ============================================================
    USAGE
    ============================================================
    class MyRepository(BaseRepository[MyModel]):
        def __init__(self, session: Session):
            super().__init__(session, MyModel, "MyRepository")

    ============================================================
    """

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str
    ) -> None:
        """
        Initialize the repository.

        Args:
            session: SQLAlchemy session (injected)
            model_class: The ORM model class this repository manages
            repository_name: Name for logging and error messages
        """
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        """Get the current session."""
        return self._session

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        context: Optional[dict] = None
    ) -> None:
        """
        Handle database errors by wrapping in repository exceptions.

        Raises:
            RepositoryException: Always raises appropriate exception
        """
        context = context or {}
        self._logger.error(
            f"Database error in {operation}: {error}",
            extra={"context": context},
        )

        if isinstance(error, OperationalError):
            raise ConnectionError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=str(error)
            ) from error

        if isinstance(error, SQLAlchemyIntegrityError):
            raise IntegrityError(
                repository_name=self._repository_name,
                operation=operation,
                constraint_name=context.get("constraint", "unknown"),
                message=str(error.orig) if error.orig is not None else str(error)
            ) from error

        raise QueryError(
            repository_name=self._repository_name,
            operation=operation,
            query_description=operation,
            original_error=str(error)
        ) from error

    def _add(self, entity: T) -> T:
        """
        Add an entity to the session and flush it.

        Returns:
            The added entity (with generated keys)
        """
        try:
            self._session.add(entity)
            self._session.flush()
            self._logger.debug(f"Added entity: {entity}")
            return entity
        except SQLAlchemyError as e:
            self._handle_db_error(e, "add", {"entity": str(entity)})
            raise  # Never reached, but satisfies type checker

    def _flush(self, operation: str, context: Optional[dict] = None) -> None:
        """Flush pending changes, wrapping errors."""
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, context)
            raise

    def _get_by_id(self, record_id: Any) -> Optional[T]:
        """Get an entity by its primary key."""
        try:
            return self._session.get(self._model_class, record_id)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get_by_id", {"id": str(record_id)})
            raise

    def _get_by_id_or_raise(self, record_id: Any, id_field: str = "id") -> T:
        """
        Get an entity by its primary key, raising if not found.

        Raises:
            RecordNotFoundError: If entity does not exist
        """
        entity = self._get_by_id(record_id)
        if entity is None:
            raise RecordNotFoundError(
                repository_name=self._repository_name,
                record_id=record_id,
                id_field=id_field
            )
        return entity

    def _count(self, *criteria: Any) -> int:
        """Count entities matching optional criteria."""
        try:
            stmt = select(func.count()).select_from(self._model_class)
            if criteria:
                stmt = stmt.where(*criteria)
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count")
            raise

    def _execute_query(self, stmt: Any) -> List[T]:
        """Execute a select statement and return results."""
        try:
            result = self._session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _execute_scalar(self, stmt: Any) -> Optional[T]:
        """Execute a select statement and return single result."""
        try:
            result = self._session.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query_scalar")
            raise

    def _execute_update(self, stmt: Any, operation: str) -> int:
        """Execute an UPDATE/DELETE and return the affected row count."""
        try:
            result = self._session.execute(stmt)
            return result.rowcount or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
            raise
