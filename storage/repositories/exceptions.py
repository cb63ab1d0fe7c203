"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
Repository-specific exceptions. All database errors are caught
and wrapped in these, each carrying its taxonomy category so
callers react through core.exceptions.classify_error().

- ConnectionError      -> TRANSIENT
- RecordNotFoundError  -> CONFIGURATION
- ReferencedRecordError-> CONFIGURATION
- IntegrityError       -> FATAL
- QueryError           -> FATAL

============================================================
"""

from typing import Any, Optional

from core.exceptions import ErrorCategory, FleetException, Severity


class RepositoryException(FleetException):
    """
    Base exception for all repository operations.

    Business layers can catch this for generic error handling.
    """

    default_category = ErrorCategory.FATAL
    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[dict] = None,
        category: Optional[ErrorCategory] = None,
    ) -> None:
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(
            f"[{repository_name}] {operation}: {message}",
            category=category,
            context=dict(self.details),
        )


class RecordNotFoundError(RepositoryException):
    """
    Raised when a requested record does not exist.
    """

    default_category = ErrorCategory.CONFIGURATION
    default_severity = Severity.LOW

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        id_field: str = "id"
    ) -> None:
        super().__init__(
            message=f"Record with {id_field}={record_id} not found",
            repository_name=repository_name,
            operation="get",
            details={id_field: str(record_id)}
        )
        self.record_id = record_id
        self.id_field = id_field


class ReferencedRecordError(RepositoryException):
    """
    Raised when deleting a record that other rows still reference
    and the caller asked for neither cascade nor reassignment.
    """

    default_category = ErrorCategory.CONFIGURATION
    default_severity = Severity.MEDIUM

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        references: dict,
    ) -> None:
        super().__init__(
            message=f"Record {record_id} is still referenced: {references}",
            repository_name=repository_name,
            operation="delete",
            details={"record_id": str(record_id), **{k: str(v) for k, v in references.items()}}
        )
        self.record_id = record_id
        self.references = references


class IntegrityError(RepositoryException):
    """
    Raised when database integrity constraints are violated.
    """

    def __init__(
        self,
        repository_name: str,
        operation: str,
        constraint_name: str,
        message: str
    ) -> None:
        super().__init__(
            message=f"Integrity constraint violated ({constraint_name}): {message}",
            repository_name=repository_name,
            operation=operation,
            details={"constraint": constraint_name}
        )
        self.constraint_name = constraint_name


class ConnectionError(RepositoryException):
    """
    Raised when database connection fails.
    """

    default_category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Database connection failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error}
        )


class QueryError(RepositoryException):
    """
    Raised when a query execution fails.
    """

    def __init__(
        self,
        repository_name: str,
        operation: str,
        query_description: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Query failed ({query_description}): {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={
                "query_description": query_description,
                "original_error": original_error
            }
        )

