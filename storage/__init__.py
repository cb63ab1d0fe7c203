"""
Storage Package.

This package manages all data persistence for the fleet store.

Modules:
- database: Engine, sessions and transaction scope
- models/: SQLAlchemy ORM models
- repositories/: Data access layer
"""

from storage.database import Database, DatabaseConnectionError, DatabasePersistenceError


__all__ = [
    "Database",
    "DatabaseConnectionError",
    "DatabasePersistenceError",
]
