"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Manages the store's engine and sessions.

- Engine with connection pooling (QueuePool for servers,
  StaticPool for in-memory SQLite)
- Session factory
- Transaction scope: commit on success, rollback on ANY error
- Schema creation

============================================================
DESIGN PRINCIPLES
============================================================
- Owned and constructor-injected, never a module global
- Explicit transaction boundaries
- Hard failures on persistence errors

============================================================
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import DatabaseConfig
from core.exceptions import FatalError, TransientError
from storage.models import Base


logger = logging.getLogger(__name__)


class DatabasePersistenceError(FatalError):
    """A transaction could not be committed."""


class DatabaseConnectionError(TransientError):
    """The store is unreachable."""


class Database:
    """
    Engine and session factory for the fleet store.

    Usage:
        db = Database(DatabaseConfig(url="sqlite://"))
        db.create_all()
        with db.session_scope() as session:
            session.add(record)
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, engine: Optional[Engine] = None):
        self._config = config or DatabaseConfig()
        self._engine = engine or self._create_engine(self._config)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @staticmethod
    def _create_engine(config: DatabaseConfig) -> Engine:
        """Create SQLAlchemy engine with pooling suited to the URL."""
        url = config.url
        logger.info(f"Creating database engine for: {url.split('@')[-1]}")

        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            engine = create_engine(url, echo=config.echo, future=True, **kwargs)

            @event.listens_for(engine, "connect")
            def _enable_foreign_keys(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        return create_engine(
            url,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
            echo=config.echo,
            future=True,
        )

    @property
    def engine(self) -> Engine:
        """Get the engine."""
        return self._engine

    def create_all(self) -> None:
        """
        Create all tables defined in ORM models.

        Raises:
            DatabasePersistenceError: If table creation fails
        """
        try:
            Base.metadata.create_all(bind=self._engine)
            logger.info("Database tables created")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise DatabasePersistenceError(f"Table creation failed: {e}", cause=e) from e

    def verify_connection(self) -> bool:
        """
        Verify the store answers.

        Raises:
            DatabaseConnectionError: If connection fails
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return True
        except OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseConnectionError(f"Cannot connect to database: {e}", cause=e) from e

    def new_session(self) -> Session:
        """
        Get a new session.

        IMPORTANT: Caller is responsible for committing/closing.
        Prefer session_scope().
        """
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for explicit transaction boundaries.

        Commits only if no exception occurs.
        Rolls back on ANY exception and re-raises it.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            logger.debug(f"Transaction rolled back: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()
