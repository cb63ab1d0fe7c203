"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Provides the declarative base and common mixins used by all
ORM models of the fleet store.

============================================================
COMPONENTS
============================================================
- UTCDateTime: Timezone-safe datetime column type
- Base: SQLAlchemy declarative base for all models
- TimestampMixin: Common timestamp columns

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Datetime column that always round-trips as aware UTC.

    Stored naive-UTC so SQLite (which drops tzinfo) and
    PostgreSQL compare identically.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    """Python-side default for timestamp columns."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    All models in the fleet store inherit from this base.
    """

    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class TimestampMixin:
    """
    Mixin providing standard timestamp columns.

    Adds created_at and updated_at columns to models that
    require temporal tracking. All timestamps are UTC.

    Usage:
        class MyModel(Base, TimestampMixin):
            __tablename__ = "my_table"
            ...
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
        comment="Record creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
        comment="Last update timestamp (UTC)"
    )
