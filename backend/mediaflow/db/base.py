"""
Database Base Classes and Common Column Types

Every MediaFlow model inherits from `BaseModel` defined here.

What lives here:
----------------
1. Constraint naming convention (stable names for Alembic diffs)
2. `Base`: the SQLAlchemy DeclarativeBase bound to our metadata
3. `CommonTableAttributes`: id / created_at / updated_at shared by all tables
4. Portable column types: JSON that becomes JSONB on PostgreSQL,
   string-backed UUID primary keys

Portability Note:
-----------------
Production runs on PostgreSQL (asyncpg + pgvector). The test suite runs on
in-memory SQLite (aiosqlite), so column types are picked to work on both:
JSONType degrades to plain JSON and UUIDs are stored as 36-char strings.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, MetaData, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, registry


# ================================
# Naming Convention for Constraints
# ================================
# ix_media_items_status, uq_media_chunks_media_item_id, fk_media_items_tenant_id_tenants ...
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)
orm_registry = registry(metadata=metadata)


# ================================
# Portable Column Types
# ================================
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_uuid() -> str:
    """Opaque identifier for rows exposed to callers (media items, tenants)."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Attach UTC to naive datetimes.

    PostgreSQL returns aware datetimes for TIMESTAMPTZ columns, SQLite hands
    back naive ones. Everything we store is UTC, so a naive value read back
    is UTC by construction.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        class Tenant(Base):
            __tablename__ = "tenants"
            id: Mapped[str] = mapped_column(String(36), primary_key=True)
    """

    registry = orm_registry
    metadata = metadata

    __tablename__: str


class CommonTableAttributes:
    """
    Mixin with the columns every table carries.

    - id: auto-incrementing integer primary key (models exposing an opaque
      id to callers override it with a UUID string column)
    - created_at: set once on insert
    - updated_at: refreshed on every UPDATE issued through the ORM

    Timestamps are timezone-aware UTC. Read them back through `ensure_utc`
    before doing arithmetic with them.
    """

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True,
        comment="Auto-incrementing primary key"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Timestamp when record was created (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp when record was last updated (UTC)"
    )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id})"

    def dict(self) -> dict[str, Any]:
        """Column name -> value mapping, handy for logging and tests."""
        return {
            column.name: getattr(self, column.name)
            for column in self.__table__.columns
        }


class BaseModel(Base, CommonTableAttributes):
    """
    Ready-to-use base class for all application models.

    Every model automatically gets id, created_at, updated_at, dict() and
    a readable __repr__().
    """

    __abstract__ = True


# ================================
# Common String Lengths
# ================================
String36 = String(36)  # UUIDs
String50 = String(50)  # enum-ish values, platform names
String255 = String(255)  # titles, external ids
String1000 = String(1000)  # storage paths, URLs
