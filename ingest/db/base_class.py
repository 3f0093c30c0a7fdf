# ingest/db/base_class.py
from __future__ import annotations

"""
# BBMovie Ingest: SQLAlchemy Base & Mixins

SQLAlchemy 2.0 declarative **Base** with:
- Global **naming conventions** (Alembic-friendly)
- Automatic **snake_case `__tablename__`**
- Portable column types (PostgreSQL in prod, SQLite in tests):
  - `UTCDateTime`: always returns timezone-aware UTC datetimes
  - `JSONType`: JSONB on PostgreSQL, JSON elsewhere
  - `BigIntPK`: BIGINT identity on PostgreSQL, INTEGER rowid on SQLite
- `TimestampMixin`: `created_at` / `updated_at` set app-side (UTC) with a
  server default as a safety net

Usage:
    from ingest.db.base_class import Base, TimestampMixin, UTCDateTime

    class OutboxEvent(TimestampMixin, Base):
        __tablename__ = "outbox_event"
        ...
"""

from datetime import datetime, timezone
import re
from typing import Optional

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, MetaData, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, declared_attr
from sqlalchemy.types import TypeDecorator

# ──────────────────────────────────────────────────────────────────────────────
# 🏷️ Naming conventions (stable constraint names for Alembic)
# ──────────────────────────────────────────────────────────────────────────────

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def _to_snake(name: str) -> str:
    """Convert `CamelCase` / `PascalCase` to `snake_case` for table names."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def utcnow() -> datetime:
    """Timezone-aware UTC now (single clock for models and services)."""
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────────────────────
# 🧮 Portable types
# ──────────────────────────────────────────────────────────────────────────────

class UTCDateTime(TypeDecorator):
    """`DateTime(timezone=True)` that never hands back a naive value.

    SQLite stores datetimes without offsets; values are normalized to UTC on
    the way in and tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


# ──────────────────────────────────────────────────────────────────────────────
# 🧱 Declarative Base
# ──────────────────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Global declarative base for ingest models."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    @declared_attr.directive
    def __tablename__(cls) -> str:  # type: ignore[override]
        return _to_snake(cls.__name__)

    def __repr__(self) -> str:  # pragma: no cover (repr convenience)
        attrs: list[str] = []
        for key in ("id", "upload_id", "part_number", "status"):
            if key in self.__dict__:
                attrs.append(f"{key}={self.__dict__[key]!r}")
        return f"{self.__class__.__name__}({', '.join(attrs)})"


# ──────────────────────────────────────────────────────────────────────────────
# 🧩 Common mixins
# ──────────────────────────────────────────────────────────────────────────────

class TimestampMixin:
    """
    UTC timestamps.
    - `created_at`: set once at insert
    - `updated_at`: set at insert and refreshed on ORM updates
    """
    created_at = Column(UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "JSONType",
    "BigIntPK",
    "NAMING_CONVENTION",
    "utcnow",
]
