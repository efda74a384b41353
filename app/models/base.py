"""ORM base class, shared mixins and column helpers for the batch store."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Integer, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, MappedColumn, mapped_column


class Base(DeclarativeBase):
    pass


def jsonb_column(empty: dict | list) -> MappedColumn[Any]:
    """Non-null JSONB column defaulting to an empty object or array on both sides."""
    literal = "'{}'::jsonb" if isinstance(empty, dict) else "'[]'::jsonb"
    return mapped_column(
        JSONB,
        nullable=False,
        default=type(empty),
        server_default=text(literal),
    )


class TimestampMixin:
    """created_at / updated_at, both maintained by the database."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class UUIDPrimaryKeyMixin:
    """UUID primary key; the service assigns it, uuid-ossp covers raw inserts."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.uuid_generate_v4(),
    )


class VersionedMixin:
    """Row version for optimistic concurrency.

    Writers send the version they read and bump it in the same UPDATE;
    zero rows updated means another writer got there first.
    """

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default=text("1"),
    )


class AppendOnlyMixin:
    """BIGSERIAL PK + record timestamp for audit rows that are never updated."""

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
