"""
Database configuration and session management.

SQLAlchemy 2.0 async engine, declarative base and shared column mixins.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import DateTime
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from ledgerline.settings import settings

logger = structlog.get_logger(__name__)


# ==========================================
# Column types
# ==========================================


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetime column.

    SQLite drops tzinfo on the way out, so values are normalised to UTC on
    write and re-tagged as UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


# ==========================================
# Declarative base and mixins
# ==========================================


class Base(DeclarativeBase):
    """Base class for all ledgerline tables."""

    type_annotation_map = {datetime: UTCDateTime()}


class TimestampMixin:
    """Mixin for created/updated timestamps."""

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )


class SoftDeleteMixin:
    """Mixin for soft delete functionality."""

    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


# ==========================================
# Engine and session factory
# ==========================================


def create_engine(url: str | None = None, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to the configured database)."""
    url = url or settings.database.sqlalchemy_url
    options: dict[str, Any] = {"echo": settings.database.echo}
    if url.startswith("sqlite"):
        # Concurrent writers wait for the file lock instead of failing fast
        options["connect_args"] = {"timeout": 30}
    else:
        options.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=settings.database.pool_pre_ping,
        )
    options.update(kwargs)
    logger.debug("database.engine.created", dialect=url.split(":", 1)[0])
    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables in the database."""
    # Registers the billing tables on Base.metadata
    from ledgerline.billing.storage import tables  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.tables.created", tables=len(Base.metadata.tables))


__all__ = [
    "Base",
    "UTCDateTime",
    "TimestampMixin",
    "SoftDeleteMixin",
    "utcnow",
    "create_engine",
    "create_session_factory",
    "init_models",
]
