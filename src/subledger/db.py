"""
Database plumbing (SQLAlchemy 2.0, async only).

Declarative base, shared mixins and async session management for the ledger.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, String, TypeDecorator, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from subledger.settings import settings

# ==========================================
# Database URLs from settings
# ==========================================


def get_async_database_url() -> str:
    """Async driver URL from settings; development without a password gets SQLite."""
    if settings.database.url:
        url = settings.database.url
    elif settings.is_development and not settings.database.password:
        # In development, use SQLite if PostgreSQL is not configured
        return "sqlite+aiosqlite:///./subledger_dev.sqlite"
    else:
        return (
            f"postgresql+asyncpg://{settings.database.username}:{settings.database.password}"
            f"@{settings.database.host}:{settings.database.port}/{settings.database.database}"
        )

    # Convert to async driver
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://")
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://")
    return url


# ==========================================
# Column types
# ==========================================


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage; values read back are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass an aware UTC datetime")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Declarative base shared by the ledger and dunning tables."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


class TenantMixin:
    """Adds tenant_id for multi-tenancy support (optional tenant)."""

    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Process-wide engine; SQLite skips the pool options it does not accept."""
    global _async_engine
    if _async_engine is None:
        url = get_async_database_url()
        if make_url(url).get_backend_name().startswith("sqlite"):
            _async_engine = create_async_engine(url, echo=settings.database.echo)
        else:
            _async_engine = create_async_engine(
                url,
                echo=settings.database.echo,
                pool_size=settings.database.pool_size,
                max_overflow=settings.database.max_overflow,
                pool_timeout=settings.database.pool_timeout,
                pool_recycle=settings.database.pool_recycle,
                pool_pre_ping=settings.database.pool_pre_ping,
            )
    return _async_engine


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_maker


def set_async_session_maker(session_maker: async_sessionmaker[AsyncSession] | None) -> None:
    """Override the session factory (used by tests and embedding applications)."""
    global _async_session_maker
    _async_session_maker = session_maker


@asynccontextmanager
async def get_async_db() -> AsyncIterator[AsyncSession]:
    """Session that commits on a clean exit and rolls back on error."""
    async with get_async_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create the ledger and dunning tables."""
    # Register ledger tables with the metadata
    from subledger.billing.dunning import entities as _dunning_entities  # noqa: F401
    from subledger.billing.subscriptions import entities as _subscription_entities  # noqa: F401

    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Drop the ledger and dunning tables."""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def check_database_health() -> bool:
    """True when a trivial query succeeds on a fresh session."""
    try:
        async with get_async_db() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


__all__ = [
    "Base",
    "TimestampMixin",
    "TenantMixin",
    "UTCDateTime",
    "get_async_engine",
    "get_async_session_maker",
    "set_async_session_maker",
    "get_async_db",
    "create_all_tables_async",
    "drop_all_tables_async",
    "check_database_health",
]
