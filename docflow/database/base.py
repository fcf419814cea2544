"""Declarative base, async engine and session factory."""

from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from docflow.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_engine(url: str) -> AsyncEngine:
    """Create the async engine for a database URL.

    Pool sizing and the prepared statement cache switch only apply to
    asyncpg; sqlite URLs (used by tests and local runs) get the defaults.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.database_echo, future=True)

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.database_echo,
        future=True,
        # Disable prepared statement cache for PgBouncer compatibility
        connect_args={"statement_cache_size": 0},
    )


engine = build_engine(settings.database_url)

async_session_maker = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)
