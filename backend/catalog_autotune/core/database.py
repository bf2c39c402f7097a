"""
Catalog Autotune - Database Connection
======================================

Async engine and session factory shared by the API and the worker.

The API and the worker may run against the same SQLite file, so SQLite
connections wait on a busy timeout instead of failing while another
process holds the write lock (batch claims rely on this).
"""

from collections.abc import AsyncGenerator
from typing import Any, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from catalog_autotune.core.config import settings

SQLITE_BUSY_TIMEOUT_SECONDS = 30


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine & Sessions
# ==========================================================================

def create_engine(database_url: Optional[str] = None, **engine_kwargs: Any) -> AsyncEngine:
    """
    Build an async engine for database_url (defaults to DATABASE_URL).

    Pool sizing only applies to PostgreSQL.
    """
    url = str(database_url or settings.DATABASE_URL)
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        connect_args.update(engine_kwargs.pop("connect_args", {}))
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args=connect_args,
            **engine_kwargs,
        )
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        **engine_kwargs,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Orchestration keeps using rows after commit; they must not expire
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session dependency.

    Usage:
        @router.get("/batches")
        async def list_batches(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def create_tables(bind: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    from catalog_autotune.core import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    await create_tables(engine)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
