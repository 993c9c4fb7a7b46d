"""
Database engine and session management.

Usage:
    from backend.database.db import async_db_session

    async with async_db_session() as session:
        result = await session.execute(...)
        await session.commit()
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from backend.common.model import MappedBase
from backend.core.conf import settings


def create_async_engine_and_session(url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create the async engine and its session factory.

    Args:
        url: SQLAlchemy async database URL

    Returns:
        (engine, session factory)
    """
    kwargs = {
        'echo': settings.DATABASE_ECHO,
        'echo_pool': settings.DATABASE_POOL_ECHO,
        'future': True,
    }
    if not url.startswith('sqlite'):
        kwargs.update(pool_pre_ping=True, pool_recycle=3600, pool_size=10, max_overflow=20)

    engine = create_async_engine(url, **kwargs)
    db_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return engine, db_session


async_engine, async_db_session = create_async_engine_and_session(settings.DATABASE_URL)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Session dependency for FastAPI routes."""
    async with async_db_session() as session:
        yield session


CurrentSession = Annotated[AsyncSession, Depends(get_db)]


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """Create every billing table that does not exist yet."""
    # Register models on the metadata
    import backend.src.billing.store.models  # noqa: F401

    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(MappedBase.metadata.create_all)


async def drop_tables(engine: AsyncEngine | None = None) -> None:
    """Drop every billing table."""
    import backend.src.billing.store.models  # noqa: F401

    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(MappedBase.metadata.drop_all)
