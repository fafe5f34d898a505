"""
Async database connection using SQLAlchemy + asyncpg.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from callqa.config import settings

logger = logging.getLogger(__name__)

# Convert postgresql:// to postgresql+asyncpg://
_db_url = settings.database_url
if _db_url.startswith("postgresql://"):
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

engine = create_async_engine(
    _db_url,
    echo=False,
    pool_pre_ping=True,
    pool_size=5,
    max_overflow=10,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.

    Commits on success, rolls back on any exception.

    Usage:
        async with get_db() as session:
            result = await session.execute(...)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Apply Alembic migrations, or create tables directly when alembic.ini is absent.
    Called at application startup.
    """
    alembic_ini = os.path.join(os.path.dirname(__file__), "..", "..", "alembic.ini")
    if os.path.exists(alembic_ini):
        from alembic import command
        from alembic.config import Config

        try:
            # alembic runs its own event loop in env.py, keep it off ours
            await asyncio.to_thread(command.upgrade, Config(alembic_ini), "head")
            logger.info("Alembic migrations applied")
            return
        except Exception as e:
            logger.warning("Alembic migration failed (%s), falling back to create_all()", e)

    from callqa.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Tables created/verified (create_all)")


async def close_db() -> None:
    """
    Close database connections.

    Called at application shutdown, and by the worker after each run so the
    pool never outlives the event loop it was created on.
    """
    await engine.dispose()
    logger.info("Database connections closed")
