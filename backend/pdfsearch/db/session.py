"""
Database engine and session management.

The API process holds one pooled engine for its lifetime. Celery tasks run
each job inside a fresh event loop, so the worker builds its engine with
NullPool and disposes it at the end of the run (asyncpg connections cannot
cross event loops).
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from pdfsearch.core.config import Settings
from pdfsearch.models.documents import Base

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(settings: Settings, *, null_pool: bool = False) -> AsyncEngine:
    if null_pool or settings.database_url.startswith("sqlite"):
        return create_async_engine(
            settings.database_url,
            poolclass=NullPool,
            echo=settings.db_echo_sql,
        )
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create missing tables. Local development and tests only."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
