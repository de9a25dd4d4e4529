"""
Database session management for the Document / Chunk record store.

Flow:
  1. DocumentRepository asks for a session via get_session().
  2. get_session() opens a connection and a transaction (session.begin()).
  3. The block commits on exit, or rolls back if it raised — every
     repository call is therefore one atomic unit per document row.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rag_ingestion.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        # SQLite has no server-side pool to size
        return create_async_engine(url, echo=settings.db_echo_sql)

    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = create_engine()

AsyncSessionLocal = create_session_factory(engine)


# ---------------------------------------------------------------------------
# Session context
# ---------------------------------------------------------------------------

@asynccontextmanager
async def get_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session inside a transaction.
    Commits automatically on context exit (begin() block); rolls back on error.
    """
    async with (factory or AsyncSessionLocal)() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema / health helpers
# ---------------------------------------------------------------------------

async def create_all(bind: AsyncEngine | None = None) -> None:
    """Create tables for local development and tests (migrations own prod)."""
    from rag_ingestion.models.documents import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health(bind: AsyncEngine | None = None) -> dict:
    """Ping the database."""
    try:
        async with (bind or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
