"""
Database engine and session management with SQLAlchemy async.

Two databases are involved:
    - the application database (datasets, revisions, build logs, query store)
    - the cube database, holding one schema per revision with its fact table
      and locale views

Components never reach for the module-level engines below; they are handed
an engine or session factory when constructed. The module-level objects only
exist to wire the API process together.
"""

from typing import AsyncIterator
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncConnection, AsyncSession, async_sessionmaker
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def make_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine for the given URL"""
    return create_async_engine(
        url,
        echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL == "DEBUG",
        poolclass=NullPool,
        future=True,
        **kwargs
    )


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to an engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


@asynccontextmanager
async def autocommit_connection(engine: AsyncEngine) -> AsyncIterator[AsyncConnection]:
    """
    Connection where every statement commits on its own.

    Used where a sequence of statements must not share a transaction, so a
    failing DDL statement does not abort the diagnostics that follow it.
    """
    async with engine.connect() as conn:
        conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        yield conn


# Application wiring
engine = make_engine(settings.DATABASE_URL)
cube_engine = make_engine(settings.cube_database_url)
async_session_maker = make_session_maker(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with async_session_maker() as session:
        yield session
