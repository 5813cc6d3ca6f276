"""
FastAPI dependencies: database sessions, the cube engine and cube services
"""

from typing import AsyncIterator
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from core import database
from cube.query_store import QueryStore
from cube.builder import CubeBuilder


async def get_db() -> AsyncIterator[AsyncSession]:
    """Application database session"""
    async for session in database.get_session():
        yield session


def get_cube_engine() -> AsyncEngine:
    return database.cube_engine


def get_query_store() -> QueryStore:
    return QueryStore(database.async_session_maker, database.cube_engine)


def get_cube_builder() -> CubeBuilder:
    return CubeBuilder(database.cube_engine, database.async_session_maker)
