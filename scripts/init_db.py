"""
Create the application tables and the shared lookup schema.

Usage:
    python scripts/init_db.py
"""

import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, cube
sys.path.append(os.getcwd())

from core.config import settings
from core.database import make_engine
from core.logging import setup_logging
from cube.sql import LOOKUP_SCHEMA, quote
# Importing the package registers every model on Base.metadata
from models import Base

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to application database...")
    engine = make_engine(settings.DATABASE_URL)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Tables created: {', '.join(sorted(Base.metadata.tables))}")

    await engine.dispose()

    logger.info("Connecting to cube database...")
    cube_engine = make_engine(settings.cube_database_url)
    async with cube_engine.begin() as conn:
        await conn.exec_driver_sql(f"CREATE SCHEMA IF NOT EXISTS {quote(LOOKUP_SCHEMA)}")
        logger.info(f"Lookup schema '{LOOKUP_SCHEMA}' ready")

    await cube_engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
