"""
Health check endpoint with database, cube database and build status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine
from sqlalchemy import select, text
from api.dependencies import get_db, get_cube_engine
from schemas.api import HealthCheckResponse, CubeBuildInfo
from models.build_log import BuildLog
from models.base import CubeBuildStatus
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

RECENT_BUILDS = 10


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    cube_engine: AsyncEngine = Depends(get_cube_engine)
):
    """
    Health check endpoint.

    Returns:
    - Application and cube database connectivity
    - Most recent cube builds and how many of them failed
    """
    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    cube_connected = False
    try:
        async with cube_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        cube_connected = True
    except Exception as e:
        logger.error(f"Cube database connection failed: {str(e)}")

    recent_builds = []
    failed_builds = 0
    if db_connected:
        try:
            result = await db.execute(
                select(BuildLog).order_by(BuildLog.started_at.desc()).limit(RECENT_BUILDS)
            )
            builds = result.scalars().all()
            recent_builds = [CubeBuildInfo.model_validate(build) for build in builds]
            failed_builds = sum(1 for build in builds if build.status == CubeBuildStatus.FAILED)
        except Exception as e:
            logger.error(f"Failed to fetch cube builds: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        cube_database_connected=cube_connected,
        recent_builds=recent_builds,
        failed_builds=failed_builds
    )
