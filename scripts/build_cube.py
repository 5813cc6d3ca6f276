"""
Script to build cubes for a dataset's revisions from their already validated fact tables

Usage:
    python scripts/build_cube.py <dataset_id> [<revision_id> ...]

With no revision ids the cube is built for the dataset's draft revision.
"""

import asyncio
import sys
import os
import logging
from uuid import UUID

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import make_engine, make_session_maker
from core.exceptions import CubeException
from core.logging import setup_logging
from cube.builder import CubeBuilder
from cube.loaders import load_dataset, DatasetInclude

logger = logging.getLogger(__name__)


async def build_cubes(dataset_id: UUID, revision_ids):
    """Build a cube per revision, continuing past failed builds"""
    engine = make_engine(settings.DATABASE_URL)
    cube_engine = make_engine(settings.cube_database_url)
    session_maker = make_session_maker(engine)
    failures = 0

    try:
        async with session_maker() as session:
            dataset = await load_dataset(session, dataset_id, DatasetInclude(fact_table=True, dimension_metadata=True, revisions=True))

        if not revision_ids:
            draft = dataset.draft_revision
            if draft is None:
                logger.warning(f"Dataset {dataset_id} has no draft revision. Nothing to build.")
                return 0
            revision_ids = [draft.id]

        builder = CubeBuilder(cube_engine, session_maker)
        for revision_id in revision_ids:
            try:
                logger.info(f"Building cube for revision: {revision_id}")
                build_log = await builder.build(dataset, revision_id)
                logger.info(
                    f"Cube built for {revision_id}: "
                    f"Type={build_log.type.value}, "
                    f"Stages={len(build_log.stages)}"
                )
            except CubeException as e:
                failures += 1
                logger.error(f"Cube build failed for {revision_id}: {str(e)}")
                continue

        logger.info("All cube builds completed")

    except CubeException as e:
        logger.error(f"Cube pipeline error: {str(e)}")
        failures += 1
    finally:
        await engine.dispose()
        await cube_engine.dispose()

    return failures


if __name__ == "__main__":
    setup_logging()
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(2)

    failed = asyncio.run(build_cubes(UUID(sys.argv[1]), [UUID(arg) for arg in sys.argv[2:]]))
    sys.exit(1 if failed else 0)
