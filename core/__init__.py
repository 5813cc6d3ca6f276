"""
Core utilities and configuration for the fact table and cube service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Engine factories, session factories and scoped connections
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import make_engine, make_session_maker
    from core.exceptions import FactTableValidationException
    from core.logging import setup_logging

Example:
    setup_logging()

    cube_engine = make_engine(settings.cube_database_url)
    validator = FactTableValidator(cube_engine)
"""

__all__ = [
    "settings",
    "make_engine",
    "make_session_maker",
    "autocommit_connection",
    "setup_logging",
    # Exceptions
    "CubeException",
    "FactTableValidationException",
    "FactTableValidationExceptionType",
    "CubeBuildException",
    "QueryStoreException",
    "QueryStoreNotFound",
    "RevisionLockedException",
]
