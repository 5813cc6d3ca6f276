"""
SQLAlchemy ORM models for the application database.

Models:
    base: Base declarative class and shared enums (FactTableColumnType,
          RevisionStatus, CubeBuildStatus, CubeBuildType, BuildStage, DataValueType)
    dataset: Datasets, fact table columns and per-locale dimension metadata
    revision: Revisions and their raw data tables
    build_log: Cube build tracking
    query_store: Cached consumer queries

The fact tables and cube views themselves are not ORM models: they live in
the cube database, one schema per revision, and are created by the cube
package.

Usage:
    from models.dataset import Dataset, FactTableColumn
    from models.base import FactTableColumnType
"""

from models.base import Base
from models.dataset import Dataset, FactTableColumn, DimensionMetadata
from models.revision import Revision, DataTable
from models.build_log import BuildLog
from models.query_store import QueryStoreEntry

__all__ = [
    "Base",
    "Dataset",
    "FactTableColumn",
    "DimensionMetadata",
    "Revision",
    "DataTable",
    "BuildLog",
    "QueryStoreEntry",
]
