from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class FactTableColumnType(str, enum.Enum):
    """Semantic role a data table column plays in the fact table"""
    DATA_VALUES = "data_values"
    MEASURE = "measure"
    NOTE_CODES = "note_codes"
    DIMENSION = "dimension"
    IGNORE = "ignore"
    UNKNOWN = "unknown"
    LINE_NUMBER = "line_number"


class RevisionStatus(str, enum.Enum):
    """Revision lifecycle"""
    CREATED = "created"
    DRAFT = "draft"
    APPROVED = "approved"
    PUBLISHED = "published"


class CubeBuildStatus(str, enum.Enum):
    """Cube build status"""
    QUEUED = "queued"
    BUILDING = "building"
    MATERIALIZING = "materializing"
    COMPLETED = "completed"
    FAILED = "failed"


class CubeBuildType(str, enum.Enum):
    """Full cube with data values, or base cube over the bare fact table"""
    FULL_CUBE = "full_cube"
    BASE_CUBE = "base_cube"


class BuildStage(str, enum.Enum):
    """Ordered cube build stages"""
    BASE_TABLES = "base_tables"
    NOTE_CODES = "note_codes"
    DIMENSIONS = "dimensions"
    MEASURE = "measure"
    CORE_VIEW = "core_view"
    INDEXES = "indexes"
    POST_BUILD_METADATA = "post_build_metadata"


class DataValueType(str, enum.Enum):
    """Representation of the data value column requested by a consumer"""
    RAW = "raw"
    FORMATTED = "formatted"
    WITH_NOTE_CODES = "with_note_codes"
