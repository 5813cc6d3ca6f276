"""
Custom exceptions for the fact table and cube pipeline with structured error context.

Every failure leaving the core is raised as one of the exceptions below. Each
carries a human-readable message, a context dictionary, the underlying engine
error (chained as ``__cause__``) and, where the failure is surfaced outward,
an HTTP-style status.

Exception Hierarchy:
    CubeException (base)
    ├── FactTableValidationException   (kind + status + diagnostic rows)
    ├── CubeBuildException             (build id + failing stage)
    ├── QueryStoreException
    │   └── QueryStoreNotFound
    └── RevisionLockedException
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
import enum


class CubeException(Exception):
    """
    Base exception for all fact table, cube and query store errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (dataset, revision, etc.)
        original_exception: The original exception that was caught (if any)
        status: HTTP-style status used when the error is surfaced outward
    """

    status: int = 500

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        status: Optional[int] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()
        if status is not None:
            self.status = status

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "status": self.status,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Fact Table Validation Errors
# ============================================================================

class FactTableValidationExceptionType(str, enum.Enum):
    """Failure kinds surfaced by fact table resolution, creation and validation"""
    UNKNOWN_SOURCES_STILL_PRESENT = "unknown_sources_still_present"
    NON_NUMERIC_DATA_VALUE_COLUMN = "non_numeric_data_value_column"
    DUPLICATE_FACT = "duplicate_fact"
    INCOMPLETE_FACT = "incomplete_fact"
    BAD_NOTE_CODES = "bad_note_codes"
    NO_NOTE_CODES = "no_note_codes"
    NO_DRAFT_REVISION = "no_draft_revision"
    NO_DATA_TABLE = "no_data_table"
    NO_DATA_VALUE_COLUMN = "no_data_value_column"
    FACT_TABLE_CREATION_FAILED = "fact_table_creation_failed"
    UNKNOWN_ERROR = "unknown_error"


class FactTableValidationException(CubeException):
    """
    Raised when a fact table cannot be created or fails a validation check.

    Data-quality failures carry status 400 and, where row identity matters,
    a bounded sample of offending rows in ``headers``/``data``.
    Structural and engine failures carry status 500.
    """

    def __init__(
        self,
        message: str,
        kind: FactTableValidationExceptionType,
        status: int = 400,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        headers: Optional[List[Dict[str, Any]]] = None,
        data: Optional[List[List[Any]]] = None
    ):
        super().__init__(message, context, original_exception, status=status)
        self.kind = kind
        self.headers = headers
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind.value
        if self.headers is not None:
            result["headers"] = self.headers
        if self.data is not None:
            result["data"] = self.data
        return result


# ============================================================================
# Cube Build Errors
# ============================================================================

class CubeBuildException(CubeException):
    """
    Raised when a cube build stage fails.

    Context should include:
        - build_id: Identifier of the build log entry
        - revision_id: Revision the cube is built for
        - stage: Build stage that failed
    """
    pass


# ============================================================================
# Query Store Errors
# ============================================================================

class QueryStoreException(CubeException):
    """
    Raised when a query store entry cannot be generated.

    Context should include:
        - dataset_id / revision_id: Request identity
        - hash: Request hash (if computed)
    """
    pass


class QueryStoreNotFound(QueryStoreException):
    """No query store entry exists for the requested id."""
    status = 404


# ============================================================================
# Revision Errors
# ============================================================================

class RevisionLockedException(CubeException):
    """Fact table columns were changed on a revision that is no longer a draft."""
    status = 409
