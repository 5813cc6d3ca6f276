"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID
from models.base import CubeBuildStatus, CubeBuildType


# ============================================================================
# Health Check Schemas
# ============================================================================

class CubeBuildInfo(BaseModel):
    """Most recent cube builds, for the health check"""
    id: UUID
    revision_id: Optional[UUID]
    status: CubeBuildStatus
    type: CubeBuildType
    started_at: datetime
    completed_at: Optional[datetime] = None
    failed_stage: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    cube_database_connected: bool
    recent_builds: List[CubeBuildInfo] = Field(default_factory=list)
    failed_builds: int = 0
    status: str = Field(None, description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if not values.get("cube_database_connected", False):
            return "unhealthy"
        if values.get("failed_builds", 0) > 0:
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "cube_database_connected": True,
                "failed_builds": 0,
                "recent_builds": []
            }
        }


# ============================================================================
# Query Store Schemas
# ============================================================================

class ColumnMappingItem(BaseModel):
    """Fact table column to localised dimension name"""
    fact_table_column: str
    dimension_name: str
    language: str


class QueryStoreResponse(BaseModel):
    """Persisted query store entry"""
    id: str
    hash: str
    dataset_id: UUID
    revision_id: UUID
    request_object: Dict[str, Any]
    query: Dict[str, str]
    total_lines: int
    column_mapping: List[ColumnMappingItem]

    class Config:
        from_attributes = True


class DataQueryResponse(BaseModel):
    """Playback query built from a query store entry"""
    id: str
    locale: str
    page_number: int
    page_size: int
    total_lines: int
    total_pages: int
    query: str


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    kind: Optional[str] = None
    message: str
    headers: Optional[List[Dict[str, Any]]] = None
    data: Optional[List[List[Any]]] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "FactTableValidationException",
                "kind": "duplicate_fact",
                "message": "Duplicate facts found in the data table",
                "headers": [
                    {"name": "line_number", "index": 0, "source_type": "line_number"},
                    {"name": "year", "index": 1, "source_type": "unknown"}
                ],
                "data": [[1, "2015"], [2, "2015"]],
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
