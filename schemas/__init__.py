"""
Pydantic schemas for validation and serialisation.

Schemas:
    source_assignment: Raw column descriptors and the role assignment
    data_options: Consumer read options (filters, pivot, column options)
    api: API request/response models

Usage:
    from schemas.source_assignment import SourceAssignment, ColumnDescriptor
    from schemas.data_options import DataOptions, DEFAULT_DATA_OPTIONS

Example:
    assignment = SourceAssignment.model_validate({
        "dataValues": {"column_name": "data", "column_index": 2, "column_type": "data_values"},
        "dimensions": [{"column_name": "year", "column_index": 0, "column_type": "dimension"}],
    })
"""

__all__ = [
    "ColumnDescriptor",
    "SourceAssignment",
    "SourceAssignmentItem",
    "DataOptions",
    "PivotOptions",
    "ColumnOptions",
    "DEFAULT_DATA_OPTIONS",
    "FRONTEND_DATA_OPTIONS",
    "HealthCheckResponse",
    "QueryStoreResponse",
    "DataQueryResponse",
    "ErrorResponse",
]
