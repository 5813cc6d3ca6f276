"""
Pydantic schemas for consumer data options (the query store request object)
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Union
from models.base import DataValueType

Filter = Dict[str, List[str]]


class PivotOptions(BaseModel):
    """Pivot the base query: one output column per distinct value of x, grouped by y"""
    x: Union[str, List[str]]
    y: Union[str, List[str]]

    @validator("x", "y")
    def not_empty(cls, v):
        if not v:
            raise ValueError("pivot axes must name at least one column")
        return v

    @property
    def x_column(self) -> str:
        return self.x if isinstance(self.x, str) else self.x[0]

    @property
    def y_columns(self) -> List[str]:
        return [self.y] if isinstance(self.y, str) else list(self.y)


class ColumnOptions(BaseModel):
    """How columns and values are presented"""
    use_raw_column_names: Optional[bool] = None
    use_reference_values: Optional[bool] = None
    data_value_type: Optional[DataValueType] = None


class DataOptions(BaseModel):
    """
    Request object for a cube read.

    The hash of (dataset_id, revision_id, DataOptions) identifies a query store
    entry, so two requests that mean the same thing must serialise the same
    way; see ``canonical``.
    """
    pivot: Optional[PivotOptions] = None
    filters: Optional[List[Filter]] = Field(default_factory=list)
    options: Optional[ColumnOptions] = None

    def canonical(self) -> dict:
        """JSON-safe dict with unset optionals dropped"""
        return self.model_dump(mode="json", exclude_none=True)


class SortBy(BaseModel):
    """Sort applied when playing back a stored query"""
    column_name: str = Field(..., min_length=1)
    direction: str = "ASC"

    @validator("direction", pre=True, always=True)
    def normalise_direction(cls, v):
        v = (v or "ASC").upper()
        if v not in ("ASC", "DESC"):
            raise ValueError("direction must be ASC or DESC")
        return v


DEFAULT_DATA_OPTIONS = DataOptions(
    filters=[],
    options=ColumnOptions(
        use_raw_column_names=True,
        use_reference_values=True,
        data_value_type=DataValueType.RAW
    )
)

FRONTEND_DATA_OPTIONS = DataOptions(
    filters=[],
    options=ColumnOptions(
        use_raw_column_names=False,
        use_reference_values=True,
        data_value_type=DataValueType.WITH_NOTE_CODES
    )
)
