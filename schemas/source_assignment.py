"""
Pydantic schemas for column descriptors and the caller-supplied source assignment
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Iterator
from models.base import FactTableColumnType


class ColumnDescriptor(BaseModel):
    """One raw data table column with its inferred engine-native type"""
    name: str = Field(..., min_length=1)
    index: int = Field(..., ge=0)
    inferred_type: str = Field("VARCHAR", alias="inferredType")

    class Config:
        populate_by_name = True


class SourceAssignmentItem(BaseModel):
    """Role assignment for a single raw column"""
    column_name: str = Field(..., min_length=1)
    column_index: int = Field(..., ge=0)
    column_type: FactTableColumnType

    class Config:
        use_enum_values = False


class SourceAssignment(BaseModel):
    """
    Partition of the raw columns into roles.

    JSON shape: {dataValues, measure, noteCodes, dimensions[], ignore[]}.
    Each raw column must appear in exactly one partition.
    """
    data_values: Optional[SourceAssignmentItem] = Field(None, alias="dataValues")
    measure: Optional[SourceAssignmentItem] = None
    note_codes: Optional[SourceAssignmentItem] = Field(None, alias="noteCodes")
    dimensions: List[SourceAssignmentItem] = Field(default_factory=list)
    ignore: List[SourceAssignmentItem] = Field(default_factory=list)

    @validator("dimensions", "ignore", pre=True)
    def none_to_empty(cls, v):
        return v or []

    def items(self) -> Iterator[SourceAssignmentItem]:
        """Every assigned column, single-valued partitions first"""
        for item in (self.data_values, self.measure, self.note_codes):
            if item is not None:
                yield item
        yield from self.dimensions
        yield from self.ignore

    class Config:
        populate_by_name = True
