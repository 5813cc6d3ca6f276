"""
Resolve which role each fact table column plays from a source assignment.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from models.base import FactTableColumnType
from schemas.source_assignment import SourceAssignment, SourceAssignmentItem
from cube.loaders import FactTableColumnInfo
from core.exceptions import FactTableValidationException, FactTableValidationExceptionType
import logging

logger = logging.getLogger(__name__)

IDENTITY_TYPES = (FactTableColumnType.DIMENSION, FactTableColumnType.MEASURE)


@dataclass(frozen=True)
class FactTableDefinition:
    """A physical fact table column paired with its resolved role"""
    column: FactTableColumnInfo
    column_type: FactTableColumnType
    source_assignment: Optional[SourceAssignmentItem] = None

    @property
    def name(self) -> str:
        return self.column.column_name

    @property
    def is_identity(self) -> bool:
        return self.column_type in IDENTITY_TYPES


def resolve_column_role(
    column_name: str,
    assignment: SourceAssignment
) -> Tuple[FactTableColumnType, Optional[SourceAssignmentItem]]:
    """
    Single point of role dispatch for a column.

    Returns UNKNOWN when the column is in no partition or in more than one.
    """
    partitions = (
        (FactTableColumnType.DATA_VALUES, [assignment.data_values] if assignment.data_values else []),
        (FactTableColumnType.MEASURE, [assignment.measure] if assignment.measure else []),
        (FactTableColumnType.NOTE_CODES, [assignment.note_codes] if assignment.note_codes else []),
        (FactTableColumnType.DIMENSION, assignment.dimensions),
        (FactTableColumnType.IGNORE, assignment.ignore),
    )
    matches = [
        (column_type, item)
        for column_type, items in partitions
        for item in items
        if item.column_name == column_name
    ]
    if len(matches) != 1:
        if len(matches) > 1:
            logger.warning(f"Column {column_name} is assigned {len(matches)} roles")
        return FactTableColumnType.UNKNOWN, None
    return matches[0]


def resolve_fact_table(
    columns: Sequence[FactTableColumnInfo],
    assignment: SourceAssignment
) -> List[FactTableDefinition]:
    """
    Pair every fact table column (in source order) with its role.

    Raises:
        FactTableValidationException(UnknownSourcesStillPresent): a column has
            no single resolved role. Raised before any DDL is issued.
    """
    definitions = []
    for col in sorted(columns, key=lambda c: c.column_index):
        column_type, item = resolve_column_role(col.column_name, assignment)
        definitions.append(FactTableDefinition(column=col, column_type=column_type, source_assignment=item))

    unknown = [d.name for d in definitions if d.column_type == FactTableColumnType.UNKNOWN]
    if unknown:
        logger.error(f"Found unknowns when doing column matching: {unknown}")
        raise FactTableValidationException(
            "Found unknowns when doing column matching.",
            FactTableValidationExceptionType.UNKNOWN_SOURCES_STILL_PRESENT,
            400,
            context={"unknown_columns": unknown}
        )

    known = {c.column_name for c in columns}
    stray = [item.column_name for item in assignment.items() if item.column_name not in known]
    if stray:
        logger.warning(f"Source assignment names columns missing from the fact table: {stray}")

    return definitions


def primary_key_columns(definitions: Sequence[FactTableDefinition]) -> List[str]:
    """Identity columns (dimensions and measure) in fact table order"""
    return [d.name for d in definitions if d.is_identity]


def persisted_definitions(definitions: Sequence[FactTableDefinition]) -> List[FactTableDefinition]:
    """Definitions that become fact table columns; ignored columns are dropped"""
    return [d for d in definitions if d.column_type != FactTableColumnType.IGNORE]


def find_definition(
    definitions: Sequence[FactTableDefinition],
    column_type: FactTableColumnType
) -> Optional[FactTableDefinition]:
    return next((d for d in definitions if d.column_type == column_type), None)
