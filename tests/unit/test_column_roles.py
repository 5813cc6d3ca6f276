"""
Unit tests for column role resolution
"""

import pytest
from models.base import FactTableColumnType
from schemas.source_assignment import SourceAssignment
from cube.loaders import FactTableColumnInfo
from cube.column_roles import (
    resolve_column_role, resolve_fact_table, primary_key_columns, persisted_definitions, find_definition
)
from core.exceptions import FactTableValidationException, FactTableValidationExceptionType


class TestResolveFactTable:
    """Pairing fact table columns with their roles"""

    def test_every_column_resolved_in_source_order(self, sample_columns, sample_assignment):
        shuffled = list(reversed(sample_columns))

        definitions = resolve_fact_table(shuffled, sample_assignment)

        assert [d.name for d in definitions] == ["year", "area", "measure", "data", "notes", "comment"]
        assert [d.column_type for d in definitions] == [
            FactTableColumnType.DIMENSION,
            FactTableColumnType.DIMENSION,
            FactTableColumnType.MEASURE,
            FactTableColumnType.DATA_VALUES,
            FactTableColumnType.NOTE_CODES,
            FactTableColumnType.IGNORE,
        ]
        assert definitions[0].source_assignment.column_name == "year"

    def test_unassigned_column_is_unknown_source(self, sample_columns, sample_assignment):
        columns = sample_columns + [FactTableColumnInfo("extra", "VARCHAR", 6)]

        with pytest.raises(FactTableValidationException) as exc_info:
            resolve_fact_table(columns, sample_assignment)

        error = exc_info.value
        assert error.kind == FactTableValidationExceptionType.UNKNOWN_SOURCES_STILL_PRESENT
        assert error.status == 400
        assert error.context["unknown_columns"] == ["extra"]

    def test_column_in_two_partitions_is_unknown(self):
        assignment = SourceAssignment.model_validate({
            "dataValues": {"column_name": "value", "column_index": 1, "column_type": "data_values"},
            "dimensions": [
                {"column_name": "year", "column_index": 0, "column_type": "dimension"},
                {"column_name": "value", "column_index": 1, "column_type": "dimension"},
            ],
        })

        column_type, item = resolve_column_role("value", assignment)

        assert column_type == FactTableColumnType.UNKNOWN
        assert item is None

    def test_stray_assignment_entries_are_tolerated(self, sample_columns, sample_assignment):
        columns = [c for c in sample_columns if c.column_name != "comment"]

        definitions = resolve_fact_table(columns, sample_assignment)

        assert "comment" not in [d.name for d in definitions]


class TestIdentity:
    """Primary key and persisted columns"""

    def test_primary_key_is_dimensions_and_measure_in_order(self, sample_definitions):
        assert primary_key_columns(sample_definitions) == ["year", "area", "measure"]

    def test_ignored_columns_are_not_persisted(self, sample_definitions):
        persisted = persisted_definitions(sample_definitions)

        assert [d.name for d in persisted] == ["year", "area", "measure", "data", "notes"]

    def test_find_definition(self, sample_definitions):
        assert find_definition(sample_definitions, FactTableColumnType.NOTE_CODES).name == "notes"
        assert find_definition(sample_definitions, FactTableColumnType.LINE_NUMBER) is None

    def test_assignment_accepts_null_lists(self):
        assignment = SourceAssignment.model_validate({"dimensions": None, "ignore": None})

        assert assignment.dimensions == []
        assert list(assignment.items()) == []
