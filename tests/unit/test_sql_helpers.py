"""
Unit tests for SQL helpers, the note code vocabulary and diagnostic tables
"""

import pytest
from sqlalchemy import types
from models.base import FactTableColumnType
from cube.sql import quote, qualified, render_literal, sql_type, lang_of
from cube.note_codes import NoteCode, NOTE_CODE_TAGS, VALID_NOTE_CODES, split_note_codes, find_bad_note_codes
from cube.view_table import table_data_to_view_table
from core.exceptions import (
    CubeException, FactTableValidationException, FactTableValidationExceptionType,
    QueryStoreNotFound, RevisionLockedException
)


class TestSQLHelpers:

    def test_identifiers_are_always_quoted(self):
        assert quote("year") == '"year"'
        assert quote('odd"name') == '"odd""name"'
        assert qualified("1a2b", "fact_table") == '"1a2b"."fact_table"'

    def test_literals_are_escaped(self):
        assert render_literal("O'Brien") == "'O''Brien'"
        assert render_literal(None) == "NULL"
        assert render_literal(5) == "5"

    @pytest.mark.parametrize("datatype,expected", [
        ("varchar", types.VARCHAR),
        ("BIGINT", types.BIGINT),
        ("double  precision", types.Float),
        ("NUMERIC(10, 2)", types.NUMERIC),
    ])
    def test_supported_datatypes(self, datatype, expected):
        assert isinstance(sql_type(datatype), expected)

    def test_parameterised_varchar_keeps_length(self):
        assert sql_type("VARCHAR(20)").length == 20

    def test_unsupported_datatype_raises(self):
        with pytest.raises(ValueError):
            sql_type("GEOMETRY")

    def test_lang_of(self):
        assert lang_of("en-GB") == "en"
        assert lang_of("cy-GB") == "cy"


class TestNoteCodes:

    def test_every_code_has_a_tag(self):
        assert set(NOTE_CODE_TAGS) == set(NoteCode)
        assert {"a", "x", "z", "ns", "sss"} <= VALID_NOTE_CODES

    def test_split_is_case_insensitive_and_trimmed(self):
        assert split_note_codes(" X, p ,,E") == ["x", "p", "e"]

    def test_bad_codes_in_first_seen_order(self):
        assert find_bad_note_codes(["x", "q", "z", "Q, y", None]) == ["q", "y"]

    def test_vocabulary_only_has_no_bad_codes(self):
        assert find_bad_note_codes(["x", "Z", "ns, sss"]) == []


class TestViewTable:

    def test_line_number_header_is_tagged(self):
        rows = [
            {"line_number": 1, "year": 2015, "area": "A"},
            {"line_number": 2, "year": 2015, "area": "A"},
        ]

        headers, data = table_data_to_view_table(rows)

        assert headers[0] == {"name": "line_number", "index": 0, "source_type": FactTableColumnType.LINE_NUMBER.value}
        assert headers[1]["source_type"] == FactTableColumnType.UNKNOWN.value
        assert data == [[1, 2015, "A"], [2, 2015, "A"]]

    def test_empty_rows(self):
        assert table_data_to_view_table([]) == ([], [])


class TestExceptions:

    def test_context_and_cause_are_reported(self):
        cause = RuntimeError("engine down")
        error = CubeException("Failed", context={"revision_id": "r1"}, original_exception=cause)

        assert error.__cause__ is cause
        assert "revision_id=r1" in str(error)
        assert "RuntimeError: engine down" in str(error)
        assert error.to_dict()["status"] == 500

    def test_validation_exception_carries_diagnostics(self):
        error = FactTableValidationException(
            "Duplicate facts",
            FactTableValidationExceptionType.DUPLICATE_FACT,
            headers=[{"name": "line_number", "index": 0}],
            data=[[1], [2]]
        )

        payload = error.to_dict()
        assert error.status == 400
        assert payload["kind"] == "duplicate_fact"
        assert payload["data"] == [[1], [2]]

    def test_class_level_statuses(self):
        assert QueryStoreNotFound("missing").status == 404
        assert RevisionLockedException("locked").status == 409
