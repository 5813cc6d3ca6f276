"""
Identifier-safe SQL helpers for the cube database.

Queries are built with SQLAlchemy Core wherever the shape allows it. The
handful of statements Core does not model (schema DDL, ALTER TABLE on a
dynamically named table, CREATE VIEW) are assembled here from quoted
identifiers and literal-rendered values only; nothing supplied by a user is
ever interpolated as raw SQL.
"""

from typing import Iterable, Any, Dict, List
import re
from sqlalchemy import table, column, literal, types
from sqlalchemy.sql import TableClause, ClauseElement
from sqlalchemy.dialects import postgresql

# Generated text is run through exec_driver_sql, so "%" must never be doubled
DIALECT = postgresql.dialect(paramstyle="named")
_preparer = DIALECT.identifier_preparer

FACT_TABLE_NAME = "fact_table"
STAGING_TABLE_NAME = "data_table"
METADATA_TABLE_NAME = "metadata"
FILTER_TABLE_NAME = "filter_table"
NOTE_CODES_TABLE_NAME = "note_codes"
CORE_VIEW_NAME = "core_view"
LOOKUP_SCHEMA = "lookup_tables"
LINE_NUMBER = "line_number"

# Engine-native datatypes accepted for fact table columns
_DATATYPES: Dict[str, types.TypeEngine] = {
    "VARCHAR": types.VARCHAR(),
    "TEXT": types.TEXT(),
    "BIGINT": types.BIGINT(),
    "INTEGER": types.INTEGER(),
    "INT": types.INTEGER(),
    "SMALLINT": types.SMALLINT(),
    "DOUBLE": postgresql.DOUBLE_PRECISION(),
    "DOUBLE PRECISION": postgresql.DOUBLE_PRECISION(),
    "FLOAT": postgresql.DOUBLE_PRECISION(),
    "REAL": types.REAL(),
    "NUMERIC": types.NUMERIC(),
    "DECIMAL": types.NUMERIC(),
    "BOOLEAN": types.BOOLEAN(),
    "DATE": types.DATE(),
    "TIMESTAMP": types.TIMESTAMP(),
}

_PARAMETERISED = re.compile(r"^(VARCHAR|NUMERIC|DECIMAL)\s*\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\)$")


def quote(name: str) -> str:
    """Always-quoted identifier"""
    return _preparer.quote_identifier(name)


def qualified(schema: str, name: str) -> str:
    """Quoted schema.name"""
    return f"{quote(schema)}.{quote(name)}"


def quote_list(names: Iterable[str]) -> str:
    return ", ".join(quote(n) for n in names)


def render_literal(value: Any) -> str:
    """Render a Python value as a safely escaped SQL literal"""
    if value is None:
        return "NULL"
    return str(literal(value).compile(dialect=DIALECT, compile_kwargs={"literal_binds": True}))


def to_sql(statement: ClauseElement) -> str:
    """Compile a Core statement to standalone Postgres SQL text"""
    return str(statement.compile(dialect=DIALECT, compile_kwargs={"literal_binds": True}))


def sql_type(datatype: str) -> types.TypeEngine:
    """
    Resolve an engine-native datatype string to a SQLAlchemy type.

    Raises ValueError for anything outside the supported set.
    """
    normalised = " ".join(datatype.strip().upper().split())
    if normalised in _DATATYPES:
        return _DATATYPES[normalised]
    match = _PARAMETERISED.match(normalised)
    if match:
        name, first, second = match.groups()
        if name == "VARCHAR":
            return types.VARCHAR(int(first))
        return types.NUMERIC(int(first), int(second) if second else None)
    raise ValueError(f"Unsupported column datatype: {datatype}")


def relation(schema: str, name: str, columns: List[str]) -> TableClause:
    """Lightweight table reference for building Core queries"""
    return table(name, *[column(c) for c in columns], schema=schema)


def lang_of(locale: str) -> str:
    """'en-GB' -> 'en'"""
    return locale.lower().split("-")[0]
