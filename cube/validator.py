"""
Constraint validation for a materialized fact table.

Checks run strictly in order, each a precondition for the next:

    NumericCheck -> KeyCheck -> NoteCodeCheck -> Valid

Any violation ends the run with a FactTableValidationException. Where row
identity matters the exception carries up to DIAGNOSTIC_ROW_LIMIT offending
rows, each prefixed with a 1-based line number.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID
from sqlalchemy import select, func, cast, distinct, or_, tuple_, table, column, Text
from sqlalchemy.dialects.postgresql import array
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncConnection, AsyncSession
from sqlalchemy.sql import Select
from models.base import FactTableColumnType
from schemas.source_assignment import SourceAssignment
from cube.column_roles import (
    FactTableDefinition, resolve_fact_table, persisted_definitions, primary_key_columns, find_definition
)
from cube.loaders import load_dataset, record_column_types, DatasetInclude
from cube.materializer import FactTableMaterializer, PRIMARY_KEY_NAME
from cube.note_codes import find_bad_note_codes
from cube.sql import FACT_TABLE_NAME, LINE_NUMBER, relation, qualified, quote, quote_list
from cube.view_table import table_data_to_view_table
from core.config import settings
from core.database import autocommit_connection
from core.exceptions import FactTableValidationException, FactTableValidationExceptionType as Kind
import logging

logger = logging.getLogger(__name__)

# Optional sign, digits, optional single decimal point; no separators or exponents
NUMERIC_PATTERN = r"^[-+]?([0-9]+(\.[0-9]*)?|\.[0-9]+)$"

UNIQUE_VIOLATION = "23505"
NOT_NULL_VIOLATION = "23502"

_information_schema_columns = table(
    "columns",
    column("table_schema"),
    column("table_name"),
    column("column_name"),
    column("ordinal_position"),
    schema="information_schema",
)


def engine_error_code(error: Exception) -> Optional[str]:
    """SQLSTATE of a driver error wrapped by SQLAlchemy, if it carries one"""
    orig = getattr(error, "orig", error)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is None:
            continue
        for attr in ("sqlstate", "pgcode"):
            code = getattr(candidate, attr, None)
            if code:
                return code
    return None


def classify_key_error(error: Exception) -> Kind:
    """Map a failed ADD PRIMARY KEY to DuplicateFact, IncompleteFact or UnknownError"""
    code = engine_error_code(error)
    message = str(error).lower()
    if code == UNIQUE_VIOLATION or "could not create unique index" in message:
        return Kind.DUPLICATE_FACT
    if code == NOT_NULL_VIOLATION or "contains null values" in message:
        return Kind.INCOMPLETE_FACT
    return Kind.UNKNOWN_ERROR


class FactTableValidator:
    """
    Validate the fact table of one revision.

    All checks share one AUTOCOMMIT connection: every statement stands alone,
    so a rejected ALTER TABLE leaves the connection usable for diagnostics,
    and a key applied before a later check fails stays in place.
    """

    def __init__(self, cube_engine: AsyncEngine, row_limit: int = None):
        self.engine = cube_engine
        self.row_limit = row_limit or settings.DIAGNOSTIC_ROW_LIMIT

    async def validate(self, revision_id: UUID, definitions: Sequence[FactTableDefinition]) -> None:
        """
        Run every check against the revision's fact table.

        Raises:
            FactTableValidationException: first check that fails
        """
        schema = str(revision_id)
        logger.info(f"Validating fact table for revision {revision_id}")
        async with autocommit_connection(self.engine) as conn:
            if find_definition(definitions, FactTableColumnType.DATA_VALUES) is not None:
                await self.check_numeric(conn, schema, definitions)
            else:
                logger.info(f"No data value column for revision {revision_id}; skipping numeric check")
            await self.check_keys(conn, schema, definitions)
            await self.check_note_codes(conn, schema, definitions)
        logger.info(f"Fact table for revision {revision_id} is valid")

    # ------------------------------------------------------------------
    # Query builders
    # ------------------------------------------------------------------

    def numeric_violation_query(self, schema: str, data_values_column: str) -> Select:
        fact = relation(schema, FACT_TABLE_NAME, [data_values_column])
        as_text = cast(fact.c[data_values_column], Text)
        return (
            select(as_text.label(data_values_column))
            .where(fact.c[data_values_column].isnot(None))
            .where(~as_text.regexp_match(NUMERIC_PATTERN))
        )

    def _numbered(self, schema: str, columns: Sequence[str]):
        """Fact table rows with a line number from the unconstrained load order"""
        fact = relation(schema, FACT_TABLE_NAME, list(columns))
        return select(
            func.row_number().over().label(LINE_NUMBER),
            *[fact.c[name] for name in columns]
        ).subquery("numbered")

    def duplicate_query(self, schema: str, columns: Sequence[str], key: Sequence[str]) -> Select:
        fact = relation(schema, FACT_TABLE_NAME, list(columns))
        duplicated = (
            select(*[fact.c[name] for name in key])
            .group_by(*[fact.c[name] for name in key])
            .having(func.count() > 1)
        )
        numbered = self._numbered(schema, columns)
        return (
            select(numbered)
            .where(tuple_(*[numbered.c[name] for name in key]).in_(duplicated))
            .order_by(numbered.c[LINE_NUMBER])
            .limit(self.row_limit)
        )

    def incomplete_query(self, schema: str, columns: Sequence[str], key: Sequence[str]) -> Select:
        numbered = self._numbered(schema, columns)
        return (
            select(numbered)
            .where(or_(*[numbered.c[name].is_(None) for name in key]))
            .order_by(numbered.c[LINE_NUMBER])
            .limit(self.row_limit)
        )

    def bad_note_code_query(self, schema: str, columns: Sequence[str], note_codes_column: str, bad_codes: List[str]) -> Select:
        numbered = self._numbered(schema, columns)
        tokens = func.regexp_split_to_array(
            func.trim(func.lower(cast(numbered.c[note_codes_column], Text))), r"\s*,\s*"
        )
        return (
            select(numbered)
            .where(tokens.op("&&", is_comparison=True)(array(bad_codes, type_=Text)))
            .order_by(numbered.c[LINE_NUMBER])
            .limit(self.row_limit)
        )

    @staticmethod
    def current_columns_query(schema: str) -> Select:
        c = _information_schema_columns.c
        return (
            select(c.column_name)
            .where(c.table_schema == schema, c.table_name == FACT_TABLE_NAME)
            .order_by(c.ordinal_position)
        )

    async def _view_table(self, conn: AsyncConnection, query: Select) -> Tuple[List[Dict[str, Any]], List[List[Any]]]:
        result = await conn.execute(query)
        return table_data_to_view_table(result.mappings().all())

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_numeric(self, conn: AsyncConnection, schema: str, definitions: Sequence[FactTableDefinition]) -> None:
        """Every stored data value must be a plain numeric literal"""
        data_values = find_definition(definitions, FactTableColumnType.DATA_VALUES)
        if data_values is None:
            raise FactTableValidationException(
                "No data value column has been assigned",
                Kind.NO_DATA_VALUE_COLUMN,
                500,
                context={"revision_id": schema}
            )

        try:
            result = await conn.execute(self.numeric_violation_query(schema, data_values.name))
            bad_values = result.scalars().all()
        except Exception as e:
            logger.error(f"Numeric check failed to run for revision {schema}: {e}", exc_info=True)
            raise FactTableValidationException(
                "Unable to check the data value column",
                Kind.UNKNOWN_ERROR,
                500,
                context={"revision_id": schema},
                original_exception=e
            )

        if bad_values:
            logger.warning(f"Found {len(bad_values)} non-numeric data values in revision {schema}")
            raise FactTableValidationException(
                "The data value column contains non-numeric values",
                Kind.NON_NUMERIC_DATA_VALUE_COLUMN,
                400,
                context={"revision_id": schema, "column": data_values.name},
                headers=[{"name": data_values.name, "index": 0, "source_type": FactTableColumnType.DATA_VALUES.value}],
                data=[[value] for value in bad_values]
            )

    async def check_keys(self, conn: AsyncConnection, schema: str, definitions: Sequence[FactTableDefinition]) -> None:
        """Re-apply the primary key over the identity columns; diagnose any violation"""
        persisted = persisted_definitions(definitions)
        columns = [d.name for d in persisted]
        key = primary_key_columns(persisted)
        if not key:
            raise FactTableValidationException(
                "No dimension or measure columns to form a primary key",
                Kind.UNKNOWN_ERROR,
                500,
                context={"revision_id": schema}
            )

        fact_table = qualified(schema, FACT_TABLE_NAME)
        try:
            await conn.exec_driver_sql(f"ALTER TABLE {fact_table} DROP CONSTRAINT IF EXISTS {quote(PRIMARY_KEY_NAME)}")
            await conn.exec_driver_sql(
                f"ALTER TABLE {fact_table} ADD CONSTRAINT {quote(PRIMARY_KEY_NAME)} PRIMARY KEY ({quote_list(key)})"
            )
            return
        except Exception as e:
            kind = classify_key_error(e)
            error = e

        if kind == Kind.UNKNOWN_ERROR:
            logger.error(f"Unable to add primary key to fact table for revision {schema}: {error}", exc_info=True)
            raise FactTableValidationException(
                "Unable to apply the primary key to the fact table",
                kind,
                500,
                context={"revision_id": schema, "key": key},
                original_exception=error
            )

        if kind == Kind.DUPLICATE_FACT:
            query = self.duplicate_query(schema, columns, key)
            message = "Duplicate facts found in the data table"
        else:
            query = self.incomplete_query(schema, columns, key)
            message = "Incomplete facts found in the data table"

        try:
            headers, data = await self._view_table(conn, query)
        except Exception as e:
            logger.error(f"Diagnostic query for {kind.value} failed for revision {schema}: {e}")
            raise FactTableValidationException(
                "The fact table failed key validation",
                kind,
                400,
                context={"revision_id": schema, "key": key},
                original_exception=error
            )

        logger.warning(f"{message} for revision {schema}: returning {len(data)} rows")
        raise FactTableValidationException(
            message,
            kind,
            400,
            context={"revision_id": schema, "key": key},
            original_exception=error,
            headers=headers,
            data=data
        )

    async def check_note_codes(self, conn: AsyncConnection, schema: str, definitions: Sequence[FactTableDefinition]) -> None:
        """Every note code token must belong to the fixed vocabulary"""
        note_codes = find_definition(definitions, FactTableColumnType.NOTE_CODES)
        if note_codes is None:
            return

        fact = relation(schema, FACT_TABLE_NAME, [note_codes.name])
        notes = cast(fact.c[note_codes.name], Text)
        try:
            result = await conn.execute(select(distinct(notes)).where(fact.c[note_codes.name].isnot(None)))
            cells = result.scalars().all()
        except Exception as e:
            logger.error(f"Unable to read note codes for revision {schema}: {e}", exc_info=True)
            raise FactTableValidationException(
                "Unable to read the note codes column",
                Kind.NO_NOTE_CODES,
                500,
                context={"revision_id": schema, "column": note_codes.name},
                original_exception=e
            )

        bad_codes = find_bad_note_codes(cells)
        if not bad_codes:
            return

        logger.warning(f"Found bad note codes {bad_codes} in revision {schema}")
        context = {"revision_id": schema, "column": note_codes.name, "bad_codes": bad_codes}
        try:
            result = await conn.execute(self.current_columns_query(schema))
            columns = result.scalars().all()
            headers, data = await self._view_table(
                conn, self.bad_note_code_query(schema, columns, note_codes.name, bad_codes)
            )
        except Exception as e:
            logger.error(f"Diagnostic query for bad note codes failed for revision {schema}: {e}")
            raise FactTableValidationException(
                "The note codes column contains unrecognised codes",
                Kind.BAD_NOTE_CODES,
                400,
                context=context
            )

        raise FactTableValidationException(
            f"The note codes column contains unrecognised codes: {', '.join(bad_codes)}",
            Kind.BAD_NOTE_CODES,
            400,
            context=context,
            headers=headers,
            data=data
        )


async def validate_fact_table(
    session: AsyncSession,
    cube_engine: AsyncEngine,
    dataset_id: UUID,
    assignment: SourceAssignment,
    materializer: FactTableMaterializer = None,
    validator: FactTableValidator = None
) -> List[FactTableDefinition]:
    """
    Resolve, materialize and validate the draft revision's fact table.

    On success the resolved column roles are recorded on the dataset.

    Raises:
        FactTableValidationException: any resolution, creation or check failure
    """
    dataset = await load_dataset(
        session, dataset_id, DatasetInclude(fact_table=True, revisions=True, data_tables=True)
    )

    revision = dataset.draft_revision
    if revision is None:
        raise FactTableValidationException(
            "Dataset has no draft revision",
            Kind.NO_DRAFT_REVISION,
            500,
            context={"dataset_id": str(dataset_id)}
        )
    if revision.data_table is None:
        raise FactTableValidationException(
            "Draft revision has no data table",
            Kind.NO_DATA_TABLE,
            500,
            context={"dataset_id": str(dataset_id), "revision_id": str(revision.id)}
        )

    definitions = resolve_fact_table(dataset.fact_table, assignment)

    materializer = materializer or FactTableMaterializer(cube_engine)
    validator = validator or FactTableValidator(cube_engine)

    await materializer.materialize(
        revision.id, definitions, revision.data_table.location, revision.data_table.delimiter
    )
    await validator.validate(revision.id, definitions)
    await record_column_types(session, dataset.id, definitions)
    return definitions
