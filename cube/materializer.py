"""
Create a revision's fact table and load it from the raw data table.
"""

from typing import List, Sequence, Union, IO, Dict, Any
from pathlib import Path
from uuid import UUID
import pandas as pd
from sqlalchemy import MetaData, Table, Column, Text, BigInteger, PrimaryKeyConstraint, insert, select, cast
from sqlalchemy.schema import CreateTable
from sqlalchemy.ext.asyncio import AsyncEngine
from models.base import FactTableColumnType
from cube.column_roles import FactTableDefinition, persisted_definitions, primary_key_columns
from cube.sql import (
    FACT_TABLE_NAME, STAGING_TABLE_NAME, LINE_NUMBER, DIALECT, quote, qualified, sql_type
)
from core.config import settings
from core.exceptions import FactTableValidationException, FactTableValidationExceptionType
import logging

logger = logging.getLogger(__name__)

PRIMARY_KEY_NAME = f"{FACT_TABLE_NAME}_pkey"

Source = Union[str, Path, IO[bytes], IO[str]]


def _creation_failed(message: str, revision_id, error: Exception) -> FactTableValidationException:
    return FactTableValidationException(
        message,
        FactTableValidationExceptionType.FACT_TABLE_CREATION_FAILED,
        500,
        context={"revision_id": str(revision_id)},
        original_exception=error
    )


class FactTableMaterializer:
    """
    Build the physical fact table for a revision in its own schema.

    Steps:
    1. create: schema (if missing) and the fact table, columns in source
       order with engine-native types and the identity columns as primary key
    2. load: stream the raw rows into an unconstrained staging table with a
       line number, relax the key, then project the persisted columns into
       the fact table in line order; the staging table is dropped afterwards

    The key is relaxed for loading so every raw row lands in the fact table;
    the validator re-applies it and diagnoses any violation.
    """

    def __init__(self, cube_engine: AsyncEngine, batch_size: int = None):
        self.engine = cube_engine
        self.batch_size = batch_size or settings.STAGING_BATCH_SIZE

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def fact_table(self, revision_id: UUID, definitions: Sequence[FactTableDefinition]) -> Table:
        """
        SQLAlchemy Table for the fact table of a revision.

        The data value column is stored as text whatever its declared type:
        the numeric check, not the load, decides whether its values are numbers.
        """
        persisted = persisted_definitions(definitions)
        columns = []
        for definition in persisted:
            try:
                column_type = sql_type(definition.column.column_datatype)
            except ValueError as e:
                raise _creation_failed(
                    f"Column {definition.name} has an unsupported datatype", revision_id, e
                )
            if definition.column_type == FactTableColumnType.DATA_VALUES:
                column_type = Text()
            columns.append(Column(definition.name, column_type))

        pk = primary_key_columns(persisted)
        constraints = [PrimaryKeyConstraint(*pk, name=PRIMARY_KEY_NAME)] if pk else []
        return Table(FACT_TABLE_NAME, MetaData(), *columns, *constraints, schema=str(revision_id))

    def create_table_statement(self, revision_id: UUID, definitions: Sequence[FactTableDefinition]) -> str:
        """CREATE TABLE <revision>.fact_table (...) as SQL text"""
        return str(CreateTable(self.fact_table(revision_id, definitions)).compile(dialect=DIALECT)).strip()

    async def create(self, revision_id: UUID, definitions: Sequence[FactTableDefinition]) -> Table:
        """
        Create (or recreate) the fact table. A draft's fact table is replaceable.

        Raises:
            FactTableValidationException(FactTableCreationFailed)
        """
        table = self.fact_table(revision_id, definitions)
        schema = str(revision_id)
        logger.info(f"Creating fact table for revision {revision_id}")
        logger.debug(f"Fact table DDL:\n{self.create_table_statement(revision_id, definitions)}")
        try:
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql(f"CREATE SCHEMA IF NOT EXISTS {quote(schema)}")
                await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {qualified(schema, FACT_TABLE_NAME)} CASCADE")
                await conn.execute(CreateTable(table))
        except Exception as e:
            logger.error(f"Failed to create fact table for revision {revision_id}: {e}", exc_info=True)
            raise _creation_failed("Failed to create fact table", revision_id, e)
        return table

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    @staticmethod
    def read_source(source: Source, delimiter: str = ",") -> pd.DataFrame:
        """Read the raw data table as text; empty cells become None"""
        df = pd.read_csv(source, sep=delimiter, dtype=str, keep_default_na=False, na_values=[""])
        df = df.astype(object).where(pd.notnull(df), None)
        return df

    @staticmethod
    def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
        records = df.to_dict(orient="records")
        for number, record in enumerate(records, start=1):
            record[LINE_NUMBER] = number
        return records

    async def load(
        self,
        revision_id: UUID,
        definitions: Sequence[FactTableDefinition],
        source: Source,
        delimiter: str = ","
    ) -> int:
        """
        Load the raw data table into the fact table.

        Returns:
            Number of rows loaded

        Raises:
            FactTableValidationException(FactTableCreationFailed): the source
                is missing persisted columns or the engine rejected the load
        """
        schema = str(revision_id)
        persisted = persisted_definitions(definitions)
        fact = self.fact_table(revision_id, definitions)

        try:
            df = self.read_source(source, delimiter)
        except Exception as e:
            logger.error(f"Unable to read data table for revision {revision_id}: {e}")
            raise _creation_failed("Unable to read the data table", revision_id, e)

        missing = [d.name for d in persisted if d.name not in df.columns]
        if missing:
            raise FactTableValidationException(
                "Data table is missing fact table columns",
                FactTableValidationExceptionType.FACT_TABLE_CREATION_FAILED,
                500,
                context={"revision_id": schema, "missing_columns": missing}
            )

        raw_columns = [c for c in df.columns if c != LINE_NUMBER]
        staging = Table(
            STAGING_TABLE_NAME, MetaData(),
            Column(LINE_NUMBER, BigInteger),
            *[Column(name, Text) for name in raw_columns],
            schema=schema
        )
        records = self._records(df[raw_columns])
        pk = primary_key_columns(persisted)

        logger.info(f"Loading {len(records)} rows into fact table for revision {revision_id}")
        try:
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql(f"DROP TABLE IF EXISTS {qualified(schema, STAGING_TABLE_NAME)}")
                await conn.execute(CreateTable(staging))

                for start in range(0, len(records), self.batch_size):
                    batch = records[start:start + self.batch_size]
                    await conn.execute(insert(staging), batch)
                    logger.debug(f"Staged batch {start // self.batch_size + 1} ({len(batch)} rows)")

                await conn.exec_driver_sql(
                    f"ALTER TABLE {qualified(schema, FACT_TABLE_NAME)} DROP CONSTRAINT IF EXISTS {quote(PRIMARY_KEY_NAME)}"
                )
                for name in pk:
                    await conn.exec_driver_sql(
                        f"ALTER TABLE {qualified(schema, FACT_TABLE_NAME)} ALTER COLUMN {quote(name)} DROP NOT NULL"
                    )

                projection = select(
                    *[cast(staging.c[d.name], fact.c[d.name].type).label(d.name) for d in persisted]
                ).order_by(staging.c[LINE_NUMBER])
                await conn.execute(insert(fact).from_select([d.name for d in persisted], projection))

                await conn.exec_driver_sql(f"DROP TABLE {qualified(schema, STAGING_TABLE_NAME)}")
        except Exception as e:
            logger.error(f"Failed to load fact table for revision {revision_id}: {e}", exc_info=True)
            raise _creation_failed("Failed to load data into the fact table", revision_id, e)

        return len(records)

    async def materialize(
        self,
        revision_id: UUID,
        definitions: Sequence[FactTableDefinition],
        source: Source,
        delimiter: str = ","
    ) -> int:
        """Create the fact table and load it; returns rows loaded"""
        await self.create(revision_id, definitions)
        return await self.load(revision_id, definitions, source, delimiter)
