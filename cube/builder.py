"""
Cube builder: locale-specific views over a validated fact table.

A build is an ordered list of stages, each a batch of SQL statements run in
its own transaction against the revision's schema. Every statement is safe
to repeat (IF NOT EXISTS, upserts, drop-then-create of views), so a build
that failed part way is re-run from the start rather than rolled back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID
import json
import re
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from models.base import FactTableColumnType, BuildStage, CubeBuildStatus, CubeBuildType
from models.build_log import BuildLog
from cube.column_roles import FactTableDefinition, find_definition
from cube.loaders import DatasetInfo
from cube.note_codes import NoteCode, NOTE_CODE_TAGS
from cube.sql import (
    FACT_TABLE_NAME, METADATA_TABLE_NAME, FILTER_TABLE_NAME, NOTE_CODES_TABLE_NAME,
    CORE_VIEW_NAME, LOOKUP_SCHEMA, quote, qualified, render_literal, lang_of
)
from core.config import settings
from core.exceptions import CubeBuildException
import logging

logger = logging.getLogger(__name__)

# Technical column names in every core view
DATA_VALUES_COLUMN = "data_values"
DATA_VALUES_FORMATTED_COLUMN = "data_values_formatted"
DATA_VALUES_ANNOTATED_COLUMN = "data_values_annotated"
DATA_VALUES_SORT_COLUMN = "data_values_sort"
NOTE_CODES_COLUMN = "note_codes"

REFERENCE_SUFFIX = "_ref"
SORT_SUFFIX = "_sort"
HIERARCHY_SUFFIX = "_hierarchy"

MEASURE_LOOKUP_NAME = "measure"

# Measure formats rounded to the measure's decimals
_DECIMAL_FORMATS = ("decimal", "float", "long", "percentage")

# Column sections, in the order they appear in every view
_SECTIONS = ("dimension", "measure", "data_values", "note_codes")


@dataclass(frozen=True)
class CubeViewConfig:
    """
    One consumer view over the core view.

    data_values selects which data value representation is exposed as
    ``data_values``: "raw", "formatted" or "annotated" (formatted with note
    codes appended).
    """
    name: str
    data_values: str = "raw"
    refcodes: bool = False
    sort_orders: bool = False
    hierarchies: bool = False


CUBE_VIEWS: Tuple[CubeViewConfig, ...] = (
    CubeViewConfig("raw", data_values="raw", refcodes=True),
    CubeViewConfig("formatted", data_values="formatted"),
    CubeViewConfig("frontend", data_values="annotated", refcodes=True, sort_orders=True, hierarchies=True),
)


def cube_safe(name: str) -> str:
    """Lower-case table-name-safe version of a column name"""
    safe = re.sub(r"[^a-z0-9_]", "", name.lower().replace(" ", "_"))
    return safe or "column"


def unique_name(existing: set, proposed: str) -> str:
    """proposed, or proposed_1, proposed_2, ... if already taken"""
    name = proposed
    count = 1
    while name in existing:
        name = f"{proposed}_{count}"
        count += 1
    return name


def language_of(locale: str) -> str:
    """Language value stored in lookup and filter tables, e.g. 'en-gb'"""
    return locale.lower()


@dataclass
class LookupJoin:
    table: str
    fact_table_column: str


@dataclass
class BuildStagePlan:
    stage: BuildStage
    statements: List[str]
    index_columns: Dict[str, List[str]] = field(default_factory=dict)

    def to_record(self) -> dict:
        return {"stage": self.stage.value, "statements": self.statements, "index_columns": self.index_columns}


class CoreViewPlan:
    """Accumulates the per-locale select list, joins and view columns of a core view"""

    def __init__(self, schema: str, locales: Sequence[str], reserved: Sequence[str] = ()):
        self.schema = schema
        self.locales = list(locales)
        self.names: Dict[str, set] = {locale: set(reserved) for locale in self.locales}
        self.selects: Dict[str, List[Tuple[int, str, str]]] = {locale: [] for locale in self.locales}
        self.view_columns: Dict[Tuple[str, str], List[Tuple[int, str]]] = {
            (view.name, locale): [] for view in CUBE_VIEWS for locale in self.locales
        }
        self.index_columns: Dict[str, List[str]] = {locale: [] for locale in self.locales}
        self.joins: List[LookupJoin] = []
        self.order_by: List[str] = []
        self.lookup_tables: List[str] = []

    def claim(self, locale: str, proposed: str) -> str:
        name = unique_name(self.names[locale], proposed)
        self.names[locale].add(name)
        return name

    def select(self, locale: str, section: str, expression: str, alias: str):
        self.selects[locale].append((_SECTIONS.index(section), f"{expression} AS {quote(alias)}", alias))

    def expose(self, locale: str, section: str, view: CubeViewConfig, fragment: str):
        self.view_columns[(view.name, locale)].append((_SECTIONS.index(section), fragment))

    def lookup_table_name(self, proposed: str) -> str:
        name = unique_name(set(self.lookup_tables), proposed)
        self.lookup_tables.append(name)
        return name

    def fact_column(self, name: str) -> str:
        return f"{quote(FACT_TABLE_NAME)}.{quote(name)}"

    def select_list(self, locale: str) -> List[str]:
        return [fragment for _, fragment, _ in sorted(self.selects[locale], key=lambda item: item[0])]

    def column_names(self, locale: str) -> List[str]:
        return [alias for _, _, alias in sorted(self.selects[locale], key=lambda item: item[0])]

    def columns_for(self, view: CubeViewConfig, locale: str) -> List[str]:
        return [fragment for _, fragment in sorted(self.view_columns[(view.name, locale)], key=lambda item: item[0])]

    def core_view_sql(self, locale: str) -> str:
        select_list = self.select_list(locale)
        sql = f"SELECT {', '.join(select_list) if select_list else '*'} FROM {qualified(self.schema, FACT_TABLE_NAME)}"
        language = render_literal(language_of(locale))
        for join in self.joins:
            sql += (
                f" LEFT JOIN {qualified(self.schema, join.table)} ON {quote(join.table)}.reference = "
                f"CAST({self.fact_column(join.fact_table_column)} AS VARCHAR) AND {quote(join.table)}.language = {language}"
            )
        if self.order_by:
            sql += f" ORDER BY {', '.join(self.order_by)}"
        return sql


def upsert_metadata(schema: str, key: str, value: Optional[str]) -> str:
    return (
        f"INSERT INTO {qualified(schema, METADATA_TABLE_NAME)} (key, value) "
        f"VALUES ({render_literal(key)}, {render_literal(value)}) "
        f"ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value"
    )


class CubeBuilder:
    """
    Build the cube for a revision whose fact table has been validated.

    Stages (in order):
    1. base_tables: drop the previous build's views, metadata and filter tables, build identity
    2. note_codes: note code vocabulary table (full cube with note codes)
    3. dimensions: text and lookup dimensions, filter table rows
    4. measure: measure labels and the raw, formatted and annotated data values
    5. core_view: core view plus one consumer view per config, per locale
    6. indexes: materialised core view per locale with indexes
    7. post_build_metadata: build script, finish time and result

    A dataset with neither data values nor note codes gets a base cube: the
    core view is the bare fact table.
    """

    def __init__(
        self,
        cube_engine: AsyncEngine,
        session_maker: async_sessionmaker,
        locales: Sequence[str] = None,
        preserve_failed: bool = None
    ):
        self.engine = cube_engine
        self.session_maker = session_maker
        self.locales = list(locales or settings.SUPPORTED_LOCALES)
        self.preserve_failed = settings.CUBE_PRESERVE_FAILED if preserve_failed is None else preserve_failed

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @staticmethod
    def definitions_for(dataset: DatasetInfo) -> List[FactTableDefinition]:
        """Fact table definitions from the roles recorded during validation"""
        unresolved = [c.column_name for c in dataset.fact_table if c.column_type == FactTableColumnType.UNKNOWN]
        if not dataset.fact_table or unresolved:
            raise CubeBuildException(
                "Fact table has no validated column roles",
                context={"dataset_id": str(dataset.id), "unresolved_columns": unresolved}
            )
        return [
            FactTableDefinition(column=col, column_type=col.column_type)
            for col in sorted(dataset.fact_table, key=lambda c: c.column_index)
        ]

    @staticmethod
    def build_type_for(definitions: Sequence[FactTableDefinition]) -> CubeBuildType:
        has_data_values = find_definition(definitions, FactTableColumnType.DATA_VALUES) is not None
        has_note_codes = find_definition(definitions, FactTableColumnType.NOTE_CODES) is not None
        return CubeBuildType.FULL_CUBE if has_data_values or has_note_codes else CubeBuildType.BASE_CUBE

    def drop_views_statements(self, schema: str) -> List[str]:
        """Views from a previous build, dependants first; they pin the lookup tables"""
        statements: List[str] = []
        for locale in self.locales:
            lang = lang_of(locale)
            statements.append(f"DROP MATERIALIZED VIEW IF EXISTS {qualified(schema, f'{CORE_VIEW_NAME}_mat_{lang}')}")
            for view in CUBE_VIEWS:
                statements.append(f"DROP VIEW IF EXISTS {qualified(schema, f'{view.name}_{lang}')}")
            statements.append(f"DROP VIEW IF EXISTS {qualified(schema, f'{CORE_VIEW_NAME}_{lang}')}")
        return statements

    def base_tables_stage(self, schema: str, build_id: UUID, revision_id: UUID, build_type: CubeBuildType) -> BuildStagePlan:
        statements = [
            f"CREATE SCHEMA IF NOT EXISTS {quote(schema)}",
            *self.drop_views_statements(schema),
            f"CREATE TABLE IF NOT EXISTS {qualified(schema, METADATA_TABLE_NAME)} "
            f"(key VARCHAR PRIMARY KEY, value TEXT)",
            f"CREATE TABLE IF NOT EXISTS {qualified(schema, FILTER_TABLE_NAME)} ("
            f"reference VARCHAR NOT NULL, language VARCHAR NOT NULL, fact_table_column VARCHAR NOT NULL, "
            f"dimension_name VARCHAR, description VARCHAR, hierarchy VARCHAR, "
            f"PRIMARY KEY (reference, language, fact_table_column))",
            f"DELETE FROM {qualified(schema, FILTER_TABLE_NAME)}",
            upsert_metadata(schema, "revision", str(revision_id)),
            upsert_metadata(schema, "build_id", str(build_id)),
            upsert_metadata(schema, "build_type", build_type.value),
            upsert_metadata(schema, "build_start", datetime.utcnow().isoformat()),
            upsert_metadata(schema, "build_status", CubeBuildStatus.BUILDING.value),
        ]
        return BuildStagePlan(BuildStage.BASE_TABLES, statements)

    def note_codes_stage(self, plan: CoreViewPlan, notes: FactTableDefinition) -> BuildStagePlan:
        schema = plan.schema
        note_table = qualified(schema, NOTE_CODES_TABLE_NAME)
        statements = [
            f"CREATE TABLE IF NOT EXISTS {note_table} "
            f"(code VARCHAR NOT NULL, language VARCHAR NOT NULL, tag VARCHAR NOT NULL, PRIMARY KEY (code, language))"
        ]
        for locale in self.locales:
            values = ", ".join(
                f"({render_literal(code.value)}, {render_literal(language_of(locale))}, {render_literal(NOTE_CODE_TAGS[code])})"
                for code in NoteCode
            )
            statements.append(f"INSERT INTO {note_table} (code, language, tag) VALUES {values} ON CONFLICT DO NOTHING")

            plan.select(locale, "note_codes", plan.fact_column(notes.name), NOTE_CODES_COLUMN)
            for view in CUBE_VIEWS:
                plan.expose(locale, "note_codes", view, quote(NOTE_CODES_COLUMN))

        column = quote(notes.name)
        statements.append(
            f"INSERT INTO {qualified(schema, METADATA_TABLE_NAME)} (key, value) "
            f"SELECT 'note_codes', ARRAY_TO_STRING(ARRAY("
            f"SELECT DISTINCT UNNEST(REGEXP_SPLIT_TO_ARRAY(LOWER(TRIM({column})), '\\s*,\\s*')) AS code "
            f"FROM {qualified(schema, FACT_TABLE_NAME)} WHERE {column} IS NOT NULL ORDER BY code), ',') "
            f"ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value"
        )
        return BuildStagePlan(BuildStage.NOTE_CODES, statements)

    def _labelled_column(
        self,
        plan: CoreViewPlan,
        dataset: DatasetInfo,
        definition: FactTableDefinition,
        section: str,
        lookup_table: Optional[str],
        statements: List[str]
    ):
        """Display, reference, sort and hierarchy columns for a dimension or the measure"""
        schema = plan.schema
        labels = dataset.labels_for(definition.name)
        for locale in self.locales:
            proposed = next((l.name for l in labels if l.language == locale), None) or definition.name
            name = plan.claim(locale, proposed)
            ref_name = plan.claim(locale, f"{name}{REFERENCE_SUFFIX}")
            sort_name = plan.claim(locale, f"{name}{SORT_SUFFIX}")
            hierarchy_name = plan.claim(locale, f"{name}{HIERARCHY_SUFFIX}")
            plan.index_columns[locale].extend([ref_name, sort_name, hierarchy_name])

            if lookup_table:
                lookup = quote(lookup_table)
                plan.select(locale, section, f"{lookup}.description", name)
                plan.select(locale, section, f"{lookup}.reference", ref_name)
                plan.select(locale, section, f"{lookup}.sort_order", sort_name)
                plan.select(locale, section, f"CAST({lookup}.hierarchy AS VARCHAR)", hierarchy_name)
                statements.append(
                    f"INSERT INTO {qualified(schema, FILTER_TABLE_NAME)} "
                    f"(reference, language, fact_table_column, dimension_name, description, hierarchy) "
                    f"SELECT CAST(reference AS VARCHAR), language, {render_literal(definition.name)}, "
                    f"{render_literal(name)}, description, CAST(hierarchy AS VARCHAR) "
                    f"FROM {qualified(schema, lookup_table)} WHERE language = {render_literal(language_of(locale))} "
                    f"ON CONFLICT DO NOTHING"
                )
            else:
                as_text = f"CAST({plan.fact_column(definition.name)} AS VARCHAR)"
                plan.select(locale, section, as_text, name)
                plan.select(locale, section, as_text, ref_name)
                plan.select(locale, section, as_text, sort_name)
                plan.select(locale, section, "NULL", hierarchy_name)
                column = quote(definition.name)
                statements.append(
                    f"INSERT INTO {qualified(schema, FILTER_TABLE_NAME)} "
                    f"(reference, language, fact_table_column, dimension_name, description, hierarchy) "
                    f"SELECT DISTINCT CAST({column} AS VARCHAR), {render_literal(language_of(locale))}, "
                    f"{render_literal(definition.name)}, {render_literal(name)}, CAST({column} AS VARCHAR), NULL "
                    f"FROM {qualified(schema, FACT_TABLE_NAME)} WHERE {column} IS NOT NULL "
                    f"ON CONFLICT DO NOTHING"
                )

            for view in CUBE_VIEWS:
                plan.expose(locale, section, view, quote(name))
                if view.refcodes:
                    plan.expose(locale, section, view, quote(ref_name))
                if view.sort_orders:
                    plan.expose(locale, section, view, quote(sort_name))
                if view.hierarchies:
                    plan.expose(locale, section, view, quote(hierarchy_name))

    def _register_lookup(self, plan: CoreViewPlan, definition: FactTableDefinition, proposed: str) -> str:
        table_name = plan.lookup_table_name(proposed)
        plan.joins.append(LookupJoin(table=table_name, fact_table_column=definition.name))
        plan.order_by.append(f"{quote(table_name)}.sort_order")
        return table_name

    def _lookup_statements(self, schema: str, table_name: str, source: str) -> List[str]:
        return [
            f"DROP TABLE IF EXISTS {qualified(schema, table_name)}",
            f"CREATE TABLE {qualified(schema, table_name)} AS SELECT * FROM {qualified(LOOKUP_SCHEMA, source)}",
        ]

    def dimensions_stage(self, plan: CoreViewPlan, dataset: DatasetInfo, definitions: Sequence[FactTableDefinition]) -> BuildStagePlan:
        statements: List[str] = []
        dimensions = [d for d in definitions if d.column_type == FactTableColumnType.DIMENSION]
        for definition in dimensions:
            source = next((l.lookup_table for l in dataset.labels_for(definition.name) if l.lookup_table), None)
            lookup_table = None
            if source:
                lookup_table = self._register_lookup(plan, definition, f"{cube_safe(definition.name)}_lookup")
                statements.extend(self._lookup_statements(plan.schema, lookup_table, source))
            logger.debug(f"Dimension {definition.name}: {'lookup ' + source if source else 'text'}")
            self._labelled_column(plan, dataset, definition, "dimension", lookup_table, statements)

        statements.append(upsert_metadata(plan.schema, "lookup_tables", json.dumps(plan.lookup_tables)))
        return BuildStagePlan(
            BuildStage.DIMENSIONS, statements, index_columns={l: list(c) for l, c in plan.index_columns.items()}
        )

    def formatted_value_sql(self, plan: CoreViewPlan, data_values: FactTableDefinition, measure_lookup: Optional[str]) -> str:
        value = plan.fact_column(data_values.name)
        if not measure_lookup:
            return f"CAST({value} AS VARCHAR)"
        lookup = quote(measure_lookup)
        decimals = f"COALESCE({lookup}.decimals, 0)"
        decimal_formats = ", ".join(render_literal(f) for f in _DECIMAL_FORMATS)
        return (
            f"CASE WHEN LOWER({lookup}.format) IN ({decimal_formats}) THEN "
            f"TRIM(TO_CHAR(ROUND(CAST({value} AS DECIMAL), {decimals}), "
            f"'999,999,990' || CASE WHEN {decimals} > 0 THEN '.' || REPEAT('0', {decimals}) ELSE '' END)) "
            f"WHEN LOWER({lookup}.format) = 'integer' THEN TRIM(TO_CHAR(ROUND(CAST({value} AS DECIMAL)), '999,999,990')) "
            f"ELSE CAST({value} AS VARCHAR) END"
        )

    def measure_stage(self, plan: CoreViewPlan, dataset: DatasetInfo, definitions: Sequence[FactTableDefinition]) -> BuildStagePlan:
        statements: List[str] = []
        index_start = {locale: len(columns) for locale, columns in plan.index_columns.items()}

        measure = find_definition(definitions, FactTableColumnType.MEASURE)
        measure_lookup = None
        if measure is not None:
            source = next((l.lookup_table for l in dataset.labels_for(measure.name) if l.lookup_table), None)
            if source:
                measure_lookup = self._register_lookup(plan, measure, MEASURE_LOOKUP_NAME)
                statements.extend(self._lookup_statements(plan.schema, measure_lookup, source))
            self._labelled_column(plan, dataset, measure, "measure", measure_lookup, statements)

        data_values = find_definition(definitions, FactTableColumnType.DATA_VALUES)
        notes = find_definition(definitions, FactTableColumnType.NOTE_CODES)
        if data_values is not None:
            # Stored as text; the numeric check guarantees the cast
            numeric_value = f"CAST({plan.fact_column(data_values.name)} AS DECIMAL)"
            formatted = self.formatted_value_sql(plan, data_values, measure_lookup)
            if notes is not None:
                note_column = plan.fact_column(notes.name)
                annotated = (
                    f"CASE WHEN {note_column} IS NULL THEN {formatted} ELSE {formatted} || ' [' || "
                    f"ARRAY_TO_STRING(REGEXP_SPLIT_TO_ARRAY(LOWER(TRIM({note_column})), '\\s*,\\s*'), '] [') || ']' END"
                )
            else:
                annotated = formatted

            representations = {
                "raw": DATA_VALUES_COLUMN,
                "formatted": DATA_VALUES_FORMATTED_COLUMN,
                "annotated": DATA_VALUES_ANNOTATED_COLUMN,
            }
            for locale in self.locales:
                plan.select(locale, "data_values", numeric_value, DATA_VALUES_COLUMN)
                plan.select(locale, "data_values", formatted, DATA_VALUES_FORMATTED_COLUMN)
                plan.select(locale, "data_values", annotated, DATA_VALUES_ANNOTATED_COLUMN)
                plan.select(locale, "data_values", numeric_value, DATA_VALUES_SORT_COLUMN)
                for view in CUBE_VIEWS:
                    source_column = representations[view.data_values]
                    if source_column == DATA_VALUES_COLUMN:
                        plan.expose(locale, "data_values", view, quote(DATA_VALUES_COLUMN))
                    else:
                        plan.expose(locale, "data_values", view, f"{quote(source_column)} AS {quote(DATA_VALUES_COLUMN)}")
                    if view.sort_orders:
                        plan.expose(locale, "data_values", view, quote(DATA_VALUES_SORT_COLUMN))

        return BuildStagePlan(
            BuildStage.MEASURE,
            statements,
            index_columns={l: c[index_start[l]:] for l, c in plan.index_columns.items()}
        )

    def core_view_stage(self, plan: CoreViewPlan, base_cube: bool) -> BuildStagePlan:
        schema = plan.schema
        statements: List[str] = []
        for locale in self.locales:
            lang = lang_of(locale)
            core_view = f"{CORE_VIEW_NAME}_{lang}"
            sql = f"SELECT * FROM {qualified(schema, FACT_TABLE_NAME)}" if base_cube else plan.core_view_sql(locale)

            statements.append(f"CREATE VIEW {qualified(schema, core_view)} AS {sql}")
            statements.append(upsert_metadata(schema, core_view, sql))

            if base_cube:
                continue

            statements.append(upsert_metadata(
                schema, f"{CORE_VIEW_NAME}_columns_{lang}", json.dumps(plan.column_names(locale))
            ))
            for view in CUBE_VIEWS:
                view_name = f"{view.name}_{lang}"
                columns = plan.columns_for(view, locale)
                view_sql = f"SELECT {', '.join(columns) or '*'} FROM {qualified(schema, core_view)}"
                statements.append(f"CREATE VIEW {qualified(schema, view_name)} AS {view_sql}")
                statements.append(upsert_metadata(schema, view_name, view_sql))
                statements.append(upsert_metadata(schema, f"{view_name}_columns", json.dumps(columns)))

        statements.append(upsert_metadata(schema, "build_status", CubeBuildStatus.MATERIALIZING.value))
        return BuildStagePlan(BuildStage.CORE_VIEW, statements)

    def indexes_stage(self, plan: CoreViewPlan) -> BuildStagePlan:
        schema = plan.schema
        statements: List[str] = []
        for locale in self.locales:
            lang = lang_of(locale)
            materialized = f"{CORE_VIEW_NAME}_mat_{lang}"
            statements.append(
                f"CREATE MATERIALIZED VIEW IF NOT EXISTS {qualified(schema, materialized)} "
                f"AS SELECT * FROM {qualified(schema, f'{CORE_VIEW_NAME}_{lang}')}"
            )
            for number, column_name in enumerate(plan.index_columns[locale], start=1):
                statements.append(
                    f"CREATE INDEX IF NOT EXISTS {quote(f'{materialized}_{number}_idx')} "
                    f"ON {qualified(schema, materialized)} ({quote(column_name)})"
                )
        return BuildStagePlan(
            BuildStage.INDEXES, statements, index_columns={l: list(c) for l, c in plan.index_columns.items()}
        )

    def post_build_stage(self, schema: str, executed: Sequence[BuildStagePlan]) -> BuildStagePlan:
        script = "\n".join(f"{s};" for stage in executed for s in stage.statements)
        statements = [
            upsert_metadata(schema, "build_script", script),
            upsert_metadata(schema, "build_finished", datetime.utcnow().isoformat()),
            upsert_metadata(schema, "build_status", CubeBuildStatus.COMPLETED.value),
            upsert_metadata(schema, "build_results", "success"),
        ]
        return BuildStagePlan(BuildStage.POST_BUILD_METADATA, statements)

    def plan(self, dataset: DatasetInfo, revision_id: UUID, build_id: UUID) -> Tuple[CubeBuildType, List[BuildStagePlan]]:
        """Every stage up to and including indexes, in execution order"""
        definitions = self.definitions_for(dataset)
        build_type = self.build_type_for(definitions)
        schema = str(revision_id)

        stages = [self.base_tables_stage(schema, build_id, revision_id, build_type)]
        if build_type == CubeBuildType.BASE_CUBE:
            stages.append(self.core_view_stage(CoreViewPlan(schema, self.locales), base_cube=True))
            return build_type, stages

        reserved = [
            DATA_VALUES_COLUMN, DATA_VALUES_FORMATTED_COLUMN, DATA_VALUES_ANNOTATED_COLUMN,
            DATA_VALUES_SORT_COLUMN, NOTE_CODES_COLUMN
        ]
        plan = CoreViewPlan(schema, self.locales, reserved=reserved)
        notes = find_definition(definitions, FactTableColumnType.NOTE_CODES)
        if notes is not None:
            stages.append(self.note_codes_stage(plan, notes))
        stages.append(self.dimensions_stage(plan, dataset, definitions))
        stages.append(self.measure_stage(plan, dataset, definitions))
        stages.append(self.core_view_stage(plan, base_cube=False))
        stages.append(self.indexes_stage(plan))
        return build_type, stages

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_stage(self, stage: BuildStagePlan):
        async with self.engine.begin() as conn:
            for statement in stage.statements:
                await conn.exec_driver_sql(statement)

    async def _record_failure(self, schema: str, error: Exception):
        try:
            async with self.engine.begin() as conn:
                await conn.exec_driver_sql(upsert_metadata(schema, "build_status", CubeBuildStatus.FAILED.value))
                await conn.exec_driver_sql(upsert_metadata(schema, "build_results", str(error)))
        except Exception as e:
            logger.warning(f"Unable to record build failure in cube metadata for {schema}: {e}")

    async def build(self, dataset: DatasetInfo, revision_id: UUID) -> BuildLog:
        """
        Build the cube for a revision and return its build log.

        Raises:
            CubeBuildException: a stage failed; the build log records the stage
                and error and has status failed
        """
        schema = str(revision_id)
        async with self.session_maker() as session:
            build_log = BuildLog(
                revision_id=revision_id,
                status=CubeBuildStatus.QUEUED,
                type=CubeBuildType.FULL_CUBE,
                started_at=datetime.utcnow(),
                stages=[]
            )
            session.add(build_log)
            await session.commit()
            logger.info(f"Queued cube build {build_log.id} for revision {revision_id}")

            try:
                build_type, stages = self.plan(dataset, revision_id, build_log.id)
            except CubeBuildException as e:
                build_log.complete(CubeBuildStatus.FAILED, errors=e.to_dict())
                await session.commit()
                raise

            build_log.type = build_type
            build_log.status = CubeBuildStatus.BUILDING
            await session.commit()

            executed: List[BuildStagePlan] = []
            current: Optional[BuildStagePlan] = None
            try:
                for current in stages:
                    logger.info(f"Build {build_log.id}: running stage {current.stage.value} ({len(current.statements)} statements)")
                    await self._run_stage(current)
                    executed.append(current)
                    build_log.stages = [s.to_record() for s in executed]
                    if current.stage == BuildStage.CORE_VIEW:
                        build_log.status = CubeBuildStatus.MATERIALIZING
                    await session.commit()

                current = self.post_build_stage(schema, executed)
                await self._run_stage(current)
                executed.append(current)
            except Exception as e:
                stage_name = current.stage.value if current else None
                logger.error(f"Cube build {build_log.id} failed at stage {stage_name}: {e}", exc_info=True)
                if self.preserve_failed:
                    await self._record_failure(schema, e)
                build_log.failed_stage = stage_name
                build_log.build_script = "\n".join(f"{s};" for stage in executed for s in stage.statements)
                build_log.complete(CubeBuildStatus.FAILED, errors={"stage": stage_name, "error": str(e)})
                await session.commit()
                raise CubeBuildException(
                    f"Cube build failed at stage {stage_name}",
                    context={"build_id": str(build_log.id), "revision_id": schema, "stage": stage_name},
                    original_exception=e
                )

            build_log.stages = [s.to_record() for s in executed]
            build_log.build_script = "\n".join(f"{s};" for stage in executed for s in stage.statements)
            build_log.complete(CubeBuildStatus.COMPLETED)
            await session.commit()
            logger.info(
                f"Cube build {build_log.id} completed for revision {revision_id} "
                f"in {build_log.duration_seconds:.2f}s"
            )
            return build_log
