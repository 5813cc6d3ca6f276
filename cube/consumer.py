"""
Consumer-side helpers: choosing views, reading cube metadata and building
the base queries the query store caches.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import Select
from schemas.data_options import DataOptions, ColumnOptions
from cube.builder import CUBE_VIEWS, DATA_VALUES_COLUMN, REFERENCE_SUFFIX
from cube.sql import (
    CORE_VIEW_NAME, METADATA_TABLE_NAME, FILTER_TABLE_NAME, relation, qualified, quote, render_literal
)
from core.exceptions import QueryStoreException
import logging

logger = logging.getLogger(__name__)

FILTER_TABLE_COLUMNS = ["reference", "language", "fact_table_column", "dimension_name", "description", "hierarchy"]

_matviews = relation("pg_catalog", "pg_matviews", ["matviewname", "schemaname"])


def check_available_views(view: Optional[str]) -> str:
    """Consumer view for a requested data value type; raw when missing or unknown"""
    if not view:
        return "raw"
    if view == "with_note_codes":
        view = "frontend"
    if view not in {config.name for config in CUBE_VIEWS}:
        return "raw"
    return view


async def core_view_chooser(conn: AsyncConnection, lang: str, revision_id: str) -> str:
    """Materialised core view when it exists, otherwise the plain core view"""
    materialized = f"{CORE_VIEW_NAME}_mat_{lang}"
    try:
        result = await conn.execute(
            select(_matviews.c.matviewname).where(
                _matviews.c.matviewname == materialized,
                _matviews.c.schemaname == str(revision_id)
            )
        )
        found = result.first()
    except Exception as e:
        logger.error(f"Unable to query available views for cube {revision_id}: {e}")
        raise
    return materialized if found else f"{CORE_VIEW_NAME}_{lang}"


async def get_columns(conn: AsyncConnection, revision_id: str, lang: str, view: str) -> List[str]:
    """Select list of a consumer view from cube metadata; ['*'] when none is recorded"""
    metadata = relation(str(revision_id), METADATA_TABLE_NAME, ["key", "value"])
    try:
        result = await conn.execute(
            select(metadata.c.value).where(metadata.c.key == f"{view}_{lang}_columns")
        )
        value = result.scalar_one_or_none()
    except Exception as e:
        logger.error(f"Unable to get columns from cube metadata table: {e}")
        raise
    return json.loads(value) if value else ["*"]


def filter_table_query(revision_id: str, locale: str = None) -> Select:
    filter_table = relation(str(revision_id), FILTER_TABLE_NAME, FILTER_TABLE_COLUMNS)
    query = select(*[filter_table.c[name] for name in FILTER_TABLE_COLUMNS])
    if locale:
        query = query.where(filter_table.c.language.like(f"{locale.lower().split('-')[0]}%"))
    return query


def column_mapping_query(revision_id: str) -> Select:
    filter_table = relation(str(revision_id), FILTER_TABLE_NAME, FILTER_TABLE_COLUMNS)
    return (
        select(filter_table.c.fact_table_column, filter_table.c.dimension_name, filter_table.c.language)
        .distinct()
        .order_by(filter_table.c.language, filter_table.c.fact_table_column)
    )


async def get_filter_table(conn: AsyncConnection, revision_id: str, locale: str = None) -> List[Dict[str, Any]]:
    try:
        result = await conn.execute(filter_table_query(revision_id, locale))
        return [dict(row) for row in result.mappings().all()]
    except Exception as e:
        logger.error(f"Something went wrong trying to get the filter table from cube {revision_id}: {e}")
        raise


async def get_column_mapping(conn: AsyncConnection, revision_id: str) -> List[Dict[str, str]]:
    """Distinct (fact_table_column, dimension_name, language) triples of a cube"""
    result = await conn.execute(column_mapping_query(revision_id))
    return [dict(row) for row in result.mappings().all()]


def transform_hierarchy(fact_table_column: str, column_name: str, rows: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Nest filter table rows under their parent reference.

    Returns {fact_table_column, column_name, values}, where values holds the
    root nodes; each node is {reference, description[, children]}.
    """
    nodes: Dict[str, Dict[str, Any]] = {}
    children: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        node = {"reference": row["reference"], "description": row["description"]}
        nodes[row["reference"]] = node
        if row.get("hierarchy"):
            children.setdefault(row["hierarchy"], []).append(node)

    child_refs = set()
    for parent_ref, nodes_under in children.items():
        parent = nodes.get(parent_ref)
        if parent is not None:
            parent.setdefault("children", []).extend(nodes_under)
            child_refs.update(node["reference"] for node in nodes_under)

    roots = [node for ref, node in nodes.items() if ref not in child_refs]
    return {"fact_table_column": fact_table_column, "column_name": column_name, "values": roots}


async def get_filters(conn: AsyncConnection, revision_id: str, locale: str) -> List[Dict[str, Any]]:
    """Filter table for one locale, grouped per column and nested by hierarchy"""
    rows = await get_filter_table(conn, revision_id, locale)
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row["fact_table_column"], []).append(row)
    return [
        transform_hierarchy(column_rows[0]["fact_table_column"], column_rows[0]["dimension_name"], column_rows)
        for column_rows in grouped.values()
    ]


# ----------------------------------------------------------------------
# Column resolution
# ----------------------------------------------------------------------

def resolve_dimension_to_fact_table_column(name: str, mapping: Sequence[Dict[str, str]]) -> str:
    for row in mapping:
        if row["dimension_name"].lower() == name.lower():
            return row["fact_table_column"]
    raise QueryStoreException(f"Column {name} not found", context={"column": name}, status=400)


def resolve_fact_column_to_dimension(column_name: str, locale: str, mapping: Sequence[Dict[str, str]]) -> str:
    for row in mapping:
        if row["fact_table_column"].lower() == column_name.lower() and row["language"].lower() == locale.lower():
            return row["dimension_name"]
    raise QueryStoreException(f"Column {column_name} not found", context={"column": column_name}, status=400)


def resolve_column(name: str, locale: str, mapping: Sequence[Dict[str, str]]) -> str:
    """
    Dimension name in ``locale`` for a fact table column or a dimension name
    in any locale.
    """
    if any(row["fact_table_column"].lower() == name.lower() for row in mapping):
        return resolve_fact_column_to_dimension(name, locale, mapping)
    fact_table_column = resolve_dimension_to_fact_table_column(name, mapping)
    return resolve_fact_column_to_dimension(fact_table_column, locale, mapping)


# ----------------------------------------------------------------------
# Query construction
# ----------------------------------------------------------------------

def _column_options(options: DataOptions) -> ColumnOptions:
    return options.options or ColumnOptions()


def output_column(name: str, locale: str, mapping: Sequence[Dict[str, str]], use_raw_column_names: bool) -> str:
    """Name of a dimension column in a base query's output"""
    dimension_name = resolve_column(name, locale, mapping)
    if use_raw_column_names:
        return resolve_dimension_to_fact_table_column(dimension_name, mapping)
    return dimension_name


def create_base_query(
    revision_id: str,
    view: str,
    locale: str,
    columns: Sequence[str],
    mapping: Sequence[Dict[str, str]],
    options: DataOptions
) -> str:
    """
    SELECT over a core view for one locale, with filters applied.

    Filter columns may be fact table columns or dimension names. Filter values
    are matched against the reference column when use_reference_values is set
    (the default), otherwise against the displayed description.
    """
    column_options = _column_options(options)
    use_reference_values = column_options.use_reference_values is not False
    language = locale.lower()

    select_list = list(columns)
    if column_options.use_raw_column_names and select_list != ["*"]:
        renames = {
            quote(row["dimension_name"]): f"{quote(row['dimension_name'])} AS {quote(row['fact_table_column'])}"
            for row in mapping
            if row["language"].lower() == language
        }
        select_list = [renames.get(fragment, fragment) for fragment in select_list]

    conditions = []
    for filter_ in options.filters or []:
        for column_name, values in filter_.items():
            if not values:
                continue
            dimension_name = resolve_column(column_name, locale, mapping)
            target = f"{dimension_name}{REFERENCE_SUFFIX}" if use_reference_values else dimension_name
            conditions.append(f"{quote(target)} IN ({', '.join(render_literal(str(v)) for v in values)})")

    query = f"SELECT {', '.join(select_list)} FROM {qualified(str(revision_id), view)}"
    if conditions:
        query += f" WHERE {' AND '.join(conditions)}"
    return query


def pivot_axes(options: DataOptions, locale: str, mapping: Sequence[Dict[str, str]]) -> Tuple[str, List[str]]:
    """Output column names of the pivot's x column and y columns"""
    use_raw = bool(_column_options(options).use_raw_column_names)
    pivot = options.pivot
    x = output_column(pivot.x_column, locale, mapping, use_raw)
    y = [output_column(name, locale, mapping, use_raw) for name in pivot.y_columns]
    return x, y


def distinct_values_query(base_query: str, column_name: str) -> str:
    return (
        f"SELECT DISTINCT {quote(column_name)} FROM ({base_query}) AS base_query "
        f"WHERE {quote(column_name)} IS NOT NULL ORDER BY 1"
    )


def pivot_query(base_query: str, x: str, y: Sequence[str], x_values: Sequence[Any], value_column: str = DATA_VALUES_COLUMN) -> str:
    """One row per distinct y tuple and one column per x value holding the data value"""
    group_by = ", ".join(quote(name) for name in y)
    pivoted = [
        f"MAX(CASE WHEN CAST({quote(x)} AS VARCHAR) = {render_literal(str(value))} "
        f"THEN {quote(value_column)} END) AS {quote(str(value))}"
        for value in x_values
    ]
    return (
        f"SELECT {', '.join([group_by] + pivoted)} FROM ({base_query}) AS base_query "
        f"GROUP BY {group_by} ORDER BY {group_by}"
    )


def count_query(base_query: str) -> str:
    return f"SELECT COUNT(*) AS total_lines FROM ({base_query}) AS base_query"


async def count_lines(conn: AsyncConnection, base_query: str) -> int:
    result = await conn.exec_driver_sql(count_query(base_query))
    return int(result.scalar_one())


async def distinct_values(conn: AsyncConnection, base_query: str, column_name: str) -> List[Any]:
    result = await conn.exec_driver_sql(distinct_values_query(base_query, column_name))
    return list(result.scalars().all())
