"""
Shape query rows into the diagnostic table returned with validation errors.
"""

from typing import Any, Dict, List, Sequence, Mapping, Tuple
from models.base import FactTableColumnType
from cube.sql import LINE_NUMBER


def table_data_to_view_table(
    rows: Sequence[Mapping[str, Any]]
) -> Tuple[List[Dict[str, Any]], List[List[Any]]]:
    """
    Convert mapping rows to (headers, data).

    Headers are taken from the first row's keys in order; the synthesised
    line number column is tagged so clients can render it differently.
    """
    if not rows:
        return [], []

    headers = []
    for index, name in enumerate(rows[0].keys()):
        source_type = FactTableColumnType.LINE_NUMBER if name == LINE_NUMBER else FactTableColumnType.UNKNOWN
        headers.append({"name": name, "index": index, "source_type": source_type.value})

    data = [[_json_safe(value) for value in row.values()] for row in rows]
    return headers, data


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
