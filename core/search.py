from typing import Any, Dict, Iterable, List, Sequence

from config import SEARCH_BASIC_FIELDS, SEARCH_NESTED_FIELDS


def searchable_values(
    row: Dict[str, Any],
    basic_fields: Sequence[str] = SEARCH_BASIC_FIELDS,
    nested_fields: Sequence[str] = SEARCH_NESTED_FIELDS,
) -> List[str]:
    """Flatten the scalar fields and every nested map value of a row, nulls dropped."""
    values: List[Any] = [row.get(name) for name in basic_fields]
    for name in nested_fields:
        nested = row.get(name) or {}
        values.extend(nested.values())
    return [str(v) for v in values if v is not None]


def row_matches(row: Dict[str, Any], term: str) -> bool:
    needle = term.lower()
    return any(needle in value.lower() for value in searchable_values(row))


def filter_rows(rows: Iterable[Dict[str, Any]], term: str) -> List[Dict[str, Any]]:
    """Case-insensitive "any field contains" filter. A blank term keeps every row."""
    rows = list(rows)
    if not term or not term.strip():
        return rows
    return [row for row in rows if row_matches(row, term)]
