"""Local evaluation of queries against in-memory records.

Used by the in-memory adapter to answer queries and by the cache to decide
whether a written record belongs to a cached result.
"""

import re
from functools import lru_cache

import typing as t
from collections.abc import Mapping

from .query import Filter, FilterOperator, OrderBy

Record = Mapping[str, t.Any]

_MISSING = object()


def get_field(record: t.Any, name: str, default: t.Any = None) -> t.Any:
    """Read a field from a mapping or an attribute based record."""
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def record_id(record: t.Any, id_column: str = "id") -> t.Any:
    return get_field(record, id_column)


@lru_cache(maxsize=256)
def like_pattern(pattern: str, case_sensitive: bool = True) -> re.Pattern[str]:
    """Compile a SQL ``LIKE`` pattern (``%`` and ``_`` wildcards)."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    flags = re.DOTALL if case_sensitive else re.DOTALL | re.IGNORECASE
    return re.compile("".join(parts), flags)


def _compare(left: t.Any, right: t.Any, op: t.Callable[[t.Any, t.Any], bool]) -> bool:
    if left is None or right is None:
        return False
    try:
        return op(left, right)
    except TypeError:
        return op(str(left), str(right))


def matches_filter(record: t.Any, flt: Filter) -> bool:
    value = get_field(record, flt.column, _MISSING)
    if value is _MISSING:
        value = None
    target = flt.value

    match flt.operator:
        case FilterOperator.EQ:
            return value is not None and value == target
        case FilterOperator.NEQ:
            return value is not None and value != target
        case FilterOperator.GT:
            return _compare(value, target, lambda a, b: a > b)
        case FilterOperator.GTE:
            return _compare(value, target, lambda a, b: a >= b)
        case FilterOperator.LT:
            return _compare(value, target, lambda a, b: a < b)
        case FilterOperator.LTE:
            return _compare(value, target, lambda a, b: a <= b)
        case FilterOperator.LIKE | FilterOperator.ILIKE:
            if value is None or target is None:
                return False
            regex = like_pattern(str(target), flt.operator is FilterOperator.LIKE)
            return regex.fullmatch(str(value)) is not None
        case FilterOperator.IN:
            return value is not None and value in list(target or ())
        case FilterOperator.IS:
            return value is target
        case FilterOperator.NOT:
            if target is None:
                return value is not None
            if isinstance(target, (list, tuple, set, frozenset)):
                return value is not None and value not in target
            return value is not None and value != target
    return False


def matches_filters(record: t.Any, filters: t.Iterable[Filter]) -> bool:
    """True when the record satisfies every filter (AND semantics)."""
    return all(matches_filter(record, f) for f in filters)


def _sort_key(value: t.Any) -> tuple[int, t.Any]:
    # nulls sort last ascending, first descending
    return (1, "") if value is None else (0, value)


def sort_records(records: list[t.Any], order_by: t.Sequence[OrderBy]) -> list[t.Any]:
    """Stable multi-column sort; later columns break ties of earlier ones."""
    result = list(records)
    for order in reversed(order_by):
        result.sort(
            key=lambda r, c=order.column: _sort_key(get_field(r, c)),
            reverse=not order.ascending,
        )
    return result


def apply_query(
    records: t.Iterable[t.Any],
    filters: t.Iterable[Filter] = (),
    order_by: t.Sequence[OrderBy] = (),
    limit: int | None = None,
    offset: int | None = None,
) -> list[t.Any]:
    filters = tuple(filters)
    rows = [r for r in records if matches_filters(r, filters)]
    if order_by:
        rows = sort_records(rows, order_by)
    start = offset or 0
    if limit is not None:
        return rows[start : start + limit]
    return rows[start:]


def project(record: Record, columns: str | None) -> dict[str, t.Any]:
    """Restrict a record to a comma separated column list (``*`` keeps all)."""
    if not columns or columns.strip() == "*":
        return dict(record)
    names = [c.strip() for c in columns.split(",") if c.strip()]
    return {name: record[name] for name in names if name in record}


def prepend_record(records: t.Sequence[t.Any], record: t.Any) -> list[t.Any]:
    return [record, *records]


def replace_record(
    records: t.Sequence[t.Any],
    record: t.Any,
    id_column: str = "id",
) -> list[t.Any]:
    """Replace the record sharing ``record``'s id; other entries are untouched."""
    target = record_id(record, id_column)
    return [record if record_id(r, id_column) == target else r for r in records]


def remove_record(
    records: t.Sequence[t.Any],
    id_value: t.Any,
    id_column: str = "id",
) -> list[t.Any]:
    return [r for r in records if record_id(r, id_column) != id_value]


def contains_record(
    records: t.Sequence[t.Any],
    id_value: t.Any,
    id_column: str = "id",
) -> bool:
    return any(record_id(r, id_column) == id_value for r in records)
