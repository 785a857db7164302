"""Filter and query descriptors.

Provides the value types consumed by every ``DatabaseClient``:
- ``Filter`` / ``OrderBy`` / ``Query`` descriptors
- ``FilterBuilder`` and ``QueryBuilder`` fluent builders
- ``query_signature`` for structural cache and coordination keys

Builders are immutable. Every chain step returns a new builder, so a common
prefix can be shared and extended by unrelated call sites without leaking
filters between them.
"""

import hashlib
from enum import Enum

import msgspec
import typing as t
from dataclasses import dataclass, field, replace

from .errors import ConfigurationError

Columns = str | t.Sequence[str]


class FilterOperator(str, Enum):
    """Operators every backend adapter must support."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    IS = "is"
    NOT = "not"


class QueryOperation(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"


@dataclass(frozen=True)
class Filter:
    """A single column predicate. Multiple filters combine with AND."""

    column: str
    operator: FilterOperator
    value: t.Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "operator", FilterOperator(self.operator))

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "column": self.column,
            "operator": self.operator.value,
            "value": self.value,
        }


@dataclass(frozen=True)
class OrderBy:
    column: str
    ascending: bool = True

    def to_dict(self) -> dict[str, t.Any]:
        return {"column": self.column, "ascending": self.ascending}


@dataclass(frozen=True)
class Query:
    """A complete, backend independent query description."""

    table: str
    operation: QueryOperation
    filters: tuple[Filter, ...] = ()
    order_by: tuple[OrderBy, ...] = ()
    limit: int | None = None
    offset: int | None = None
    single: bool = False
    data: t.Any = None
    columns: Columns | None = None

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "table": self.table,
            "operation": self.operation.value,
            "filters": [f.to_dict() for f in self.filters],
            "order_by": [o.to_dict() for o in self.order_by],
            "limit": self.limit,
            "offset": self.offset,
            "single": self.single,
            "data": self.data,
            "columns": normalize_columns(self.columns),
        }


def normalize_columns(columns: Columns | None) -> str | None:
    """Render a column selection as the comma separated form adapters use."""
    if columns is None:
        return None
    if isinstance(columns, str):
        return columns.strip() or None
    joined = ",".join(c.strip() for c in columns if c and c.strip())
    return joined or None


def _builtins(value: t.Any) -> t.Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted((_builtins(v) for v in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_builtins(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _builtins(v) for k, v in value.items()}
    return value


def query_signature(query: Query) -> str:
    """Stable digest of everything that shapes a read result.

    Two queries that can return different rows never share a signature.
    Payload data is excluded; it does not affect what a read returns.
    """
    payload = {
        "table": query.table,
        "operation": query.operation.value,
        "columns": normalize_columns(query.columns),
        "filters": [_builtins(f.to_dict()) for f in query.filters],
        "order_by": [o.to_dict() for o in query.order_by],
        "limit": query.limit,
        "offset": query.offset,
        "single": query.single,
    }
    encoded = msgspec.json.encode(payload, order="deterministic", enc_hook=repr)
    return hashlib.md5(encoded, usedforsecurity=False).hexdigest()


class FilterBuilder:
    """Fluent, immutable builder for filter lists.

    Example:
        >>> filters = FilterBuilder().eq("status", "active").gte("date", "2024-01-01")
        >>> filters.build()
        [Filter(column='status', ...), Filter(column='date', ...)]
    """

    __slots__ = ("_filters",)

    def __init__(self, filters: t.Iterable[Filter] = ()) -> None:
        self._filters: tuple[Filter, ...] = tuple(filters)

    def _add(
        self,
        column: str,
        operator: FilterOperator,
        value: t.Any,
    ) -> "FilterBuilder":
        return FilterBuilder((*self._filters, Filter(column, operator, value)))

    def eq(self, column: str, value: t.Any) -> "FilterBuilder":
        return self._add(column, FilterOperator.EQ, value)

    def neq(self, column: str, value: t.Any) -> "FilterBuilder":
        return self._add(column, FilterOperator.NEQ, value)

    def gt(self, column: str, value: t.Any) -> "FilterBuilder":
        return self._add(column, FilterOperator.GT, value)

    def gte(self, column: str, value: t.Any) -> "FilterBuilder":
        return self._add(column, FilterOperator.GTE, value)

    def lt(self, column: str, value: t.Any) -> "FilterBuilder":
        return self._add(column, FilterOperator.LT, value)

    def lte(self, column: str, value: t.Any) -> "FilterBuilder":
        return self._add(column, FilterOperator.LTE, value)

    def like(self, column: str, pattern: str) -> "FilterBuilder":
        return self._add(column, FilterOperator.LIKE, pattern)

    def ilike(self, column: str, pattern: str) -> "FilterBuilder":
        return self._add(column, FilterOperator.ILIKE, pattern)

    def in_(self, column: str, values: t.Iterable[t.Any]) -> "FilterBuilder":
        return self._add(column, FilterOperator.IN, list(values))

    def is_null(self, column: str) -> "FilterBuilder":
        return self._add(column, FilterOperator.IS, None)

    def is_not_null(self, column: str) -> "FilterBuilder":
        return self._add(column, FilterOperator.NOT, None)

    def extend(self, filters: t.Iterable[Filter]) -> "FilterBuilder":
        return FilterBuilder((*self._filters, *filters))

    def clear(self) -> "FilterBuilder":
        return FilterBuilder()

    def build(self) -> list[Filter]:
        return list(self._filters)

    def __len__(self) -> int:
        return len(self._filters)

    def __iter__(self) -> t.Iterator[Filter]:
        return iter(self._filters)

    def __repr__(self) -> str:
        return f"FilterBuilder({list(self._filters)!r})"


@dataclass(frozen=True)
class QueryBuilder:
    """Fluent, immutable builder for ``Query`` descriptors."""

    _table: str | None = None
    _operation: QueryOperation | None = None
    _filters: tuple[Filter, ...] = ()
    _order_by: tuple[OrderBy, ...] = ()
    _limit: int | None = None
    _offset: int | None = None
    _single: bool = False
    _data: t.Any = None
    _columns: Columns | None = field(default=None)

    def table(self, name: str) -> "QueryBuilder":
        return replace(self, _table=name)

    def select(self, columns: Columns | None = None) -> "QueryBuilder":
        return replace(self, _operation=QueryOperation.SELECT, _columns=columns)

    def insert(self, data: t.Any) -> "QueryBuilder":
        return replace(self, _operation=QueryOperation.INSERT, _data=data)

    def upsert(self, data: t.Any) -> "QueryBuilder":
        return replace(self, _operation=QueryOperation.UPSERT, _data=data)

    def update(self, data: t.Any) -> "QueryBuilder":
        return replace(self, _operation=QueryOperation.UPDATE, _data=data)

    def delete(self) -> "QueryBuilder":
        return replace(self, _operation=QueryOperation.DELETE, _data=None)

    def where(self, filters: FilterBuilder | t.Iterable[Filter]) -> "QueryBuilder":
        """Add filters; repeated calls accumulate."""
        return replace(self, _filters=(*self._filters, *filters))

    def order_by(self, column: str, ascending: bool = True) -> "QueryBuilder":
        return replace(self, _order_by=(*self._order_by, OrderBy(column, ascending)))

    def limit(self, count: int) -> "QueryBuilder":
        if count < 0:
            msg = "limit must be a non-negative integer"
            raise ConfigurationError(msg, field_name="limit")
        return replace(self, _limit=count)

    def offset(self, count: int) -> "QueryBuilder":
        """Skip the first ``count`` matching rows."""
        if count < 0:
            msg = "offset must be a non-negative integer"
            raise ConfigurationError(msg, field_name="offset")
        return replace(self, _offset=count)

    def single(self) -> "QueryBuilder":
        return replace(self, _single=True)

    def build(self) -> Query:
        """Produce the query.

        Raises:
            ConfigurationError: If the table or the operation is missing.
        """
        if not self._table:
            msg = "Table and operation are required: table is missing"
            raise ConfigurationError(msg, field_name="table")
        if self._operation is None:
            msg = "Table and operation are required: operation is missing"
            raise ConfigurationError(msg, field_name="operation")
        return Query(
            table=self._table,
            operation=self._operation,
            filters=self._filters,
            order_by=self._order_by,
            limit=self._limit,
            offset=self._offset,
            single=self._single,
            data=self._data,
            columns=self._columns,
        )


def select_query(
    table: str,
    *,
    filters: t.Iterable[Filter] | None = None,
    order_by: t.Iterable[OrderBy] | None = None,
    limit: int | None = None,
    offset: int | None = None,
    single: bool = False,
    columns: Columns | None = None,
) -> Query:
    """Shortcut for the select queries the facade issues."""
    builder = QueryBuilder().table(table).select(columns).where(filters or ())
    for order in order_by or ():
        builder = builder.order_by(order.column, order.ascending)
    if limit is not None:
        builder = builder.limit(limit)
    if offset is not None:
        builder = builder.offset(offset)
    if single:
        builder = builder.single()
    return builder.build()
