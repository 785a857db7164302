"""TTL-bounded in-memory cache for query results.

Provides:
- ``CacheStore`` keyed by any hashable, usually a structural ``CacheKey``
- Freshness checks against an injectable monotonic clock
- In-place write patching that keeps the entry timestamp
- Hit/miss/write/invalidation metrics
"""

import time

import typing as t
from collections.abc import Mapping
from dataclasses import dataclass, field
from pydantic import Field

from dashdata.config import Settings
from dashdata.logger import get_logger
from dashdata.query import Query, normalize_columns, query_signature
from dashdata.records import (
    contains_record,
    get_field,
    matches_filters,
    prepend_record,
    project,
    record_id,
    remove_record,
    replace_record,
)

logger = get_logger(__name__)

Clock = t.Callable[[], float]
CREATED_COLUMN = "created_at"


class CacheSettings(Settings):
    ttl: float = Field(default=300.0, gt=0, description="Entry time-to-live in seconds")
    stale_while_revalidate: bool = Field(
        default=False,
        description="Serve expired entries while a refresh runs in the background",
    )


class CacheKey(t.NamedTuple):
    """Structural key of a cached read: who asked, which table, which query."""

    principal: str | None
    table: str
    signature: str

    @classmethod
    def for_query(cls, principal: str | None, query: Query) -> "CacheKey":
        return cls(principal, query.table, query_signature(query))


@dataclass
class CacheEntry:
    key: t.Hashable
    data: t.Any
    timestamp: float
    query: Query | None = None
    count: int | None = None


@dataclass
class CacheStats:
    size: int
    keys: list[t.Hashable] = field(default_factory=list)
    last_update: float | None = None


@dataclass
class CacheMetrics:
    """Cache performance metrics."""

    hits: int = 0
    misses: int = 0
    writes: int = 0
    patches: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CacheStore:
    """Per-session cache of query results.

    Entries are valid while ``clock() - timestamp < ttl``. All mutation is
    synchronous, so the store is never observed half updated by another
    coroutine.
    """

    def __init__(
        self,
        settings: CacheSettings | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or CacheSettings()
        self.ttl = self.settings.ttl
        self.clock: Clock = clock or time.monotonic
        self.metrics = CacheMetrics()
        self._entries: dict[t.Hashable, CacheEntry] = {}
        self._last_update: float | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: t.Hashable) -> bool:
        return key in self._entries

    def _fresh(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.timestamp < self.ttl

    def get(self, key: t.Hashable) -> CacheEntry | None:
        """Raw lookup; the entry may be stale."""
        return self._entries.get(key)

    def get_fresh(self, key: t.Hashable) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None and self._fresh(entry):
            self.metrics.hits += 1
            logger.debug(f"Cache hit: {key}")
            return entry
        self.metrics.misses += 1
        logger.debug(f"Cache miss: {key}")
        return None

    def is_valid(self, key: t.Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._fresh(entry)

    def set(
        self,
        key: t.Hashable,
        data: t.Any,
        *,
        query: Query | None = None,
        count: int | None = None,
    ) -> CacheEntry:
        now = self.clock()
        entry = CacheEntry(
            key=key,
            data=data,
            timestamp=now,
            query=query,
            count=count,
        )
        self._entries[key] = entry
        self._last_update = now
        self.metrics.writes += 1
        return entry

    def patch(
        self,
        key: t.Hashable,
        transform: t.Callable[[t.Any], t.Any],
    ) -> CacheEntry | None:
        """Replace an entry's data with ``transform(data)``.

        The timestamp is left unchanged: a patch does not extend freshness.
        Expired entries are dropped instead of patched.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._fresh(entry):
            self.invalidate(key)
            return None
        entry.data = transform(entry.data)
        self.metrics.patches += 1
        return entry

    def invalidate(self, key: t.Hashable) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self.metrics.invalidations += 1
        return True

    def invalidate_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self.metrics.invalidations += count
        return count

    def invalidate_where(
        self,
        predicate: t.Callable[[t.Hashable, CacheEntry], bool],
    ) -> int:
        doomed = [k for k, e in self._entries.items() if predicate(k, e)]
        for key in doomed:
            self.invalidate(key)
        return len(doomed)

    def invalidate_scope(self, principal: str | None, table: str | None = None) -> int:
        """Drop every structural entry of a principal, optionally one table only."""
        return self.invalidate_where(
            lambda key, _: isinstance(key, CacheKey)
            and key.principal == principal
            and (table is None or key.table == table),
        )

    def keys(self) -> list[t.Hashable]:
        return list(self._entries)

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            keys=self.keys(),
            last_update=self._last_update,
        )

    def _scoped(self, principal: str | None, table: str) -> list[CacheEntry]:
        return [
            entry
            for key, entry in self._entries.items()
            if isinstance(key, CacheKey)
            and key.principal == principal
            and key.table == table
        ]

    @staticmethod
    def _shape(entry: CacheEntry, record: t.Any, id_column: str) -> t.Any:
        """Project a written record to the entry's columns, or None if impossible."""
        selection = entry.query and normalize_columns(entry.query.columns)
        if not selection or selection == "*":
            return record
        names = {c.strip() for c in selection.split(",")}
        if id_column not in names or not isinstance(record, Mapping):
            return None
        return project(record, selection)

    def patch_created(
        self,
        principal: str | None,
        table: str,
        record: t.Any,
        *,
        id_column: str = "id",
    ) -> int:
        """Prepend a created record to every cached list it belongs to.

        Limited lists keep at most ``limit`` rows after the prepend. Lists
        where the record's position is unknown are invalidated.
        """
        touched = 0
        for entry in self._scoped(principal, table):
            query = entry.query
            if query is not None and not matches_filters(record, query.filters):
                continue
            shaped = self._shape(entry, record, id_column)
            if (
                shaped is None
                or not isinstance(entry.data, list)
                or (query is not None and not self._prepends(query))
            ):
                self.invalidate(entry.key)
                continue
            rid = record_id(record, id_column)
            if contains_record(entry.data, rid, id_column):
                self.patch(
                    entry.key,
                    lambda rows: replace_record(rows, shaped, id_column),
                )
            else:
                limit = query.limit if query is not None else None
                self.patch(
                    entry.key,
                    lambda rows: prepend_record(rows, shaped)[:limit],
                )
                if entry.count is not None:
                    entry.count += 1
            touched += 1
        return touched

    @staticmethod
    def _prepends(query: Query) -> bool:
        """Whether a new record belongs at the head of ``query``'s result."""
        if query.single or query.offset:
            return False
        if query.limit is None or not query.order_by:
            return True
        first = query.order_by[0]
        return first.column == CREATED_COLUMN and not first.ascending

    def patch_updated(
        self,
        principal: str | None,
        table: str,
        record: t.Any,
        *,
        id_column: str = "id",
        previous: t.Any = None,
    ) -> int:
        """Replace an updated record by id wherever it is cached.

        Entries the record leaves are patched to drop it. Entries it newly
        joins, or whose ordering it may change, are invalidated.
        """
        rid = record_id(record, id_column)
        touched = 0
        for entry in self._scoped(principal, table):
            query = entry.query
            matches = query is None or matches_filters(record, query.filters)
            shaped = self._shape(entry, record, id_column)

            if not isinstance(entry.data, list):
                if entry.data is not None and record_id(entry.data, id_column) == rid:
                    if matches and shaped is not None:
                        self.patch(entry.key, lambda _: shaped)
                    else:
                        self.invalidate(entry.key)
                    touched += 1
                elif matches:
                    self.invalidate(entry.key)
                    touched += 1
                continue

            if not contains_record(entry.data, rid, id_column):
                if matches:
                    self.invalidate(entry.key)
                    touched += 1
                continue

            if not matches:
                if query is not None and query.limit is not None:
                    self.invalidate(entry.key)
                else:
                    self.patch(
                        entry.key,
                        lambda rows: remove_record(rows, rid, id_column),
                    )
                    if entry.count:
                        entry.count -= 1
                touched += 1
                continue

            if shaped is None or self._reorders(query, previous, record):
                self.invalidate(entry.key)
            else:
                self.patch(
                    entry.key,
                    lambda rows: replace_record(rows, shaped, id_column),
                )
            touched += 1
        return touched

    @staticmethod
    def _reorders(query: Query | None, previous: t.Any, record: t.Any) -> bool:
        if query is None or not query.order_by or previous is None:
            return False
        return any(
            get_field(previous, order.column) != get_field(record, order.column)
            for order in query.order_by
        )

    def patch_deleted(
        self,
        principal: str | None,
        table: str,
        id_value: t.Any,
        *,
        id_column: str = "id",
    ) -> int:
        """Remove a deleted record from every cached result holding it."""
        touched = 0
        for entry in self._scoped(principal, table):
            if isinstance(entry.data, list):
                if not contains_record(entry.data, id_value, id_column):
                    continue
                query = entry.query
                if query is not None and query.limit is not None:
                    self.invalidate(entry.key)
                else:
                    self.patch(
                        entry.key,
                        lambda rows: remove_record(rows, id_value, id_column),
                    )
                    if entry.count:
                        entry.count -= 1
                touched += 1
            elif (
                entry.data is not None
                and record_id(entry.data, id_column) == id_value
            ):
                self.invalidate(entry.key)
                touched += 1
        return touched
