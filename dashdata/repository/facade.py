"""Typed per-collection CRUD facade.

Reads go through the request coordinator and the cache; writes go straight
to the backend and, once confirmed, patch the cache and the facade state
before the call returns.
"""

import asyncio
import dataclasses
from collections.abc import Callable, Iterable, Mapping, Sequence

import typing as t
from pydantic import BaseModel, Field

from dashdata.adapters.database import (
    DatabaseClient,
    DatabaseResponse,
    Principal,
    Unsubscribe,
)
from dashdata.config import Settings
from dashdata.errors import ConfigurationError, DatabaseError, DatabaseErrorType
from dashdata.logger import get_logger
from dashdata.query import (
    Columns,
    Filter,
    FilterBuilder,
    FilterOperator,
    OrderBy,
    Query,
    select_query,
)
from dashdata.records import (
    contains_record,
    matches_filters,
    record_id,
    remove_record,
    replace_record,
)

from .cache import CacheKey, CacheStore
from .coordinator import RequestCoordinator
from .state import AsyncState, RetryPolicy

logger = get_logger(__name__)

PrincipalLike = Principal | str | None


class FacadeSettings(Settings):
    """Per-collection behaviour of ``CrudFacade``."""

    id_column: str = Field(default="id", description="Primary key column")
    owner_column: str | None = Field(
        default="user_id",
        description="Column scoped to the principal; None disables owner scoping",
    )
    require_auth: bool = Field(default=True, description="Reject anonymous calls")
    default_order_column: str | None = Field(
        default=None,
        description="Ordering applied to find_all when none is given",
    )
    default_order_ascending: bool = False
    page_size: int = Field(default=20, gt=0, description="Rows per page in find_page")


@dataclasses.dataclass
class PageInfo:
    """Position of the facade's paginated view."""

    page: int = 0
    page_size: int = 20
    total: int = 0
    has_more: bool = True


@dataclasses.dataclass(frozen=True)
class _PageRequest:
    filters: tuple[Filter, ...]
    order_by: tuple[OrderBy, ...] | None
    columns: Columns | None
    page_size: int


def principal_id(principal: PrincipalLike) -> str | None:
    if principal is None:
        return None
    if isinstance(principal, Principal):
        return principal.id
    return str(principal)


class CrudFacade[T]:
    """CRUD operations on one table for an explicit principal.

    Args:
        client: Backend adapter.
        table: Table name.
        model: Optional pydantic model (or any class accepting the row as
            keyword arguments) records are converted to on the way out.
        cache: Shared ``CacheStore``; a private one is created when omitted.
        coordinator: Shared ``RequestCoordinator``.
        settings: ``FacadeSettings`` for id/owner columns and auth.
        retry: Retry policy for reads.
    """

    def __init__(
        self,
        client: DatabaseClient,
        table: str,
        *,
        model: type[T] | None = None,
        cache: CacheStore | None = None,
        coordinator: RequestCoordinator | None = None,
        settings: FacadeSettings | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.client = client
        self.table = table
        self.model = model
        self.cache = cache or CacheStore()
        self.coordinator = coordinator or RequestCoordinator()
        self.settings = settings or FacadeSettings()
        self.retry = retry or RetryPolicy()
        self.state: AsyncState[list[T]] = AsyncState(retry=self.retry, name=table)
        self.item_state: AsyncState[T] = AsyncState(
            retry=self.retry,
            name=f"{table}.item",
        )
        self.page_state: AsyncState[list[T]] = AsyncState(
            retry=self.retry,
            name=f"{table}.pages",
        )
        self.pagination = PageInfo(page_size=self.settings.page_size)
        self._page_request: _PageRequest | None = None
        self._state_key: CacheKey | None = None
        self._state_query: Query | None = None
        # bumped by reset(); fetches started before a reset never reach the cache
        self._generation = 0
        self._tasks: set[asyncio.Task[t.Any]] = set()
        self._watchers: list[Unsubscribe] = []

    def __repr__(self) -> str:
        model = getattr(self.model, "__name__", None)
        return f"CrudFacade(table={self.table!r}, model={model})"

    @property
    def id_column(self) -> str:
        return self.settings.id_column

    # principal scoping

    def _resolve(self, principal: PrincipalLike, operation: str) -> str | None:
        pid = principal_id(principal)
        if pid is None and self.settings.require_auth:
            msg = f"Authentication required to {operation} {self.table}"
            raise DatabaseError(
                msg,
                DatabaseErrorType.AUTHENTICATION_ERROR,
                table=self.table,
                operation=operation,
            )
        return pid

    def _owner_filters(self, pid: str | None) -> list[Filter]:
        if pid is None or not self.settings.owner_column:
            return []
        return FilterBuilder().eq(self.settings.owner_column, pid).build()

    def _id_filters(self, pid: str | None, id_value: t.Any) -> list[Filter]:
        return [
            *self._owner_filters(pid),
            Filter(self.id_column, FilterOperator.EQ, id_value),
        ]

    # conversion

    def _convert(self, row: t.Any) -> T:
        if self.model is None or row is None or isinstance(row, self.model):
            return t.cast("T", row)
        if isinstance(self.model, type) and issubclass(self.model, BaseModel):
            return t.cast("T", self.model.model_validate(row))
        return self.model(**row)

    def _convert_list(self, rows: Iterable[t.Any]) -> list[T]:
        return [self._convert(row) for row in rows]

    @staticmethod
    def _dump(data: t.Any) -> dict[str, t.Any]:
        if isinstance(data, BaseModel):
            return data.model_dump(exclude_unset=True)
        if dataclasses.is_dataclass(data) and not isinstance(data, type):
            return dataclasses.asdict(data)
        if isinstance(data, Mapping):
            return dict(data)
        msg = f"Cannot write a {type(data).__name__}; expected a mapping or model"
        raise DatabaseError(msg, DatabaseErrorType.VALIDATION_ERROR)

    def _unwrap(self, response: DatabaseResponse[t.Any], operation: str) -> t.Any:
        error = response.error
        if error is not None:
            error.table = error.table or self.table
            error.operation = error.operation or operation
            logger.error(f"{self.table}.{operation} failed: {error!r}")
            raise error
        return response.data

    # reads

    def _select(
        self,
        pid: str | None,
        *,
        filters: Iterable[Filter] | None = None,
        order_by: Sequence[OrderBy] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        columns: Columns | None = None,
        single: bool = False,
    ) -> Query:
        if order_by is None and self.settings.default_order_column and not single:
            order_by = [
                OrderBy(
                    self.settings.default_order_column,
                    self.settings.default_order_ascending,
                ),
            ]
        return select_query(
            self.table,
            filters=[*self._owner_filters(pid), *(filters or ())],
            order_by=order_by,
            limit=limit,
            offset=offset,
            single=single,
            columns=columns,
        )

    async def _fetch(
        self,
        key: CacheKey,
        query: Query,
        generation: int,
    ) -> tuple[list[t.Any], int | None]:
        response = await self.client.execute(query)
        rows = self._unwrap(response, "select") or []
        if generation == self._generation:
            self.cache.set(key, rows, query=query, count=response.count)
        else:
            logger.debug(f"{self.table}: facade was reset, fetched rows not cached")
        return rows, response.count

    def _publish(self, key: CacheKey, query: Query, rows: list[t.Any]) -> list[T]:
        self._state_key = key
        self._state_query = query
        records = self._convert_list(rows)
        self.state.set_data(records)
        return records

    async def find_all(
        self,
        principal: PrincipalLike,
        *,
        filters: Iterable[Filter] | FilterBuilder | None = None,
        order_by: Sequence[OrderBy] | None = None,
        limit: int | None = None,
        columns: Columns | None = None,
        force: bool = False,
    ) -> list[T]:
        """List the principal's records matching ``filters``.

        A fresh cache entry is returned without touching the backend or
        passing through the loading state. ``force`` skips the cache lookup.
        """
        pid = self._resolve(principal, "read")
        query = self._select(
            pid,
            filters=filters,
            order_by=order_by,
            limit=limit,
            columns=columns,
        )
        key = CacheKey.for_query(pid, query)

        if not force:
            entry = self.cache.get_fresh(key)
            if entry is not None:
                return self._publish(key, query, entry.data)
            stale = self.cache.get(key)
            if stale is not None and self.cache.settings.stale_while_revalidate:
                self._revalidate(key, query)
                return self._publish(key, query, stale.data)

        self._state_key = key
        self._state_query = query
        generation = self._generation

        async def load() -> list[T]:
            rows, _ = await self.coordinator.run(
                key,
                lambda: self._fetch(key, query, generation),
            )
            return self._convert_list(rows)

        records = await self.state.execute(load, raise_errors=True)
        return records or []

    def _revalidate(self, key: CacheKey, query: Query) -> None:
        generation = self._generation

        async def refresh() -> None:
            try:
                rows, _ = await self.coordinator.run(
                    key,
                    lambda: self._fetch(key, query, generation),
                )
            except DatabaseError as e:
                logger.warning(f"{self.table}: background refresh failed: {e.message}")
                return
            if generation == self._generation and self._state_key == key:
                self.state.set_data(self._convert_list(rows))

        logger.debug(f"Serving stale {self.table} entry while revalidating")
        task = asyncio.create_task(refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def find_by_id(
        self,
        principal: PrincipalLike,
        id_value: t.Any,
        *,
        columns: Columns | None = None,
    ) -> T | None:
        """Fetch one record, or None when it does not exist for this principal."""
        pid = self._resolve(principal, "read")
        query = self._select(
            pid,
            filters=[Filter(self.id_column, FilterOperator.EQ, id_value)],
            columns=columns,
            single=True,
        )
        key = CacheKey.for_query(pid, query)
        entry = self.cache.get_fresh(key)
        if entry is not None:
            return self._convert(entry.data)

        generation = self._generation

        async def fetch() -> t.Any:
            response = await self.client.execute(query)
            error = response.error
            if error is not None and error.type is DatabaseErrorType.NOT_FOUND:
                return None
            row = self._unwrap(response, "select")
            if row is not None and generation == self._generation:
                self.cache.set(key, row, query=query)
            return row

        async def load() -> T | None:
            row = await self.coordinator.run(key, fetch)
            return None if row is None else self._convert(row)

        return await self.item_state.execute(load, raise_errors=True)

    async def refresh(self, principal: PrincipalLike, **kwargs: t.Any) -> list[T]:
        """Re-fetch from the backend, replacing the cached entry."""
        return await self.find_all(principal, force=True, **kwargs)

    # pagination

    async def find_page(
        self,
        principal: PrincipalLike,
        page: int = 1,
        page_size: int | None = None,
        *,
        filters: Iterable[Filter] | FilterBuilder | None = None,
        order_by: Sequence[OrderBy] | None = None,
        columns: Columns | None = None,
        append: bool = False,
        force: bool = False,
    ) -> list[T]:
        """Load one page (1-based) of the principal's records into ``page_state``.

        With ``append`` the page follows the rows already loaded, otherwise
        it replaces them. ``pagination`` tracks the page number, the total
        number of matches and whether more pages remain.
        """
        pid = self._resolve(principal, "read")
        if page < 1:
            msg = "page must be a positive integer"
            raise ConfigurationError(msg, field_name="page")
        size = page_size or self.settings.page_size
        request = _PageRequest(
            filters=tuple(filters or ()),
            order_by=None if order_by is None else tuple(order_by),
            columns=columns,
            page_size=size,
        )
        query = self._select(
            pid,
            filters=request.filters,
            order_by=request.order_by,
            limit=size,
            offset=(page - 1) * size,
            columns=columns,
        )
        key = CacheKey.for_query(pid, query)
        generation = self._generation
        self._page_request = request

        async def load() -> list[T]:
            entry = None if force else self.cache.get_fresh(key)
            if entry is not None:
                rows, total = entry.data, entry.count
            else:
                rows, total = await self.coordinator.run(
                    key,
                    lambda: self._fetch(key, query, generation),
                )
            if generation == self._generation:
                self.pagination = self._page_info(page, size, len(rows), total)
            records = self._convert_list(rows)
            if append:
                return [*(self.page_state.data or []), *records]
            return records

        records = await self.page_state.execute(load, raise_errors=True)
        return records or []

    @staticmethod
    def _page_info(page: int, size: int, count: int, total: int | None) -> PageInfo:
        end = (page - 1) * size + count
        if total is None:
            return PageInfo(page, size, total=end, has_more=count == size)
        return PageInfo(page, size, total=total, has_more=end < total)

    async def load_more(self, principal: PrincipalLike) -> list[T]:
        """Append the next page; does nothing past the last page or while loading."""
        request = self._page_request
        if request is None:
            return await self.find_page(principal)
        if not self.pagination.has_more or self.page_state.is_loading:
            return list(self.page_state.data or [])
        return await self.find_page(
            principal,
            self.pagination.page + 1,
            request.page_size,
            filters=request.filters,
            order_by=request.order_by,
            columns=request.columns,
            append=True,
        )

    async def refresh_pages(self, principal: PrincipalLike) -> list[T]:
        """Reload the paginated view from its first page, skipping the cache."""
        request = self._page_request
        if request is None:
            return await self.find_page(principal, force=True)
        return await self.find_page(
            principal,
            1,
            request.page_size,
            filters=request.filters,
            order_by=request.order_by,
            columns=request.columns,
            force=True,
        )

    # writes

    def _sync_state(
        self,
        pid: str | None,
        fallback: Callable[[list[t.Any]], list[t.Any]],
    ) -> None:
        key = self._state_key
        if key is None or key.principal != pid or self.state.data is None:
            return
        entry = self.cache.get(key)
        if entry is not None:
            self.state.set_data(self._convert_list(entry.data))
        else:
            self.state.set_data(fallback(list(self.state.data)))

    def _state_matches(self, record: t.Any) -> bool:
        query = self._state_query
        return query is None or matches_filters(record, query.filters)

    def _apply_created(self, pid: str | None, record: t.Any) -> None:
        self.cache.patch_created(pid, self.table, record, id_column=self.id_column)
        rid = record_id(record, self.id_column)
        converted = self._convert(record)

        def fallback(rows: list[t.Any]) -> list[t.Any]:
            if contains_record(rows, rid, self.id_column):
                return replace_record(rows, converted, self.id_column)
            if self._state_matches(record):
                return [converted, *rows]
            return rows

        self._sync_state(pid, fallback)

    def _apply_updated(self, pid: str | None, record: t.Any, previous: t.Any) -> None:
        self.cache.patch_updated(
            pid,
            self.table,
            record,
            id_column=self.id_column,
            previous=previous,
        )
        rid = record_id(record, self.id_column)
        converted = self._convert(record)

        def fallback(rows: list[t.Any]) -> list[t.Any]:
            if not contains_record(rows, rid, self.id_column):
                return rows
            if self._state_matches(record):
                return replace_record(rows, converted, self.id_column)
            return remove_record(rows, rid, self.id_column)

        self._sync_state(pid, fallback)

    def _apply_deleted(self, pid: str | None, id_value: t.Any) -> None:
        self.cache.patch_deleted(pid, self.table, id_value, id_column=self.id_column)
        self._sync_state(
            pid,
            lambda rows: remove_record(rows, id_value, self.id_column),
        )

    def _stamp_owner(
        self,
        pid: str | None,
        payload: dict[str, t.Any],
    ) -> dict[str, t.Any]:
        owner = self.settings.owner_column
        if pid is not None and owner and payload.get(owner) is None:
            payload[owner] = pid
        return payload

    def _previous(self, pid: str | None, id_value: t.Any) -> t.Any:
        """Last known copy of a record, used to detect ordering changes."""
        for key in self.cache.keys():
            if not isinstance(key, CacheKey) or key.principal != pid:
                continue
            entry = self.cache.get(key)
            if key.table != self.table or entry is None:
                continue
            rows = entry.data if isinstance(entry.data, list) else [entry.data]
            for row in rows:
                if row is not None and record_id(row, self.id_column) == id_value:
                    return row
        return None

    async def create(self, principal: PrincipalLike, data: t.Any) -> T:
        """Insert a record owned by ``principal`` and prepend it to cached lists."""
        pid = self._resolve(principal, "create")
        payload = self._stamp_owner(pid, self._dump(data))
        response = await self.client.insert(self.table, payload)
        rows = self._unwrap(response, "create")
        if not rows:
            msg = f"Insert into {self.table} returned no data"
            raise DatabaseError(
                msg,
                DatabaseErrorType.UNKNOWN_ERROR,
                table=self.table,
                operation="create",
            )
        record = rows[0]
        self._apply_created(pid, record)
        return self._convert(record)

    async def update_by_id(
        self,
        principal: PrincipalLike,
        id_value: t.Any,
        data: t.Any,
    ) -> T:
        """Update one record; cached copies are replaced in place."""
        pid = self._resolve(principal, "update")
        payload = {k: v for k, v in self._dump(data).items() if k != self.id_column}
        previous = self._previous(pid, id_value)
        response = await self.client.update(
            self.table,
            payload,
            self._id_filters(pid, id_value),
        )
        rows = self._unwrap(response, "update")
        if not rows:
            msg = f"{self.table} record {id_value} not found"
            raise DatabaseError(
                msg,
                DatabaseErrorType.NOT_FOUND,
                table=self.table,
                operation="update",
            )
        record = rows[0]
        self._apply_updated(pid, record, previous)
        return self._convert(record)

    async def delete_by_id(self, principal: PrincipalLike, id_value: t.Any) -> bool:
        """Delete one record. Returns False when nothing matched."""
        pid = self._resolve(principal, "delete")
        response = await self.client.delete(
            self.table,
            self._id_filters(pid, id_value),
        )
        rows = self._unwrap(response, "delete")
        deleted = bool(rows) if isinstance(rows, list) else True
        if deleted:
            self._apply_deleted(pid, id_value)
        return deleted

    async def create_many(
        self,
        principal: PrincipalLike,
        items: Iterable[t.Any],
    ) -> list[T]:
        """Insert several records in one backend call."""
        pid = self._resolve(principal, "create")
        payload = [self._stamp_owner(pid, self._dump(item)) for item in items]
        if not payload:
            return []
        response = await self.client.insert(self.table, payload)
        rows = self._unwrap(response, "create") or []
        for record in reversed(rows):
            self._apply_created(pid, record)
        return self._convert_list(rows)

    async def update_many(
        self,
        principal: PrincipalLike,
        updates: Iterable[tuple[t.Any, t.Any]],
    ) -> list[T]:
        """Apply ``(id, data)`` updates in order; stops at the first failure."""
        return [
            await self.update_by_id(principal, id_value, data)
            for id_value, data in updates
        ]

    async def delete_many(self, principal: PrincipalLike, ids: Iterable[t.Any]) -> int:
        pid = self._resolve(principal, "delete")
        ids = list(ids)
        if not ids:
            return 0
        filters = [
            *self._owner_filters(pid),
            Filter(self.id_column, FilterOperator.IN, ids),
        ]
        rows = self._unwrap(await self.client.delete(self.table, filters), "delete")
        if isinstance(rows, list):
            deleted = [record_id(row, self.id_column) for row in rows]
        else:
            deleted = ids
        for id_value in deleted:
            self._apply_deleted(pid, id_value)
        return len(deleted)

    # invalidation and realtime

    def invalidate(self, principal: PrincipalLike = None) -> int:
        """Drop cached results of this table for ``principal``."""
        return self.cache.invalidate_scope(principal_id(principal), self.table)

    def clear_cache(self) -> int:
        """Drop cached results of this table for every principal."""
        return self.cache.invalidate_where(
            lambda key, _: isinstance(key, CacheKey) and key.table == self.table,
        )

    async def watch(
        self,
        principal: PrincipalLike,
        callback: Callable[[dict[str, t.Any]], t.Any] | None = None,
    ) -> Unsubscribe:
        """Apply backend changes to the principal's cached results and state.

        Changes are patched in the same way as the facade's own writes, so
        the echo of a local write leaves the cache as it was.
        """
        pid = self._resolve(principal, "watch")

        def on_change(event: dict[str, t.Any]) -> t.Any:
            self._apply_event(pid, event)
            return callback(event) if callback is not None else None

        unsubscribe = await self.client.subscribe(
            self.table,
            on_change,
            self._owner_filters(pid),
        )
        self._watchers.append(unsubscribe)
        return unsubscribe

    def _apply_event(self, pid: str | None, event: dict[str, t.Any]) -> None:
        kind = str(event.get("event", "")).upper()
        new, old = event.get("new"), event.get("old")
        if kind == "INSERT" and new:
            self._apply_created(pid, new)
        elif kind == "UPDATE" and new:
            rid = record_id(new, self.id_column)
            previous = self._previous(pid, rid) or old
            self._apply_updated(pid, new, previous)
        elif kind == "DELETE" and old and record_id(old, self.id_column) is not None:
            self._apply_deleted(pid, record_id(old, self.id_column))
        else:
            dropped = self.cache.invalidate_scope(pid, self.table)
            logger.debug(f"{self.table} {kind}: invalidated {dropped} entries")

    def reset(self) -> None:
        """Forget published data; in-flight reads are no longer published."""
        self._generation += 1
        self._state_key = None
        self._state_query = None
        self._page_request = None
        self.pagination = PageInfo(page_size=self.settings.page_size)
        self.state.reset()
        self.item_state.reset()
        self.page_state.reset()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for unsubscribe in self._watchers:
            await unsubscribe()
        self._watchers.clear()
        self.state.close()
        self.item_state.close()
        self.page_state.close()
