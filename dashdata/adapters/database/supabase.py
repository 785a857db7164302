"""Supabase (PostgREST + realtime) backend adapter.

The ``supabase`` package is an optional dependency (``pip install
dashdata[supabase]``). It is imported when the first call needs a client, so
this module imports cleanly without it.
"""

import asyncio

import httpx
import typing as t

from dashdata.errors import ConfigurationError, DatabaseError, DatabaseErrorType
from dashdata.logger import get_logger
from dashdata.query import Columns, Filter, FilterOperator, OrderBy, normalize_columns
from dashdata.records import matches_filters, project

from ._base import (
    ChangeCallback,
    DatabaseClient,
    DatabaseResponse,
    DatabaseSettings,
    Principal,
    Row,
    Unsubscribe,
)

logger = get_logger(__name__)

NOT_FOUND_CODES = frozenset({"PGRST116"})
CONFLICT_CODES = frozenset({"23505"})
PERMISSION_CODES = frozenset({"42501"})
AUTH_CODES = frozenset({"PGRST301", "PGRST302"})
VALIDATION_CODES = frozenset({"23502", "23503", "23514", "22P02"})


def _status_code(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(exc, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _classify(exc: BaseException) -> DatabaseErrorType:
    if isinstance(exc, httpx.TransportError):
        return DatabaseErrorType.CONNECTION_ERROR

    code = str(getattr(exc, "code", "") or "")
    message = str(getattr(exc, "message", "") or exc).lower()
    status = _status_code(exc)

    if code in NOT_FOUND_CODES:
        return DatabaseErrorType.NOT_FOUND
    if code in CONFLICT_CODES:
        return DatabaseErrorType.CONFLICT
    if code in PERMISSION_CODES or status == 403:
        return DatabaseErrorType.PERMISSION_ERROR
    if code in AUTH_CODES or "jwt" in message or status == 401:
        return DatabaseErrorType.AUTHENTICATION_ERROR
    if code in VALIDATION_CODES:
        return DatabaseErrorType.VALIDATION_ERROR
    if status == 429 or code == "429" or "rate limit" in message:
        return DatabaseErrorType.RATE_LIMIT
    if "connection" in message or "network" in message:
        return DatabaseErrorType.CONNECTION_ERROR
    return DatabaseErrorType.UNKNOWN_ERROR


def normalize_error(
    exc: BaseException,
    *,
    table: str | None = None,
    operation: str | None = None,
) -> DatabaseError:
    """Map a supabase / postgrest / httpx failure into the dashdata taxonomy."""
    if isinstance(exc, DatabaseError):
        return exc
    message = str(getattr(exc, "message", "") or exc) or exc.__class__.__name__
    return DatabaseError(
        message,
        _classify(exc),
        exc,
        table=table,
        operation=operation,
    )


def _literal(value: t.Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def apply_filters(builder: t.Any, filters: t.Iterable[Filter]) -> t.Any:
    """Translate filters into postgrest builder calls."""
    for flt in filters:
        column, value = flt.column, flt.value
        match flt.operator:
            case FilterOperator.EQ:
                builder = builder.eq(column, value)
            case FilterOperator.NEQ:
                builder = builder.neq(column, value)
            case FilterOperator.GT:
                builder = builder.gt(column, value)
            case FilterOperator.GTE:
                builder = builder.gte(column, value)
            case FilterOperator.LT:
                builder = builder.lt(column, value)
            case FilterOperator.LTE:
                builder = builder.lte(column, value)
            case FilterOperator.LIKE:
                builder = builder.like(column, value)
            case FilterOperator.ILIKE:
                builder = builder.ilike(column, value)
            case FilterOperator.IN:
                builder = builder.in_(column, list(value))
            case FilterOperator.IS:
                builder = builder.is_(column, _literal(value))
            case FilterOperator.NOT:
                if value is None:
                    builder = builder.not_.is_(column, "null")
                elif isinstance(value, (list, tuple, set, frozenset)):
                    builder = builder.not_.in_(column, list(value))
                else:
                    builder = builder.not_.eq(column, value)
    return builder


def _realtime_filter(filters: t.Sequence[Filter]) -> str | None:
    # realtime accepts a single equality filter server side
    for flt in filters:
        if flt.operator is FilterOperator.EQ:
            return f"{flt.column}=eq.{_literal(flt.value)}"
    return None


def _change_event(table: str, payload: t.Any) -> dict[str, t.Any]:
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    event = data.get("type") or data.get("eventType") or "UNKNOWN"
    return {
        "event": str(getattr(event, "value", event)).upper(),
        "table": data.get("table", table),
        "new": data.get("record") or data.get("new") or None,
        "old": data.get("old_record") or data.get("old") or None,
    }


class SupabaseDatabaseClient(DatabaseClient):
    provider = "supabase"

    def __init__(
        self,
        settings: DatabaseSettings | None = None,
        *,
        client: t.Any = None,
    ) -> None:
        super().__init__(settings)
        self._client = client
        self._client_lock = asyncio.Lock()

    async def _create_client(self) -> t.Any:
        if not self.settings.url or not self.settings.key:
            msg = (
                "Supabase credentials missing. Set DASHDATA_URL and "
                "DASHDATA_API_KEY (or DASHDATA_SERVICE_KEY)"
            )
            raise ConfigurationError(msg, field_name="url")

        from supabase import acreate_client

        logger.debug(f"Creating supabase client for {self.settings.url}")
        return await acreate_client(self.settings.url, self.settings.key)

    async def get_client(self) -> t.Any:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = await self._create_client()
        return self._client

    async def _run(
        self,
        table: str,
        build: t.Callable[[t.Any], t.Any],
    ) -> t.Any:
        client = await self.get_client()
        return await build(client.table(table)).execute()

    async def select(
        self,
        table: str,
        *,
        columns: Columns | None = None,
        filters: t.Sequence[Filter] | None = None,
        order_by: t.Sequence[OrderBy] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        single: bool = False,
    ) -> DatabaseResponse[t.Any]:
        def build(query: t.Any) -> t.Any:
            selection = normalize_columns(columns) or "*"
            if offset is None:
                query = query.select(selection)
            else:
                query = query.select(selection, count="exact")
            query = apply_filters(query, filters or ())
            for order in order_by or ():
                query = query.order(order.column, desc=not order.ascending)
            if offset is not None and limit is not None:
                query = query.range(offset, offset + limit - 1)
            elif offset is not None:
                query = query.offset(offset)
            elif limit is not None:
                query = query.limit(limit)
            if single:
                query = query.single()
            return query

        try:
            result = await self._run(table, build)
        except ConfigurationError:
            raise
        except Exception as e:
            return DatabaseResponse(
                error=normalize_error(e, table=table, operation="select"),
            )
        return DatabaseResponse(data=result.data, count=getattr(result, "count", None))

    async def _write(
        self,
        table: str,
        operation: str,
        build: t.Callable[[t.Any], t.Any],
        returning: Columns | None,
    ) -> DatabaseResponse[list[Row]]:
        try:
            result = await self._run(table, build)
        except ConfigurationError:
            raise
        except Exception as e:
            return DatabaseResponse(
                error=normalize_error(e, table=table, operation=operation),
            )
        rows = result.data or []
        rows = [rows] if isinstance(rows, dict) else list(rows)
        selection = normalize_columns(returning)
        if selection:
            rows = [project(row, selection) for row in rows]
        return DatabaseResponse(data=rows, count=len(rows))

    async def insert(
        self,
        table: str,
        data: Row | list[Row],
        *,
        returning: Columns | None = None,
        upsert: bool = False,
    ) -> DatabaseResponse[list[Row]]:
        operation = "upsert" if upsert else "insert"
        return await self._write(
            table,
            operation,
            lambda query: query.upsert(data) if upsert else query.insert(data),
            returning,
        )

    async def update(
        self,
        table: str,
        data: Row,
        filters: t.Sequence[Filter],
        *,
        returning: Columns | None = None,
    ) -> DatabaseResponse[list[Row]]:
        if rejected := self._reject_unfiltered(table, "update", filters):
            return rejected
        return await self._write(
            table,
            "update",
            lambda query: apply_filters(query.update(data), filters),
            returning,
        )

    async def delete(
        self,
        table: str,
        filters: t.Sequence[Filter],
        *,
        returning: Columns | None = None,
    ) -> DatabaseResponse[list[Row]]:
        if rejected := self._reject_unfiltered(table, "delete", filters):
            return rejected
        return await self._write(
            table,
            "delete",
            lambda query: apply_filters(query.delete(), filters),
            returning,
        )

    async def get_current_user(self) -> Principal | None:
        try:
            client = await self.get_client()
            response = await client.auth.get_user()
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Failed to resolve current user: {normalize_error(e)!r}")
            return None
        user = getattr(response, "user", None)
        if user is None:
            return None
        return Principal(
            id=str(user.id),
            email=getattr(user, "email", None),
            metadata=dict(getattr(user, "user_metadata", None) or {}),
        )

    async def is_connected(self) -> bool:
        try:
            await self._run(
                self.settings.health_table,
                lambda query: query.select("*").limit(1),
            )
        except Exception as e:
            logger.debug(f"Health probe failed: {e}")
            return False
        return True

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: t.Sequence[Filter] | None = None,
    ) -> Unsubscribe:
        client = await self.get_client()
        local_filters = tuple(filters or ())
        schema = self.settings.schema_name

        def on_change(payload: t.Any) -> None:
            event = _change_event(table, payload)
            row = event["new"] or event["old"]
            if local_filters and row and not matches_filters(row, local_filters):
                return
            callback(event)

        channel = client.channel(f"{schema}:{table}")
        options: dict[str, t.Any] = {"schema": schema, "table": table}
        if server_filter := _realtime_filter(local_filters):
            options["filter"] = server_filter
        channel.on_postgres_changes("*", callback=on_change, **options)
        await channel.subscribe()

        async def unsubscribe() -> None:
            await client.remove_channel(channel)

        self.register_resource(unsubscribe)
        return unsubscribe

    async def _cleanup_resources(self) -> None:
        self._client = None
