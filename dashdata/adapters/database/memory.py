"""In-process backend used for tests, demos and offline sessions."""

import asyncio
import copy
import inspect
from datetime import UTC, datetime
from uuid import uuid4

import typing as t
from dataclasses import dataclass, field

from dashdata.errors import DatabaseError, DatabaseErrorType
from dashdata.logger import get_logger
from dashdata.query import Columns, Filter, OrderBy, normalize_columns
from dashdata.records import apply_query, matches_filters, project

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


@dataclass
class CallRecord:
    operation: str
    table: str
    filters: tuple[Filter, ...] = ()
    data: t.Any = None


@dataclass(eq=False)
class _Subscription:
    table: str
    callback: ChangeCallback
    filters: tuple[Filter, ...] = field(default_factory=tuple)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class MemoryDatabaseClient(DatabaseClient):
    """Dict-of-lists backend implementing the full operator set.

    Every call is recorded in ``calls`` so tests can count backend traffic.
    ``fail_next`` queues a normalized error for the next call of an
    operation. Calls yield to the event loop once, like a network round trip.
    """

    provider = "memory"

    def __init__(
        self,
        settings: DatabaseSettings | None = None,
        *,
        tables: dict[str, list[Row]] | None = None,
        user: Principal | None = None,
        latency: float = 0.0,
        id_column: str = "id",
    ) -> None:
        super().__init__(settings)
        self.tables: dict[str, list[Row]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.user = user
        self.latency = latency
        self.id_column = id_column
        self.connected = True
        self.calls: list[CallRecord] = []
        self._failures: dict[str, list[DatabaseError]] = {}
        self._subscriptions: list[_Subscription] = []
        self._callback_tasks: set[asyncio.Future[t.Any]] = set()

    def fail_next(self, operation: str, error: DatabaseError) -> None:
        """Make the next ``operation`` call return ``error``."""
        self._failures.setdefault(operation, []).append(error)

    def count_calls(
        self,
        operation: str | None = None,
        table: str | None = None,
    ) -> int:
        return sum(
            1
            for call in self.calls
            if (operation is None or call.operation == operation)
            and (table is None or call.table == table)
        )

    async def _enter(
        self,
        operation: str,
        table: str,
        filters: t.Sequence[Filter] | None = None,
        data: t.Any = None,
    ) -> DatabaseError | None:
        self.calls.append(CallRecord(operation, table, tuple(filters or ()), data))
        await asyncio.sleep(self.latency)
        if not self.connected:
            msg = "Backend is not reachable"
            return DatabaseError(
                msg,
                DatabaseErrorType.CONNECTION_ERROR,
                table=table,
                operation=operation,
            )
        queued = self._failures.get(operation)
        if queued:
            return queued.pop(0)
        return None

    def _rows(self, table: str) -> list[Row]:
        return self.tables.setdefault(table, [])

    @staticmethod
    def _shape(rows: list[Row], columns: Columns | None) -> list[Row]:
        selection = normalize_columns(columns)
        return [project(copy.deepcopy(row), selection) for row in rows]

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
        error = await self._enter("select", table, filters)
        if error:
            return DatabaseResponse(error=error)

        matched = apply_query(self._rows(table), filters or (), order_by or ())
        shaped = self._shape(apply_query(matched, limit=limit, offset=offset), columns)
        if not single:
            return DatabaseResponse(data=shaped, count=len(matched))

        if not shaped:
            msg = f"No row in {table} matches the given filters"
            return DatabaseResponse(
                error=DatabaseError(
                    msg,
                    DatabaseErrorType.NOT_FOUND,
                    table=table,
                    operation="select",
                ),
            )
        if len(shaped) > 1:
            msg = f"Expected a single row from {table}, got {len(shaped)}"
            return DatabaseResponse(
                error=DatabaseError(
                    msg,
                    DatabaseErrorType.VALIDATION_ERROR,
                    table=table,
                    operation="select",
                ),
            )
        return DatabaseResponse(data=shaped[0], count=1)

    async def insert(
        self,
        table: str,
        data: Row | list[Row],
        *,
        returning: Columns | None = None,
        upsert: bool = False,
    ) -> DatabaseResponse[list[Row]]:
        operation = "upsert" if upsert else "insert"
        error = await self._enter(operation, table, data=data)
        if error:
            return DatabaseResponse(error=error)

        payload = [data] if isinstance(data, dict) else list(data)
        rows = self._rows(table)
        existing = {row.get(self.id_column): i for i, row in enumerate(rows)}

        for item in payload:
            item_id = item.get(self.id_column)
            if item_id is not None and item_id in existing and not upsert:
                msg = f"Duplicate key {self.id_column}={item_id} in {table}"
                return DatabaseResponse(
                    error=DatabaseError(
                        msg,
                        DatabaseErrorType.CONFLICT,
                        table=table,
                        operation=operation,
                    ),
                )

        written: list[tuple[Row | None, Row]] = []
        for item in payload:
            stamp = _now()
            item_id = item.get(self.id_column)
            if upsert and item_id is not None and item_id in existing:
                index = existing[item_id]
                old = rows[index]
                new = {**old, **copy.deepcopy(item), "updated_at": stamp}
                rows[index] = new
                written.append((old, new))
                continue
            new = {
                self.id_column: uuid4().hex,
                "created_at": stamp,
                "updated_at": stamp,
                **copy.deepcopy(item),
            }
            rows.append(new)
            existing[new[self.id_column]] = len(rows) - 1
            written.append((None, new))

        for old, new in written:
            self._notify(table, "INSERT" if old is None else "UPDATE", new, old)
        result = self._shape([new for _, new in written], returning)
        return DatabaseResponse(data=result, count=len(result))

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
        error = await self._enter("update", table, filters, data)
        if error:
            return DatabaseResponse(error=error)

        changes = {k: v for k, v in data.items() if k != self.id_column}
        rows = self._rows(table)
        updated: list[tuple[Row, Row]] = []
        for index, row in enumerate(rows):
            if matches_filters(row, filters):
                new = {**row, **copy.deepcopy(changes), "updated_at": _now()}
                rows[index] = new
                updated.append((row, new))

        for old, new in updated:
            self._notify(table, "UPDATE", new, old)
        result = self._shape([new for _, new in updated], returning)
        return DatabaseResponse(data=result, count=len(result))

    async def delete(
        self,
        table: str,
        filters: t.Sequence[Filter],
        *,
        returning: Columns | None = None,
    ) -> DatabaseResponse[list[Row]]:
        if rejected := self._reject_unfiltered(table, "delete", filters):
            return rejected
        error = await self._enter("delete", table, filters)
        if error:
            return DatabaseResponse(error=error)

        rows = self._rows(table)
        removed = [row for row in rows if matches_filters(row, filters)]
        self.tables[table] = [row for row in rows if not matches_filters(row, filters)]

        for old in removed:
            self._notify(table, "DELETE", None, old)
        result = self._shape(removed, returning)
        return DatabaseResponse(data=result, count=len(result))

    async def get_current_user(self) -> Principal | None:
        return self.user

    async def is_connected(self) -> bool:
        return self.connected

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: t.Sequence[Filter] | None = None,
    ) -> Unsubscribe:
        subscription = _Subscription(table, callback, tuple(filters or ()))
        self._subscriptions.append(subscription)

        async def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        self.register_resource(unsubscribe)
        return unsubscribe

    def _notify(self, table: str, event: str, new: Row | None, old: Row | None) -> None:
        for subscription in list(self._subscriptions):
            if subscription.table != table:
                continue
            if subscription.filters and not matches_filters(
                new if new is not None else old,
                subscription.filters,
            ):
                continue
            payload = {
                "event": event,
                "table": table,
                "new": copy.deepcopy(new),
                "old": copy.deepcopy(old),
            }
            try:
                result = subscription.callback(payload)
            except Exception:
                logger.exception(f"Change callback on {table} failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_tasks.discard)

    async def _cleanup_resources(self) -> None:
        self._subscriptions.clear()
        self.connected = False
