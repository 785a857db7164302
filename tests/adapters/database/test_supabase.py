"""Tests for the Supabase adapter using a recording stand-in for the client."""

import typing as t
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from dashdata.adapters.database import (
    DatabaseSettings,
    SupabaseDatabaseClient,
    normalize_error,
)
from dashdata.adapters.database.supabase import apply_filters
from dashdata.errors import ConfigurationError, DatabaseError, DatabaseErrorType
from dashdata.query import Filter, FilterBuilder, OrderBy


class PostgrestError(Exception):
    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class FakeQuery:
    """Records builder calls the way postgrest request builders chain them."""

    def __init__(self, result: t.Any = None, error: Exception | None = None) -> None:
        self.calls: list[tuple] = []
        self.result = result
        self.error = error
        self._negate = False

    @property
    def not_(self) -> "FakeQuery":
        self._negate = True
        return self

    def __getattr__(self, name: str):
        def method(*args, **kwargs):
            prefix = "not." if self._negate else ""
            self._negate = False
            self.calls.append((prefix + name, args, kwargs))
            return self

        return method

    async def execute(self):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=self.result, count=None)


def make_client(query: FakeQuery) -> SupabaseDatabaseClient:
    backend = MagicMock()
    backend.table.return_value = query
    return SupabaseDatabaseClient(client=backend)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (PostgrestError("no rows", "PGRST116"), DatabaseErrorType.NOT_FOUND),
        (PostgrestError("duplicate key", "23505"), DatabaseErrorType.CONFLICT),
        (PostgrestError("denied", "42501"), DatabaseErrorType.PERMISSION_ERROR),
        (
            PostgrestError("JWT expired", "PGRST301"),
            DatabaseErrorType.AUTHENTICATION_ERROR,
        ),
        (PostgrestError("invalid jwt"), DatabaseErrorType.AUTHENTICATION_ERROR),
        (PostgrestError("null value", "23502"), DatabaseErrorType.VALIDATION_ERROR),
        (PostgrestError("bad uuid", "22P02"), DatabaseErrorType.VALIDATION_ERROR),
        (PostgrestError("Rate limit exceeded"), DatabaseErrorType.RATE_LIMIT),
        (PostgrestError("network unreachable"), DatabaseErrorType.CONNECTION_ERROR),
        (httpx.ConnectError("refused"), DatabaseErrorType.CONNECTION_ERROR),
        (httpx.ReadTimeout("slow"), DatabaseErrorType.CONNECTION_ERROR),
        (RuntimeError("something odd"), DatabaseErrorType.UNKNOWN_ERROR),
    ],
)
def test_normalize_error_taxonomy(
    exc: Exception,
    expected: DatabaseErrorType,
) -> None:
    error = normalize_error(exc, table="tasks", operation="select")
    assert error.type is expected
    assert error.original_error is exc
    assert error.table == "tasks"
    assert error.message


@pytest.mark.unit
@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, DatabaseErrorType.AUTHENTICATION_ERROR),
        (403, DatabaseErrorType.PERMISSION_ERROR),
        (429, DatabaseErrorType.RATE_LIMIT),
    ],
)
def test_normalize_error_uses_http_status(
    status: int,
    expected: DatabaseErrorType,
) -> None:
    request = httpx.Request("GET", "https://example.supabase.co/rest/v1/tasks")
    response = httpx.Response(status, request=request)
    exc = httpx.HTTPStatusError("failed", request=request, response=response)
    assert normalize_error(exc).type is expected


def test_normalize_error_passes_database_errors_through() -> None:
    error = DatabaseError("x", DatabaseErrorType.CONFLICT)
    assert normalize_error(error) is error


def test_apply_filters_translates_operators() -> None:
    query = FakeQuery()
    filters = (
        FilterBuilder()
        .eq("a", 1)
        .neq("b", 2)
        .ilike("c", "%x%")
        .in_("d", {"v"})
        .is_null("e")
        .is_not_null("f")
        .build()
    )
    filters.append(Filter("g", "is", True))
    filters.append(Filter("h", "not", ["x", "y"]))
    filters.append(Filter("i", "not", "z"))

    apply_filters(query, filters)

    assert query.calls == [
        ("eq", ("a", 1), {}),
        ("neq", ("b", 2), {}),
        ("ilike", ("c", "%x%"), {}),
        ("in_", ("d", ["v"]), {}),
        ("is_", ("e", "null"), {}),
        ("not.is_", ("f", "null"), {}),
        ("is_", ("g", "true"), {}),
        ("not.in_", ("h", ["x", "y"]), {}),
        ("not.eq", ("i", "z"), {}),
    ]


@pytest.mark.unit
@pytest.mark.asyncio
class TestSupabaseClient:
    async def test_select_builds_query(self) -> None:
        query = FakeQuery(result=[{"id": "t1"}])
        client = make_client(query)

        response = await client.select(
            "tasks",
            columns=["id"],
            filters=[Filter("user_id", "eq", "alice")],
            order_by=[OrderBy("created_at", ascending=False)],
            limit=5,
        )

        assert response.data == [{"id": "t1"}]
        assert query.calls == [
            ("select", ("id",), {}),
            ("eq", ("user_id", "alice"), {}),
            ("order", ("created_at",), {"desc": True}),
            ("limit", (5,), {}),
        ]

    async def test_select_page_uses_range_and_exact_count(self) -> None:
        query = FakeQuery(result=[{"id": "t3"}])
        client = make_client(query)

        await client.select("tasks", limit=2, offset=2)

        assert query.calls == [
            ("select", ("*",), {"count": "exact"}),
            ("range", (2, 3), {}),
        ]

    async def test_select_failure_is_normalized(self) -> None:
        client = make_client(FakeQuery(error=PostgrestError("no rows", "PGRST116")))
        response = await client.select("tasks", single=True)
        assert response.data is None
        assert response.error.type is DatabaseErrorType.NOT_FOUND
        assert response.error.operation == "select"

    async def test_insert_and_upsert(self) -> None:
        query = FakeQuery(result=[{"id": "n1", "title": "x", "secret": 1}])
        client = make_client(query)

        inserted = await client.insert("tasks", {"title": "x"}, returning="id,title")
        await client.insert("tasks", {"id": "n1"}, upsert=True)

        assert inserted.data == [{"id": "n1", "title": "x"}]
        assert [c[0] for c in query.calls] == ["insert", "upsert"]

    async def test_update_and_delete_apply_filters(self) -> None:
        query = FakeQuery(result={"id": "t1"})
        client = make_client(query)
        by_id = [Filter("id", "eq", "t1")]

        updated = await client.update("tasks", {"title": "y"}, by_id)
        await client.delete("tasks", by_id)

        assert updated.data == [{"id": "t1"}]
        assert [c[0] for c in query.calls] == ["update", "eq", "delete", "eq"]

    async def test_unfiltered_delete_never_reaches_backend(self) -> None:
        query = FakeQuery()
        client = make_client(query)
        response = await client.delete("tasks", [])
        assert response.error.type is DatabaseErrorType.VALIDATION_ERROR
        assert query.calls == []

    async def test_write_conflict(self) -> None:
        error = PostgrestError("duplicate key value", "23505")
        client = make_client(FakeQuery(error=error))
        response = await client.insert("tasks", {"id": "t1"})
        assert response.error.type is DatabaseErrorType.CONFLICT
        assert response.error.table == "tasks"

    async def test_missing_credentials_raise_configuration_error(self) -> None:
        client = SupabaseDatabaseClient(DatabaseSettings(provider="supabase"))
        with pytest.raises(ConfigurationError):
            await client.select("tasks")

    async def test_current_user(self) -> None:
        backend = MagicMock()
        user = SimpleNamespace(id=42, email="a@b.c", user_metadata={"role": "x"})
        backend.auth.get_user = AsyncMock(return_value=SimpleNamespace(user=user))
        client = SupabaseDatabaseClient(client=backend)

        principal = await client.get_current_user()

        assert principal.id == "42"
        assert principal.metadata == {"role": "x"}

    async def test_no_session_means_no_user(self) -> None:
        backend = MagicMock()
        backend.auth.get_user = AsyncMock(return_value=None)
        client = SupabaseDatabaseClient(client=backend)
        assert await client.get_current_user() is None

    async def test_is_connected(self) -> None:
        assert await make_client(FakeQuery(result=[])).is_connected()
        down = make_client(FakeQuery(error=httpx.ConnectError("refused")))
        assert not await down.is_connected()

    async def test_subscribe_filters_events(self) -> None:
        backend = MagicMock()
        backend.remove_channel = AsyncMock()
        channel = backend.channel.return_value
        channel.subscribe = AsyncMock()
        client = SupabaseDatabaseClient(client=backend)
        events: list[dict] = []

        unsubscribe = await client.subscribe(
            "tasks",
            events.append,
            [Filter("user_id", "eq", "alice"), Filter("status", "eq", "open")],
        )

        _, kwargs = channel.on_postgres_changes.call_args
        assert kwargs["filter"] == "user_id=eq.alice"
        handler = kwargs["callback"]
        for status in ("open", "done"):
            record = {"user_id": "alice", "status": status}
            handler({"data": {"type": "INSERT", "record": record}})

        assert len(events) == 1
        assert events[0]["event"] == "INSERT"

        await unsubscribe()
        backend.remove_channel.assert_awaited_once_with(channel)
