from abc import ABC, abstractmethod

import typing as t
from dataclasses import dataclass
from pydantic import BaseModel, Field, SecretStr, field_validator

from dashdata.cleanup import CleanupMixin
from dashdata.config import Settings
from dashdata.errors import DatabaseError, DatabaseErrorType
from dashdata.logger import get_logger
from dashdata.query import Columns, Filter, OrderBy, Query, QueryOperation

logger = get_logger(__name__)

Row = dict[str, t.Any]
ChangeCallback = t.Callable[[dict[str, t.Any]], t.Any]
Unsubscribe = t.Callable[[], t.Awaitable[None]]


class DatabaseSettings(Settings):
    """Connection settings for the backend adapter."""

    provider: str = Field(default="memory", description="memory or supabase")
    url: str | None = Field(default=None, description="Backend service URL")
    api_key: SecretStr | None = Field(default=None, description="Public API key")
    service_key: SecretStr | None = Field(
        default=None,
        description="Service role key, preferred over api_key when set",
    )
    schema_name: str = Field(default="public", description="Realtime schema")
    health_table: str = Field(
        default="_health",
        description="Table probed by is_connected()",
    )
    debug: bool = False

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "supabase"):
            msg = f"Unsupported database provider: {v}"
            raise ValueError(msg)
        return v

    @property
    def key(self) -> str | None:
        secret = self.service_key or self.api_key
        return secret.get_secret_value() if secret else None


class Principal(BaseModel):
    """The authenticated identity on whose behalf data is accessed."""

    id: str
    email: str | None = None
    metadata: dict[str, t.Any] = Field(default_factory=dict)


@dataclass
class DatabaseResponse[T]:
    """Result of an adapter call. Exactly one of ``data`` / ``error`` is meaningful."""

    data: T | None = None
    error: DatabaseError | None = None
    count: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T | None:
        """Return ``data`` or raise the normalized error."""
        if self.error is not None:
            raise self.error
        return self.data


async def _noop_unsubscribe() -> None:
    return None


class DatabaseClient(CleanupMixin, ABC):
    """Backend independent CRUD contract.

    Implementations never raise backend errors: they normalize them into a
    ``DatabaseError`` and return it in ``DatabaseResponse.error``. Filters
    combine with AND. A failed call leaves no partial effect.
    """

    provider: str = "base"

    def __init__(self, settings: DatabaseSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or DatabaseSettings()

    @abstractmethod
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
        """Read rows. With ``single`` the data is one row, not a list.

        ``offset`` skips that many matching rows. When reported, ``count`` is
        the number of rows matching the filters before limit and offset.
        """

    @abstractmethod
    async def insert(
        self,
        table: str,
        data: Row | list[Row],
        *,
        returning: Columns | None = None,
        upsert: bool = False,
    ) -> DatabaseResponse[list[Row]]: ...

    @abstractmethod
    async def update(
        self,
        table: str,
        data: Row,
        filters: t.Sequence[Filter],
        *,
        returning: Columns | None = None,
    ) -> DatabaseResponse[list[Row]]: ...

    @abstractmethod
    async def delete(
        self,
        table: str,
        filters: t.Sequence[Filter],
        *,
        returning: Columns | None = None,
    ) -> DatabaseResponse[list[Row]]: ...

    @abstractmethod
    async def get_current_user(self) -> Principal | None: ...

    @abstractmethod
    async def is_connected(self) -> bool: ...

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: t.Sequence[Filter] | None = None,
    ) -> Unsubscribe:
        """Listen for row changes on ``table``.

        Backends without realtime support log a warning and return an
        unsubscribe function that does nothing.
        """
        logger.warning(f"Realtime subscriptions not supported by {self.provider}")
        return _noop_unsubscribe

    async def execute(self, query: Query) -> DatabaseResponse[t.Any]:
        """Dispatch a built query to the matching operation."""
        match query.operation:
            case QueryOperation.SELECT:
                return await self.select(
                    query.table,
                    columns=query.columns,
                    filters=query.filters,
                    order_by=query.order_by,
                    limit=query.limit,
                    offset=query.offset,
                    single=query.single,
                )
            case QueryOperation.INSERT | QueryOperation.UPSERT:
                return await self.insert(
                    query.table,
                    query.data,
                    returning=query.columns,
                    upsert=query.operation is QueryOperation.UPSERT,
                )
            case QueryOperation.UPDATE:
                return await self.update(
                    query.table,
                    query.data,
                    query.filters,
                    returning=query.columns,
                )
            case QueryOperation.DELETE:
                return await self.delete(
                    query.table,
                    query.filters,
                    returning=query.columns,
                )
        msg = f"Unsupported operation: {query.operation}"
        return DatabaseResponse(
            error=DatabaseError(msg, DatabaseErrorType.VALIDATION_ERROR),
        )

    @staticmethod
    def _reject_unfiltered(
        table: str,
        operation: str,
        filters: t.Sequence[Filter] | None,
    ) -> DatabaseResponse[list[Row]] | None:
        if filters:
            return None
        msg = f"{operation} on {table} requires at least one filter"
        return DatabaseResponse(
            error=DatabaseError(
                msg,
                DatabaseErrorType.VALIDATION_ERROR,
                table=table,
                operation=operation,
            ),
        )
