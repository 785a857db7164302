"""Vendor-agnostic data-access layer for the personal dashboard."""

from .errors import ConfigurationError, DatabaseError, DatabaseErrorType
from .config import AppSettings, Settings
from .depends import depends
from .logger import get_logger, setup_logging
from .query import (
    Filter,
    FilterBuilder,
    FilterOperator,
    OrderBy,
    Query,
    QueryBuilder,
    QueryOperation,
)
from .adapters.database import (
    DatabaseClient,
    DatabaseResponse,
    DatabaseSettings,
    MemoryDatabaseClient,
    Principal,
    SupabaseDatabaseClient,
    create_database_client,
)
from .repository import (
    AsyncState,
    AsyncStatus,
    CacheKey,
    CacheStore,
    CrudFacade,
    DataSession,
    RequestCoordinator,
    RetryPolicy,
    combine_async_states,
)

__all__ = [
    "AppSettings",
    "AsyncState",
    "AsyncStatus",
    "CacheKey",
    "CacheStore",
    "ConfigurationError",
    "CrudFacade",
    "DataSession",
    "DatabaseClient",
    "DatabaseError",
    "DatabaseErrorType",
    "DatabaseResponse",
    "DatabaseSettings",
    "Filter",
    "FilterBuilder",
    "FilterOperator",
    "MemoryDatabaseClient",
    "OrderBy",
    "Principal",
    "Query",
    "QueryBuilder",
    "QueryOperation",
    "RequestCoordinator",
    "RetryPolicy",
    "Settings",
    "SupabaseDatabaseClient",
    "combine_async_states",
    "create_database_client",
    "depends",
    "get_logger",
    "setup_logging",
]
