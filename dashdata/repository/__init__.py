"""Repository layer for dashdata.

Provides the per-session data-access services:
- TTL cache with write-through patching
- Request deduplication and debouncing
- Async operation state with transient-error retries
- Typed CRUD facades and the session that wires them
"""

from .cache import (
    CacheEntry,
    CacheKey,
    CacheMetrics,
    CacheSettings,
    CacheStats,
    CacheStore,
)
from .coordinator import (
    CoordinatorMetrics,
    CoordinatorSettings,
    PendingRequest,
    RequestCoordinator,
)
from .facade import CrudFacade, FacadeSettings, PageInfo, principal_id
from .service import DataSession, get_session
from .state import (
    AsyncSnapshot,
    AsyncState,
    AsyncStatus,
    CombinedAsyncState,
    RetryPolicy,
    RetrySettings,
    RetryStrategy,
    combine_async_states,
)

__all__ = [
    "AsyncSnapshot",
    "AsyncState",
    "AsyncStatus",
    "CacheEntry",
    "CacheKey",
    "CacheMetrics",
    "CacheSettings",
    "CacheStats",
    "CacheStore",
    "CombinedAsyncState",
    "CoordinatorMetrics",
    "CoordinatorSettings",
    "CrudFacade",
    "DataSession",
    "FacadeSettings",
    "PageInfo",
    "PendingRequest",
    "RequestCoordinator",
    "RetryPolicy",
    "RetrySettings",
    "RetryStrategy",
    "combine_async_states",
    "get_session",
    "principal_id",
]
