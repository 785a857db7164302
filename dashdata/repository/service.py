"""Data session: per-process wiring of client, cache, coordinator and facades.

Provides:
- One ``CacheStore`` and ``RequestCoordinator`` shared by every facade
- Facade registry keyed by table
- Principal lifecycle: caches and pending work are dropped on change
- Dependency container registration of the session services
"""

import typing as t

from dashdata.adapters.database import (
    ChangeCallback,
    DatabaseClient,
    DatabaseSettings,
    Principal,
    Unsubscribe,
    create_database_client,
)
from dashdata.cleanup import CleanupMixin
from dashdata.depends import depends
from dashdata.errors import ConfigurationError
from dashdata.logger import get_logger
from dashdata.query import Filter

from .cache import CacheSettings, CacheStore
from .coordinator import CoordinatorSettings, RequestCoordinator
from .facade import CrudFacade, FacadeSettings
from .state import RetryPolicy, RetrySettings

logger = get_logger(__name__)


class DataSession(CleanupMixin):
    """Owns the shared data-access services of one user session.

    Example:
        >>> session = DataSession(MemoryDatabaseClient(user=Principal(id="u1")))
        >>> tasks = session.facade("tasks")
        >>> principal = await session.current_principal()
        >>> rows = await tasks.find_all(principal)
    """

    def __init__(
        self,
        client: DatabaseClient | None = None,
        *,
        cache: CacheStore | None = None,
        coordinator: RequestCoordinator | None = None,
        database_settings: DatabaseSettings | None = None,
        cache_settings: CacheSettings | None = None,
        coordinator_settings: CoordinatorSettings | None = None,
        retry: RetryPolicy | None = None,
        register: bool = True,
    ) -> None:
        super().__init__()
        self.client = client or create_database_client(database_settings)
        self.cache = cache or CacheStore(cache_settings)
        self.coordinator = coordinator or RequestCoordinator(coordinator_settings)
        self.retry = retry or RetryPolicy.from_settings(RetrySettings())
        self._facades: dict[str, CrudFacade[t.Any]] = {}
        self._principal: Principal | None = None
        self._resolved = False
        if register:
            self.register()

    def register(self) -> None:
        """Expose the session services through the dependency container."""
        depends.set(DatabaseClient, self.client)
        depends.set(CacheStore, self.cache)
        depends.set(RequestCoordinator, self.coordinator)
        depends.set(DataSession, self)

    def facade[T](
        self,
        table: str,
        *,
        model: type[T] | None = None,
        settings: FacadeSettings | None = None,
    ) -> CrudFacade[T]:
        """Return the facade of ``table``, creating it on first use."""
        existing = self._facades.get(table)
        if existing is not None:
            if model is not None and existing.model not in (None, model):
                msg = (
                    f"Facade for {table} already registered with model "
                    f"{existing.model.__name__}"
                )
                raise ConfigurationError(msg, field_name="model")
            return t.cast("CrudFacade[T]", existing)

        facade: CrudFacade[T] = CrudFacade(
            self.client,
            table,
            model=model,
            cache=self.cache,
            coordinator=self.coordinator,
            settings=settings,
            retry=self.retry,
        )
        self._facades[table] = facade
        logger.debug(f"Registered facade for {table}")
        return facade

    def facades(self) -> list[CrudFacade[t.Any]]:
        return list(self._facades.values())

    @property
    def principal(self) -> Principal | None:
        return self._principal

    async def current_principal(self, *, refresh: bool = False) -> Principal | None:
        """Resolve the authenticated principal through the backend."""
        if refresh or not self._resolved:
            self.set_principal(await self.client.get_current_user())
        return self._principal

    def set_principal(self, principal: Principal | None) -> None:
        previous = self._principal
        self._principal = principal
        self._resolved = True
        old_id = previous.id if previous else None
        new_id = principal.id if principal else None
        if old_id != new_id:
            self._drop_session_data()
            logger.info(f"Principal changed: {old_id} -> {new_id}")

    def _drop_session_data(self) -> None:
        dropped = self.cache.invalidate_all()
        cancelled = self.coordinator.clear()
        for facade in self._facades.values():
            facade.reset()
        logger.debug(f"Dropped {dropped} cache entries, {cancelled} pending requests")

    async def sign_out(self) -> None:
        """Forget the principal and everything cached on its behalf."""
        self.set_principal(None)

    async def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filters: t.Sequence[Filter] | None = None,
    ) -> Unsubscribe:
        unsubscribe = await self.client.subscribe(table, callback, filters)
        self.register_resource(unsubscribe)
        return unsubscribe

    async def is_connected(self) -> bool:
        return await self.client.is_connected()

    async def _cleanup_resources(self) -> None:
        for facade in self._facades.values():
            await facade.close()
        self._facades.clear()
        self.cache.invalidate_all()
        self.coordinator.clear()
        await self.client.cleanup()


def get_session() -> DataSession:
    """Return the session registered in the dependency container."""
    return t.cast("DataSession", depends.get_sync(DataSession))
