from ._base import (
    ChangeCallback,
    DatabaseClient,
    DatabaseResponse,
    DatabaseSettings,
    Principal,
    Row,
    Unsubscribe,
)
from .memory import MemoryDatabaseClient
from .supabase import SupabaseDatabaseClient, normalize_error

__all__ = [
    "ChangeCallback",
    "DatabaseClient",
    "DatabaseResponse",
    "DatabaseSettings",
    "MemoryDatabaseClient",
    "Principal",
    "Row",
    "SupabaseDatabaseClient",
    "Unsubscribe",
    "create_database_client",
    "normalize_error",
]

_PROVIDERS: dict[str, type[DatabaseClient]] = {
    "memory": MemoryDatabaseClient,
    "supabase": SupabaseDatabaseClient,
}


def create_database_client(settings: DatabaseSettings | None = None) -> DatabaseClient:
    """Instantiate the adapter named by ``settings.provider``."""
    settings = settings or DatabaseSettings()
    return _PROVIDERS[settings.provider](settings)
