"""Configuration for pytest testing framework."""

import pytest

from dashdata.adapters.database import MemoryDatabaseClient, Principal
from dashdata.repository import CacheSettings, CacheStore, RequestCoordinator


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line("markers", "unit: mark test as a fast isolated unit test")
    config.addinivalue_line(
        "markers", "integration: mark test as exercising several components"
    )
    config.addinivalue_line(
        "markers", "external: mark test as requiring external service"
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_dependency_container():
    """Reset the dependency container before each test to ensure test isolation."""
    from dashdata.depends import depends

    depends.clear()
    yield
    depends.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> CacheStore:
    return CacheStore(CacheSettings(ttl=300), clock=clock)


@pytest.fixture
def coordinator() -> RequestCoordinator:
    return RequestCoordinator()


@pytest.fixture
def alice() -> Principal:
    return Principal(id="alice", email="alice@example.com")


@pytest.fixture
def bob() -> Principal:
    return Principal(id="bob")


@pytest.fixture
def client(alice: Principal) -> MemoryDatabaseClient:
    rows = [
        ("t1", "alice", "Read", "open", 2),
        ("t2", "alice", "Write", "done", 1),
        ("t3", "bob", "Run", "open", 3),
    ]
    return MemoryDatabaseClient(
        tables={
            "tasks": [
                {
                    "id": id_,
                    "user_id": owner,
                    "title": title,
                    "status": status,
                    "priority": priority,
                }
                for id_, owner, title, status, priority in rows
            ],
        },
        user=alice,
    )
