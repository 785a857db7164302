"""Tests for request deduplication and debouncing."""

import asyncio

import pytest

from dashdata.repository import CoordinatorSettings, RequestCoordinator


class Producer:
    """Counts invocations and optionally blocks until released."""

    def __init__(self, value: object = "rows", gated: bool = False) -> None:
        self.value = value
        self.calls = 0
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def __call__(self) -> object:
        self.calls += 1
        self.started.set()
        await self.gate.wait()
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


@pytest.mark.unit
@pytest.mark.asyncio
class TestDeduplication:
    async def test_concurrent_callers_share_one_execution(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        producer = Producer(gated=True)

        async def release() -> None:
            await producer.started.wait()
            producer.gate.set()

        results = await asyncio.gather(
            coordinator.run("k", producer),
            coordinator.run("k", producer),
            coordinator.run("k", producer),
            release(),
        )

        assert results[:3] == ["rows", "rows", "rows"]
        assert producer.calls == 1
        assert coordinator.metrics.joins == 2
        assert not coordinator.pending("k")

    async def test_distinct_keys_run_independently(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        a, b = Producer("a"), Producer("b")
        assert await asyncio.gather(
            coordinator.run("a", a),
            coordinator.run("b", b),
        ) == ["a", "b"]
        assert a.calls == b.calls == 1

    async def test_call_after_resolution_starts_new_request(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        producer = Producer()
        await coordinator.run("k", producer)
        await coordinator.run("k", producer)
        assert producer.calls == 2
        assert coordinator.metrics.executions == 2

    async def test_rejection_reaches_every_caller_and_releases_key(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        producer = Producer(ValueError("backend down"))

        results = await asyncio.gather(
            coordinator.run("k", producer),
            coordinator.run("k", producer),
            return_exceptions=True,
        )

        assert all(isinstance(r, ValueError) for r in results)
        assert producer.calls == 1
        assert coordinator.metrics.failures == 1
        assert len(coordinator) == 0

        retry = Producer("ok")
        assert await coordinator.run("k", retry) == "ok"

    async def test_cancelling_one_caller_keeps_shared_request(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        producer = Producer(gated=True)
        first = asyncio.create_task(coordinator.run("k", producer))
        second = asyncio.create_task(coordinator.run("k", producer))
        await producer.started.wait()

        first.cancel()
        producer.gate.set()

        assert await second == "rows"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert producer.calls == 1


@pytest.mark.unit
@pytest.mark.asyncio
class TestDebounce:
    async def test_rapid_calls_collapse_to_latest_producer(self) -> None:
        coordinator = RequestCoordinator(CoordinatorSettings(debounce=0.01))
        producers = [Producer(name) for name in ("a", "b", "c")]

        results = await asyncio.gather(
            *(coordinator.run("k", p) for p in producers),
        )

        assert results == ["c", "c", "c"]
        assert [p.calls for p in producers] == [0, 0, 1]
        assert coordinator.metrics.debounced == 2
        assert coordinator.metrics.executions == 1

    async def test_per_call_window_overrides_settings(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        first, second = Producer("first"), Producer("second")
        results = await asyncio.gather(
            coordinator.run("k", first, debounce=0.01),
            coordinator.run("k", second, debounce=0.01),
        )
        assert results == ["second", "second"]
        assert first.calls == 0

    async def test_negative_window_rejected(self) -> None:
        with pytest.raises(ValueError):
            CoordinatorSettings(debounce=-1)


@pytest.mark.unit
@pytest.mark.asyncio
class TestClear:
    async def test_clear_cancels_scheduled_requests(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        producer = Producer()
        waiter = asyncio.create_task(coordinator.run("k", producer, debounce=10))
        await asyncio.sleep(0)
        assert coordinator.pending_keys() == ["k"]

        assert coordinator.clear() == 1

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert producer.calls == 0
        assert len(coordinator) == 0

    async def test_clear_detaches_in_flight_requests(
        self,
        coordinator: RequestCoordinator,
    ) -> None:
        old = Producer("old", gated=True)
        waiter = asyncio.create_task(coordinator.run("k", old))
        await old.started.wait()

        coordinator.clear()
        fresh = Producer("fresh")
        assert await coordinator.run("k", fresh) == "fresh"

        old.gate.set()
        assert await waiter == "old"
