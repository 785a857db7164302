"""Request deduplication and debouncing.

At most one producer runs per key at a time. Callers arriving while a
request is pending share its result. With a debounce window, rapid calls
collapse into one trailing execution of the most recent producer.
"""

import asyncio
from collections.abc import Awaitable, Callable

import typing as t
from dataclasses import dataclass, field
from pydantic import Field

from dashdata.config import Settings
from dashdata.logger import get_logger

logger = get_logger(__name__)


class CoordinatorSettings(Settings):
    debounce: float = Field(
        default=0.0,
        ge=0,
        description="Debounce window in seconds; 0 disables debouncing",
    )


@dataclass
class CoordinatorMetrics:
    executions: int = 0
    joins: int = 0
    debounced: int = 0
    failures: int = 0


@dataclass(eq=False)
class PendingRequest:
    """A scheduled or in-flight request shared by every caller of ``key``."""

    key: t.Hashable
    future: asyncio.Future[t.Any]
    producer: Callable[[], Awaitable[t.Any]]
    task: asyncio.Task[None] | None = None
    started: bool = False
    callers: int = 1
    created: float = field(default=0.0)


def _consume(future: asyncio.Future[t.Any]) -> None:
    # mark the exception retrieved when every caller stopped awaiting
    if not future.cancelled():
        future.exception()


class RequestCoordinator:
    """Deduplicates concurrent requests by key.

    Callers await through ``asyncio.shield``: cancelling one caller never
    cancels a request other callers share. The key is released before the
    result is delivered, so a call made after resolution starts a new
    request.
    """

    def __init__(self, settings: CoordinatorSettings | None = None) -> None:
        self.settings = settings or CoordinatorSettings()
        self.metrics = CoordinatorMetrics()
        self._pending: dict[t.Hashable, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self, key: t.Hashable) -> bool:
        return key in self._pending

    def pending_keys(self) -> list[t.Hashable]:
        return list(self._pending)

    async def run[T](
        self,
        key: t.Hashable,
        producer: Callable[[], Awaitable[T]],
        *,
        debounce: float | None = None,
    ) -> T:
        """Run ``producer`` for ``key`` unless a request is already pending.

        Args:
            key: Coordination key, usually a ``CacheKey``.
            producer: Zero-argument coroutine function performing the work.
            debounce: Window in seconds overriding ``settings.debounce``.

        Returns:
            The producer's result, shared by every caller of the same request.
        """
        window = self.settings.debounce if debounce is None else debounce
        pending = self._pending.get(key)

        if pending is not None:
            pending.callers += 1
            if not pending.started and window > 0:
                pending.producer = producer
                self._reschedule(pending, window)
                self.metrics.debounced += 1
                logger.debug(f"Debounced request: {key}")
            else:
                self.metrics.joins += 1
                logger.debug(f"Joined pending request: {key}")
            return await asyncio.shield(pending.future)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()
        future.add_done_callback(_consume)
        pending = PendingRequest(
            key=key,
            future=future,
            producer=producer,
            created=loop.time(),
        )
        self._pending[key] = pending
        self._reschedule(pending, window)
        return await asyncio.shield(future)

    def _reschedule(self, pending: PendingRequest, delay: float) -> None:
        if pending.task is not None:
            pending.task.cancel()
        pending.task = asyncio.create_task(self._execute(pending, delay))

    def _release(self, pending: PendingRequest) -> None:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]

    async def _execute(self, pending: PendingRequest, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        pending.started = True
        self.metrics.executions += 1
        future = pending.future
        try:
            result = await pending.producer()
        except asyncio.CancelledError:
            self._release(pending)
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            self.metrics.failures += 1
            self._release(pending)
            if not future.done():
                future.set_exception(e)
        else:
            self._release(pending)
            if not future.done():
                future.set_result(result)

    def clear(self) -> int:
        """Forget every pending request.

        Scheduled requests that have not started are cancelled along with
        their callers. In-flight requests keep running for the callers already
        waiting on them, but new calls start fresh.
        """
        count = len(self._pending)
        for pending in list(self._pending.values()):
            if not pending.started:
                if pending.task is not None:
                    pending.task.cancel()
                if not pending.future.done():
                    pending.future.cancel()
        self._pending.clear()
        return count
