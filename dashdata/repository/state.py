"""Unified async operation state.

Provides:
- ``AsyncState`` with an idle / loading / success / error lifecycle
- ``RetryPolicy`` retrying transient backend failures only
- Observer subscription and lifecycle callbacks
- ``combine_async_states`` for views backed by several operations
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum

import typing as t
from dataclasses import dataclass
from pydantic import Field

from dashdata.config import Settings
from dashdata.errors import (
    DatabaseError,
    DatabaseErrorType,
    error_message,
    is_transient,
)
from dashdata.logger import get_logger

logger = get_logger(__name__)

_sleep = asyncio.sleep


class AsyncStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class RetryStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetrySettings(Settings):
    """Default retry behaviour for facade reads."""

    retry_count: int = Field(
        default=0,
        ge=0,
        description="Retries after the first attempt",
    )
    retry_delay: float = Field(default=1.0, ge=0, description="Base delay in seconds")
    strategy: RetryStrategy = RetryStrategy.FIXED
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, gt=0)


@dataclass(frozen=True)
class RetryPolicy:
    """When and how long to wait before retrying a failed operation."""

    retry_count: int = 0
    retry_delay: float = 1.0
    strategy: RetryStrategy = RetryStrategy.FIXED
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            msg = "retry_count must not be negative"
            raise ValueError(msg)
        if self.retry_delay < 0:
            msg = "retry_delay must not be negative"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: RetrySettings | None = None) -> "RetryPolicy":
        settings = settings or RetrySettings()
        return cls(
            retry_count=settings.retry_count,
            retry_delay=settings.retry_delay,
            strategy=settings.strategy,
            backoff_factor=settings.backoff_factor,
            max_delay=settings.max_delay,
        )

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """``attempt`` is the 1-based number of the retry about to happen."""
        return attempt <= self.retry_count and is_transient(error)

    def delay_for(self, attempt: int) -> float:
        match self.strategy:
            case RetryStrategy.LINEAR:
                delay = self.retry_delay * attempt
            case RetryStrategy.EXPONENTIAL:
                delay = self.retry_delay * self.backoff_factor ** (attempt - 1)
            case _:
                delay = self.retry_delay
        return min(delay, self.max_delay)


@dataclass(frozen=True)
class AsyncSnapshot[T]:
    """Immutable view of an ``AsyncState``. Flags derive from ``status`` only."""

    status: AsyncStatus
    data: T | None = None
    error: str | None = None
    error_type: DatabaseErrorType | None = None

    @property
    def is_idle(self) -> bool:
        return self.status is AsyncStatus.IDLE

    @property
    def is_loading(self) -> bool:
        return self.status is AsyncStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self.status is AsyncStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status is AsyncStatus.ERROR


Listener = Callable[[AsyncSnapshot[t.Any]], t.Any]


class AsyncState[T]:
    """State container for one asynchronous operation.

    Invariants: ``success`` implies no error; ``error`` implies an error
    message, and ``data`` keeps the last successful value.

    Example:
        >>> state = AsyncState[list[dict]](retry=RetryPolicy(retry_count=2))
        >>> rows = await state.execute(client_call)
    """

    def __init__(
        self,
        initial_data: T | None = None,
        *,
        retry: RetryPolicy | None = None,
        on_start: Callable[[], t.Any] | None = None,
        on_success: Callable[[T], t.Any] | None = None,
        on_error: Callable[[str], t.Any] | None = None,
        on_finish: Callable[[], t.Any] | None = None,
        name: str = "state",
    ) -> None:
        self.name = name
        self.retry = retry or RetryPolicy()
        self.on_start = on_start
        self.on_success = on_success
        self.on_error = on_error
        self.on_finish = on_finish
        self._initial = initial_data
        self._status = AsyncStatus.IDLE
        self._data: T | None = initial_data
        self._error: str | None = None
        self._error_type: DatabaseErrorType | None = None
        self._exception: BaseException | None = None
        self._listeners: list[Listener] = []
        self._closed = False
        self._generation = 0
        self.attempts = 0

    def __repr__(self) -> str:
        return f"AsyncState(name={self.name!r}, status={self._status.value!r})"

    @property
    def status(self) -> AsyncStatus:
        return self._status

    @property
    def data(self) -> T | None:
        return self._data

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def error_type(self) -> DatabaseErrorType | None:
        return self._error_type

    @property
    def exception(self) -> BaseException | None:
        """The exception behind the current error, if any."""
        return self._exception

    @property
    def is_idle(self) -> bool:
        return self._status is AsyncStatus.IDLE

    @property
    def is_loading(self) -> bool:
        return self._status is AsyncStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self._status is AsyncStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self._status is AsyncStatus.ERROR

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> AsyncSnapshot[T]:
        return AsyncSnapshot(self._status, self._data, self._error, self._error_type)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(snapshot)`` after every change. Returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"{self.name}: state listener failed")

    def _callback(self, callback: Callable[..., t.Any] | None, *args: t.Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"{self.name}: lifecycle callback failed")

    def _apply(
        self,
        status: AsyncStatus,
        *,
        data: t.Any = ...,
        error: str | None = None,
        exception: BaseException | None = None,
    ) -> bool:
        if self._closed:
            return False
        self._status = status
        if data is not ...:
            self._data = data
        self._error = error
        self._exception = exception
        self._error_type = (
            exception.type if isinstance(exception, DatabaseError) else None
        )
        self._notify()
        return True

    def set_data(self, data: T | None) -> None:
        """Publish a value directly, clearing any error."""
        self._apply(AsyncStatus.SUCCESS, data=data)

    def set_error(self, error: str | BaseException | None) -> None:
        """Enter the error state, keeping the last data.

        ``None`` clears the error and falls back to success or idle.
        """
        if error is None:
            self._apply(self._settled_status())
            return
        if isinstance(error, BaseException):
            self._apply(AsyncStatus.ERROR, error=error_message(error), exception=error)
        else:
            self._apply(AsyncStatus.ERROR, error=error or "Unknown error")

    def set_loading(self, loading: bool = True) -> None:
        if loading:
            self._apply(
                AsyncStatus.LOADING,
                error=self._error,
                exception=self._exception,
            )
        elif self._error is not None:
            self._apply(AsyncStatus.ERROR, error=self._error, exception=self._exception)
        else:
            self._apply(self._settled_status())

    def _settled_status(self) -> AsyncStatus:
        return AsyncStatus.SUCCESS if self._data is not None else AsyncStatus.IDLE

    def reset(self) -> None:
        """Return to idle with the initial data.

        Operations still running are detached: their outcome goes back to
        their caller but is no longer published here.
        """
        self._generation += 1
        self._apply(AsyncStatus.IDLE, data=self._initial)
        self.attempts = 0

    def close(self) -> None:
        """Detach listeners; later updates are ignored."""
        self._closed = True
        self._listeners.clear()

    async def execute(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: t.Any,
        raise_errors: bool = False,
        **kwargs: t.Any,
    ) -> T | None:
        """Run ``fn`` through the loading / success / error lifecycle.

        Transient ``DatabaseError``s are retried according to ``self.retry``.

        Args:
            fn: Coroutine function to call; called again on each retry.
            raise_errors: Re-raise the final error instead of returning None.

        Returns:
            The result, or None when the operation failed.
        """
        generation = self._generation
        self._apply(AsyncStatus.LOADING)
        self._callback(self.on_start)
        self.attempts = 0

        while True:
            self.attempts += 1
            try:
                result = await fn(*args, **kwargs)
            except asyncio.CancelledError:
                if generation == self._generation:
                    self.set_loading(False)
                self._callback(self.on_finish)
                raise
            except Exception as e:
                if generation != self._generation:
                    logger.debug(f"{self.name}: dropping failure of a reset operation")
                    self._callback(self.on_finish)
                    if raise_errors:
                        raise
                    return None
                retry = self.attempts
                if self.retry.should_retry(e, retry):
                    delay = self.retry.delay_for(retry)
                    logger.warning(
                        f"{self.name}: attempt {retry} failed ({error_message(e)}), "
                        f"retrying in {delay:.2f}s",
                    )
                    await _sleep(delay)
                    continue
                logger.error(f"{self.name}: operation failed: {error_message(e)}")
                self.set_error(e)
                self._callback(self.on_error, error_message(e))
                self._callback(self.on_finish)
                if raise_errors:
                    raise
                return None

            if generation != self._generation:
                logger.debug(f"{self.name}: state was reset, result not published")
                self._callback(self.on_finish)
                return result
            self.set_data(result)
            self._callback(self.on_success, result)
            self._callback(self.on_finish)
            return result


@dataclass(frozen=True)
class CombinedAsyncState:
    loading: bool
    error: str | None
    is_success: bool
    is_idle: bool
    is_error: bool
    data: tuple[t.Any, ...]

    @property
    def is_loading(self) -> bool:
        return self.loading


def combine_async_states(
    *states: AsyncState[t.Any] | AsyncSnapshot[t.Any],
) -> CombinedAsyncState:
    """Aggregate several states.

    Loading if any is loading; the error is the first error in argument
    order; success only when all succeeded.
    """
    return CombinedAsyncState(
        loading=any(s.is_loading for s in states),
        error=next((s.error for s in states if s.error is not None), None),
        is_success=all(s.is_success for s in states),
        is_idle=all(s.is_idle for s in states),
        is_error=any(s.is_error for s in states),
        data=tuple(s.data for s in states),
    )
