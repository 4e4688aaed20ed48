"""
Per-key query entry: fetch state machine, staleness, polling and notification.
"""

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Generic, Optional, TYPE_CHECKING

from lightquery.core.types import QueryFn, QueryOptions, QueryState, QueryStatus, T
from lightquery.shared.errors import QueryCancelledError, QuerySuspendedError
from lightquery.shared.logging import LoggerSink, StructlogSink, get_logger, query_context
from lightquery.shared.retry import run_with_retry

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from lightquery.core.registry import CacheRegistry
    from lightquery.shared.metrics import MetricsCollector

Subscriber = Callable[[], None]


def _now_ms() -> float:
    """Current epoch time in milliseconds."""
    return time.time() * 1000


class CancellationToken:
    """Best-effort cancellation signal handed to a query operation.

    Operations may poll ``cancelled`` or await ``wait()`` to abort early.
    Results arriving after cancellation are discarded either way.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class QueryEntry(Generic[T]):
    """Owns the lifecycle of exactly one cache key."""

    def __init__(
        self,
        key: str,
        query_fn: QueryFn[T],
        options: Optional[QueryOptions] = None,
        *,
        registry: Optional["CacheRegistry"] = None,
        sink: Optional[LoggerSink] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.key = key
        self.query_fn = query_fn
        self.options = options or QueryOptions()
        self.state: QueryState[T] = QueryState()
        self.registry = registry
        self.sink = sink or StructlogSink()
        self.metrics = metrics
        self.logger = get_logger("lightquery.query")

        # Ordered set: notification follows registration order
        self._subscribers: Dict[Subscriber, None] = {}
        self._token: Optional[CancellationToken] = None
        self._previous_state: QueryState[T] = self.state.copy()
        self._settled = asyncio.Event()
        self._settled.set()

        self._notify_pending = False
        self._notify_handle: Optional[asyncio.Handle] = None
        self._poll_task: Optional["asyncio.Task[None]"] = None

        if self.options.refetch_interval > 0:
            self._start_polling()

    # State inspection

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def is_fetching(self) -> bool:
        return self.state.status is QueryStatus.LOADING

    @property
    def should_suspend(self) -> bool:
        """Loading with suspense enabled; read by render bindings."""
        return self.options.suspense and self.is_fetching

    def is_stale(self, now: Optional[float] = None) -> bool:
        if self.state.updated_at <= 0:
            return True
        now = _now_ms() if now is None else now
        return now - self.state.updated_at >= self.options.stale_time

    async def wait_settled(self) -> QueryState[T]:
        """Wait until the entry is no longer Loading."""
        await self._settled.wait()
        return self.state

    # Fetch state machine

    async def fetch(self, *, force: bool = False, cancel_refetch: bool = False) -> None:
        """Fetch unless a fetch is in flight or the data is still fresh.

        ``force`` skips the freshness check for this call only. With
        ``cancel_refetch`` an in-flight fetch is superseded instead of
        deduplicated. Under suspense, an Error settle re-raises the stored
        error and a call ending while Loading raises QuerySuspendedError.
        """
        if self.state.status is QueryStatus.LOADING and not cancel_refetch:
            return
        if not force and not self.is_stale():
            return

        if self._token is not None:
            self._token.cancel()
        token = CancellationToken()
        self._token = token

        if self.state.status is not QueryStatus.LOADING:
            self._previous_state = self.state.copy()
        self.state = replace(self.state, status=QueryStatus.LOADING)
        self._settled.clear()
        self.notify()

        async def run_query() -> T:
            if token.cancelled:
                raise QueryCancelledError(self.key)
            return await self.query_fn(token)

        start = time.perf_counter()
        with query_context(self.key):
            try:
                data = await run_with_retry(
                    run_query,
                    self.options.retry,
                    self.options.retry_delay,
                    give_up=lambda: token.cancelled,
                )
                outcome = QueryState(status=QueryStatus.SUCCESS, data=data, updated_at=_now_ms())
            except asyncio.CancelledError:
                if token is self._token:
                    self.cancel()
                raise
            except Exception as exc:
                outcome = QueryState(status=QueryStatus.ERROR, error=exc, updated_at=_now_ms())

        if token is not self._token:
            self.logger.debug("Discarding superseded fetch result", query_key=self.key)
            self._record_fetch("discarded", start)
        else:
            self._token = None
            self.state = outcome
            self._settled.set()
            self._record_fetch(outcome.status.value, start)
            self.notify()

        if self.options.suspense:
            if self.state.status is QueryStatus.LOADING:
                raise QuerySuspendedError(self.key)
            if self.state.status is QueryStatus.ERROR and self.state.error is not None:
                raise self.state.error

    def cancel(self) -> None:
        """Cancel the in-flight fetch and restore the state it replaced."""
        token = self._token
        if token is None:
            return
        token.cancel()
        self._token = None
        self.state = self._previous_state.copy()
        self._settled.set()
        self.logger.debug("Query cancelled", query_key=self.key)
        self.notify()

    def set_data(self, data: T) -> None:
        """Write data directly, bypassing the fetch path."""
        self.state = QueryState(status=QueryStatus.SUCCESS, data=data, updated_at=_now_ms())
        if self._token is None:
            self._settled.set()
        self.force_notify()

    def update_options(self, **partial: Any) -> None:
        """Merge non-None option values; polling restarts only if its interval changed."""
        previous_interval = self.options.refetch_interval
        self.options = self.options.merged(**partial)
        if self.options.refetch_interval != previous_interval:
            self._start_polling()

    # Subscriptions

    def subscribe(self, subscriber: Subscriber) -> None:
        """Add a subscriber and call it once with the current state."""
        self._subscribers[subscriber] = None
        if self.registry is not None:
            self.registry.cancel_eviction(self.key)
        self._call_subscriber(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        """Remove a subscriber; the last one leaving schedules eviction."""
        self._subscribers.pop(subscriber, None)
        if not self._subscribers and self.registry is not None:
            self.registry.schedule_eviction(self.key, self.options.cache_time)

    def notify(self) -> None:
        """Schedule one coalesced notification for the current turn."""
        if self._notify_pending:
            return
        self._notify_pending = True
        self._notify_handle = asyncio.get_running_loop().call_soon(self._flush_notifications)

    def force_notify(self) -> None:
        """Deliver the current state to every subscriber now."""
        if self._notify_handle is not None:
            self._notify_handle.cancel()
        self._notify_pending = False
        self._notify_handle = None
        self._deliver()

    def _flush_notifications(self) -> None:
        self._notify_pending = False
        self._notify_handle = None
        self._deliver()

    def _deliver(self) -> None:
        for subscriber in list(self._subscribers):
            self._call_subscriber(subscriber)

    def _call_subscriber(self, subscriber: Subscriber) -> None:
        try:
            subscriber()
        except Exception as exc:
            self.sink.error("Query subscriber raised", {"query_key": self.key, "error": str(exc)})
            if self.metrics:
                self.metrics.increment_counter("query_subscriber_errors_total")

    # Polling

    def _start_polling(self) -> None:
        self._stop_polling()
        if self.options.refetch_interval > 0:
            loop = asyncio.get_running_loop()
            self._poll_task = loop.create_task(self._poll(self.options.refetch_interval))

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll(self, interval_ms: float) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            if not self._subscribers or self.is_fetching:
                continue
            # Rebuilding the timer must not abort a refetch already under way
            await asyncio.shield(self._background_refetch())

    async def _background_refetch(self) -> None:
        try:
            await self.fetch(force=True)
        except Exception as exc:
            self.sink.warn("Background refetch failed", {"query_key": self.key, "error": str(exc)})

    def destroy(self) -> None:
        """Release timers; called when the entry leaves the registry."""
        self._stop_polling()
        if self._notify_handle is not None:
            self._notify_handle.cancel()
            self._notify_handle = None
        self._notify_pending = False

    def _record_fetch(self, result: str, start: float) -> None:
        if not self.metrics:
            return
        try:
            self.metrics.increment_counter("query_fetch_total", result=result)
            self.metrics.observe_histogram("query_fetch_duration_seconds", time.perf_counter() - start)
        except Exception as exc:  # pragma: no cover - metrics failures never break fetching
            self.logger.debug("Failed to record fetch metrics", error=str(exc))

    def __repr__(self) -> str:
        return f"QueryEntry(key={self.key!r}, status={self.state.status.value})"
