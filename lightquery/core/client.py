"""
Query client: option merging, key matching, invalidation and mutations.
"""

import asyncio
import uuid
from dataclasses import replace
from typing import Any, Callable, List, Optional, Set, TYPE_CHECKING

from lightquery.core.keys import match_key, serialize_key
from lightquery.core.query import CancellationToken, QueryEntry
from lightquery.core.registry import CacheRegistry
from lightquery.core.types import (
    DataUpdate,
    FetchOptions,
    MutationOptions,
    QueryClientConfig,
    QueryFn,
    QueryKey,
    QueryStatus,
    T,
    TData,
    TVariables,
    Updater,
    Value,
)
from lightquery.shared.errors import QueryDataError, ValidationError
from lightquery.shared.logging import StructlogSink, get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from lightquery.shared.metrics import MetricsCollector


MutationListener = Callable[[], None]


class QueryClient:
    """Routes fetch, invalidate and mutate requests to the cache registry."""

    def __init__(
        self,
        config: Optional[QueryClientConfig] = None,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.config = config or QueryClientConfig()
        self.sink = self.config.logger or StructlogSink("lightquery.client")
        self.metrics = metrics
        self.logger = get_logger("lightquery.client")
        self.cache = CacheRegistry(metrics=metrics)

        self._mutations: Set[str] = set()
        self._mutation_listeners: List[MutationListener] = []

    def get_query_cache(self) -> CacheRegistry:
        """Access this client's registry."""
        return self.cache

    # Queries

    async def fetch_query(self, options: FetchOptions[T]) -> T:
        """Fetch through the cache and return data.

        Raises QueryDataError when the entry settles without data.
        """
        key = serialize_key(options.query_key)
        entry = self.cache.get(key)
        if entry is None:
            entry = self._build_entry(key, options.query_fn, **options.overrides())
        else:
            entry.query_fn = options.query_fn
            entry.update_options(**options.overrides())

        await entry.fetch()
        entry = self._resolve(key, entry)
        if entry.state.status is QueryStatus.LOADING:
            await entry.wait_settled()
            entry = self._resolve(key, entry)

        data = entry.state.data
        if data is None:
            raise QueryDataError(options.query_key, original_error=entry.state.error)
        return data

    def _resolve(self, key: str, awaited: QueryEntry[T]) -> QueryEntry[T]:
        """Current registry entry for a key; the awaited one if it was evicted meanwhile."""
        current = self.cache.get(key)
        return current if current is not None else awaited

    def _build_entry(self, key: str, query_fn: QueryFn[T], **overrides: Any) -> QueryEntry[T]:
        entry: QueryEntry[T] = QueryEntry(
            key,
            query_fn,
            self.config.defaults.merged(**overrides),
            registry=self.cache,
            sink=self.sink,
            metrics=self.metrics,
        )
        self.cache.set(key, entry)
        self.logger.debug("Created query entry", query_key=key)

        limit = self.config.max_cache_size
        if limit is not None and self.cache.size() > limit:
            self.sink.warn(
                "Query cache size exceeds configured limit",
                {"size": self.cache.size(), "max_cache_size": limit}
            )
        return entry

    async def invalidate_queries(self, partial_key: Optional[QueryKey] = None) -> None:
        """Refetch every matching entry regardless of staleness and wait for all."""
        matched = [
            (key, entry)
            for key, entry in self.cache.entries()
            if match_key(key, partial_key)
        ]
        if not matched:
            return

        await asyncio.gather(*(self._refetch_invalidated(key, entry) for key, entry in matched))

        for key, _ in matched:
            entry = self.cache.get(key)
            if entry is not None:
                entry.force_notify()

    async def _refetch_invalidated(self, key: str, entry: QueryEntry[Any]) -> None:
        entry.state = replace(entry.state, updated_at=0)
        try:
            await entry.fetch(force=True, cancel_refetch=True)
            entry = self._resolve(key, entry)
            if entry.state.status is QueryStatus.LOADING:
                await entry.wait_settled()
        except Exception as exc:
            self.sink.warn("Refetch after invalidation failed", {"query_key": key, "error": str(exc)})
        finally:
            current = self.cache.get(key)
            if current is not None:
                current.force_notify()

    def cancel_queries(self, partial_key: Optional[QueryKey] = None) -> None:
        """Cancel in-flight fetches of every matching entry."""
        for key, entry in self.cache.entries():
            if match_key(key, partial_key):
                entry.cancel()

    def get_queries(self, partial_key: Optional[QueryKey] = None) -> List[QueryEntry[Any]]:
        """Snapshot of matching entries."""
        return [entry for key, entry in self.cache.entries() if match_key(key, partial_key)]

    def get_query_data(self, query_key: QueryKey) -> Optional[Any]:
        """Cached data for a key, without fetching."""
        entry = self.cache.get(serialize_key(query_key))
        return entry.state.data if entry is not None else None

    def set_query_data(self, query_key: QueryKey, update: DataUpdate) -> Any:
        """Write data for a key directly and notify subscribers."""
        if not isinstance(update, (Value, Updater)):
            raise ValidationError(
                "set_query_data expects Value or Updater",
                {"type": type(update).__name__}
            )

        key = serialize_key(query_key)
        entry = self.cache.get(key)
        if entry is None:
            entry = self._build_entry(key, _placeholder_query_fn(self.cache, key))

        if isinstance(update, Updater):
            data = update.fn(entry.state.data)
        else:
            data = update.value

        entry.set_data(data)
        return data

    def is_fetching(self, partial_key: Optional[QueryKey] = None) -> int:
        """Number of matching entries currently loading."""
        return sum(1 for entry in self.get_queries(partial_key) if entry.is_fetching)

    def clear(self) -> None:
        """Drop every cached entry."""
        self.cache.clear()
        self.logger.info("Query cache cleared")

    # Mutations

    async def mutate(self, options: MutationOptions[TData, TVariables], variables: TVariables) -> TData:
        """Run a mutation, invoking its callbacks; failures propagate to the caller."""
        ticket = str(uuid.uuid4())
        self._mutations.add(ticket)
        self._mutations_changed()

        try:
            data = await options.mutation_fn(variables)
        except Exception as exc:
            self.logger.warning("Mutation failed", error=str(exc))
            self._record_mutation("error")
            if options.on_error is not None:
                options.on_error(exc)
            raise
        else:
            self._record_mutation("success")
            if options.on_success is not None:
                options.on_success(data)
            return data
        finally:
            self._mutations.discard(ticket)
            self._mutations_changed()

    def get_active_mutation_count(self) -> int:
        return len(self._mutations)

    def subscribe_to_mutations(self, listener: MutationListener) -> Callable[[], None]:
        """Register a zero-argument listener; returns an unsubscribe function."""
        self._mutation_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._mutation_listeners:
                self._mutation_listeners.remove(listener)

        return unsubscribe

    def _mutations_changed(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("mutations_in_flight", len(self._mutations))
        for listener in list(self._mutation_listeners):
            try:
                listener()
            except Exception as exc:
                self.sink.error("Mutation listener raised", {"error": str(exc)})

    def _record_mutation(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("mutations_total", result=result)


def _placeholder_query_fn(cache: CacheRegistry, key: str) -> QueryFn[Any]:
    """Operation for entries seeded by set_query_data: yields the current data."""

    async def placeholder(token: CancellationToken) -> Any:
        entry = cache.get(key)
        return entry.state.data if entry is not None else None

    return placeholder
