"""
lightquery: an async data synchronization cache.

Caches results of keyed query operations, tracks freshness, deduplicates
concurrent work, retries failures and notifies subscribers on change.
"""

from lightquery.core.client import QueryClient
from lightquery.core.infinite import InfiniteQuery
from lightquery.core.keys import match_key, serialize_key
from lightquery.core.query import CancellationToken, QueryEntry
from lightquery.core.registry import CacheRegistry
from lightquery.core.types import (
    FetchOptions,
    MutationOptions,
    QueryClientConfig,
    QueryKey,
    QueryOptions,
    QueryState,
    QueryStatus,
    Updater,
    Value,
)
from lightquery.shared.errors import (
    KeySerializationError,
    LightQueryException,
    QueryCancelledError,
    QueryDataError,
    QueryError,
    QuerySuspendedError,
    ValidationError,
)

__all__ = [
    "CacheRegistry",
    "CancellationToken",
    "FetchOptions",
    "InfiniteQuery",
    "KeySerializationError",
    "LightQueryException",
    "MutationOptions",
    "QueryClient",
    "QueryCancelledError",
    "QueryClientConfig",
    "QueryDataError",
    "QueryEntry",
    "QueryError",
    "QueryKey",
    "QueryOptions",
    "QueryState",
    "QueryStatus",
    "QuerySuspendedError",
    "Updater",
    "ValidationError",
    "Value",
    "match_key",
    "serialize_key",
]
