"""
Shared type definitions for the query engine.
"""

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Union, TYPE_CHECKING

from lightquery.shared.errors import ValidationError
from lightquery.shared.logging import LoggerSink

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from lightquery.core.query import CancellationToken
    from lightquery.shared.config import QuerySettings

T = TypeVar("T")
TData = TypeVar("TData")
TVariables = TypeVar("TVariables")

# A single string, or an ordered sequence of JSON-representable segments
QueryKey = Union[str, List[Any], tuple]

QueryFn = Callable[["CancellationToken"], Awaitable[T]]
MutationFn = Callable[[TVariables], Awaitable[TData]]


class QueryStatus(str, Enum):
    """Lifecycle status of a query entry."""
    IDLE = "idle"          # No request yet
    LOADING = "loading"    # Request in progress
    SUCCESS = "success"    # Request succeeded
    ERROR = "error"        # Request failed


@dataclass
class QueryState(Generic[T]):
    """Current state of one query entry.

    ``updated_at`` is the epoch-millisecond time of the last settle, 0 if never.
    """
    status: QueryStatus = QueryStatus.IDLE
    data: Optional[T] = None
    error: Optional[BaseException] = None
    updated_at: float = 0

    def copy(self) -> "QueryState[T]":
        return replace(self)


@dataclass
class QueryOptions:
    """Effective options of a query entry; durations in milliseconds."""
    stale_time: float = 0
    cache_time: float = 5 * 60_000
    retry: int = 0
    retry_delay: float = 1000
    refetch_interval: float = 0
    suspense: bool = False

    def __post_init__(self):
        for name in ("stale_time", "cache_time", "retry_delay", "refetch_interval"):
            value = getattr(self, name)
            if math.isnan(value) or value < 0:
                raise ValidationError(f"{name} must be non-negative", {"option": name, "value": value})
        if isinstance(self.retry, bool) or not isinstance(self.retry, int) or self.retry < 0:
            raise ValidationError("retry must be a non-negative integer", {"option": "retry", "value": self.retry})
        if math.isinf(self.refetch_interval):
            raise ValidationError("refetch_interval must be finite", {"option": "refetch_interval"})

    def merged(self, **overrides: Any) -> "QueryOptions":
        """Return a copy with every non-None override applied."""
        changes = {name: value for name, value in overrides.items() if value is not None}
        return replace(self, **changes)


OPTION_NAMES = tuple(f.name for f in fields(QueryOptions))


@dataclass
class FetchOptions(Generic[T]):
    """Per-call fetch request. Unset (None) option fields fall back to defaults."""
    query_key: QueryKey
    query_fn: QueryFn[T]
    stale_time: Optional[float] = None
    cache_time: Optional[float] = None
    retry: Optional[int] = None
    retry_delay: Optional[float] = None
    refetch_interval: Optional[float] = None
    suspense: Optional[bool] = None

    def overrides(self) -> Dict[str, Any]:
        """Option fields supplied on this call."""
        return {
            name: getattr(self, name)
            for name in OPTION_NAMES
            if getattr(self, name) is not None
        }


@dataclass(frozen=True)
class Value(Generic[T]):
    """Replace cached data with ``value``."""
    value: T


@dataclass(frozen=True)
class Updater(Generic[T]):
    """Derive new cached data from the previous data (None if absent)."""
    fn: Callable[[Optional[T]], T]


DataUpdate = Union[Value[T], Updater[T]]


@dataclass
class MutationOptions(Generic[TData, TVariables]):
    """A mutation operation and its completion callbacks."""
    mutation_fn: MutationFn
    on_success: Optional[Callable[[TData], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None


@dataclass
class QueryClientConfig:
    """Client-wide configuration."""
    defaults: QueryOptions = field(default_factory=QueryOptions)
    max_cache_size: Optional[int] = None
    logger: Optional[LoggerSink] = None

    @classmethod
    def from_settings(cls, settings: "QuerySettings", logger: Optional[LoggerSink] = None) -> "QueryClientConfig":
        """Build a client config from environment settings."""
        return cls(
            defaults=QueryOptions(
                stale_time=settings.stale_time,
                cache_time=settings.cache_time,
                retry=settings.retry,
                retry_delay=settings.retry_delay,
                refetch_interval=settings.refetch_interval,
                suspense=settings.suspense,
            ),
            max_cache_size=settings.max_cache_size,
            logger=logger,
        )
