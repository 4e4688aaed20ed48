"""
In-memory registry of query entries keyed by serialized key.
"""

import asyncio
import math
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from lightquery.shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from lightquery.core.query import QueryEntry
    from lightquery.shared.metrics import MetricsCollector


class CacheRegistry:
    """Keyed store of QueryEntry instances with deferred eviction.

    Entries schedule and cancel their own eviction; the registry owns the
    timers and performs the removal when one fires.
    """

    def __init__(self, metrics: Optional["MetricsCollector"] = None):
        self.logger = get_logger("lightquery.registry")
        self.metrics = metrics
        self._entries: Dict[str, "QueryEntry[Any]"] = {}
        self._eviction_timers: Dict[str, asyncio.TimerHandle] = {}

    def get(self, key: str) -> Optional["QueryEntry[Any]"]:
        """Retrieve an entry by serialized key."""
        return self._entries.get(key)

    def set(self, key: str, entry: "QueryEntry[Any]") -> "QueryEntry[Any]":
        """Store an entry, cancelling any eviction pending for the key."""
        self.cancel_eviction(key)
        previous = self._entries.get(key)
        if previous is not None and previous is not entry:
            previous.destroy()
        self._entries[key] = entry
        self._record_size()
        return entry

    def remove(self, key: str) -> None:
        """Remove an entry and its pending eviction."""
        self.cancel_eviction(key)
        entry = self._entries.pop(key, None)
        if entry is not None:
            entry.destroy()
            self._record_size()

    def entries(self) -> List[Tuple[str, "QueryEntry[Any]"]]:
        """Snapshot of all (key, entry) pairs."""
        return list(self._entries.items())

    def schedule_eviction(self, key: str, delay_ms: float) -> None:
        """Evict ``key`` after ``delay_ms`` unless cancelled first."""
        self.cancel_eviction(key)
        if key not in self._entries or math.isinf(delay_ms):
            return
        loop = asyncio.get_running_loop()
        self._eviction_timers[key] = loop.call_later(delay_ms / 1000, self._evict, key)

    def cancel_eviction(self, key: str) -> None:
        """Cancel a pending eviction, if any."""
        timer = self._eviction_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def has_pending_eviction(self, key: str) -> bool:
        return key in self._eviction_timers

    def _evict(self, key: str) -> None:
        self._eviction_timers.pop(key, None)
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        entry.destroy()
        self.logger.debug("Evicted query entry", query_key=key)
        if self.metrics:
            self.metrics.increment_counter("query_evictions_total")
        self._record_size()

    def clear(self) -> None:
        """Remove every entry and cancel every pending eviction."""
        for timer in self._eviction_timers.values():
            timer.cancel()
        self._eviction_timers.clear()

        for entry in self._entries.values():
            entry.destroy()
        self._entries.clear()
        self._record_size()

    def notify_query_change(self, key: str) -> None:
        """Force-notify the subscribers of one entry."""
        entry = self.get(key)
        if entry is not None:
            entry.force_notify()

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _record_size(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("query_cache_entries", len(self._entries))
