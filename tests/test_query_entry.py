"""
Unit tests for the per-key query entry.
"""

import asyncio
import math
import pytest
from unittest.mock import MagicMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from lightquery.core.query import QueryEntry
from lightquery.core.registry import CacheRegistry
from lightquery.core.types import QueryOptions, QueryStatus
from lightquery.shared.errors import QuerySuspendedError
from lightquery.shared.logging import NullSink

KEY = '["todos"]'


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.histograms = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        pass


class GatedQuery:
    """Query function whose calls block until released, one gate per call."""

    def __init__(self, *results):
        self.results = list(results)
        self.gates = [asyncio.Event() for _ in results]
        self.tokens = []

    async def __call__(self, token):
        index = len(self.tokens)
        self.tokens.append(token)
        await self.gates[index].wait()
        result = self.results[index]
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def calls(self) -> int:
        return len(self.tokens)


def make_entry(query_fn, **options) -> QueryEntry:
    return QueryEntry(KEY, query_fn, QueryOptions(**options), sink=NullSink())


class TestQueryEntryFetch:
    """Test cases for the fetch state machine."""

    @pytest.mark.asyncio
    async def test_fetch_success(self):
        async def query_fn(token):
            return [{"id": 1, "title": "Test"}]

        entry = make_entry(query_fn)
        assert entry.state.status is QueryStatus.IDLE

        await entry.fetch()

        assert entry.state.status is QueryStatus.SUCCESS
        assert entry.state.data == [{"id": 1, "title": "Test"}]
        assert entry.state.error is None
        assert entry.state.updated_at > 0

    @pytest.mark.asyncio
    async def test_fetch_error(self):
        failure = RuntimeError("boom")

        async def query_fn(token):
            raise failure

        entry = make_entry(query_fn)
        await entry.fetch()

        assert entry.state.status is QueryStatus.ERROR
        assert entry.state.error is failure
        assert entry.state.data is None
        assert entry.state.updated_at > 0

    @pytest.mark.asyncio
    async def test_concurrent_fetches_invoke_operation_once(self):
        """A fetch issued while loading is a no-op."""
        query_fn = GatedQuery("data")
        entry = make_entry(query_fn)

        first = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        await entry.fetch()

        assert entry.state.status is QueryStatus.LOADING
        query_fn.gates[0].set()
        await first

        assert query_fn.calls == 1
        assert entry.state.data == "data"

    @pytest.mark.asyncio
    async def test_fresh_data_short_circuits(self):
        calls = []

        async def query_fn(token):
            calls.append(1)
            return len(calls)

        entry = make_entry(query_fn, stale_time=10_000)

        with patch("lightquery.core.query._now_ms") as mock_now:
            mock_now.return_value = 1_000
            await entry.fetch()
            settled = entry.state

            mock_now.return_value = 10_999
            await entry.fetch()
            assert entry.state is settled
            assert len(calls) == 1

            mock_now.return_value = 11_000
            await entry.fetch()
            assert len(calls) == 2
            assert entry.state.data == 2

    @pytest.mark.asyncio
    async def test_zero_stale_time_always_refetches(self):
        calls = []

        async def query_fn(token):
            calls.append(1)
            return "data"

        entry = make_entry(query_fn)
        await entry.fetch()
        await entry.fetch()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_infinite_stale_time_never_refetches(self):
        calls = []

        async def query_fn(token):
            calls.append(1)
            return "data"

        entry = make_entry(query_fn, stale_time=math.inf)
        await entry.fetch()
        await entry.fetch()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_force_bypasses_freshness_for_one_call(self):
        calls = []

        async def query_fn(token):
            calls.append(1)
            return "data"

        entry = make_entry(query_fn, stale_time=math.inf)
        await entry.fetch()
        await entry.fetch(force=True)
        await entry.fetch()

        assert len(calls) == 2
        assert entry.options.stale_time == math.inf
        assert not entry.is_stale()

    @pytest.mark.asyncio
    async def test_stale_data_visible_while_loading(self):
        query_fn = GatedQuery("first", "second")
        entry = make_entry(query_fn)

        query_fn.gates[0].set()
        await entry.fetch()

        refetch = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        assert entry.state.status is QueryStatus.LOADING
        assert entry.state.data == "first"

        query_fn.gates[1].set()
        await refetch
        assert entry.state.data == "second"

    @pytest.mark.asyncio
    async def test_superseded_result_is_discarded(self):
        query_fn = GatedQuery("old", "new")
        entry = make_entry(query_fn)

        first = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        second = asyncio.create_task(entry.fetch(cancel_refetch=True))
        await asyncio.sleep(0)

        assert query_fn.calls == 2
        assert query_fn.tokens[0].cancelled
        assert not query_fn.tokens[1].cancelled

        query_fn.gates[0].set()
        await first
        assert entry.state.status is QueryStatus.LOADING
        assert entry.state.data is None

        query_fn.gates[1].set()
        await second
        assert entry.state.status is QueryStatus.SUCCESS
        assert entry.state.data == "new"

    @pytest.mark.asyncio
    async def test_late_superseded_result_does_not_overwrite(self):
        query_fn = GatedQuery("old", "new")
        entry = make_entry(query_fn)

        first = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        second = asyncio.create_task(entry.fetch(cancel_refetch=True))
        await asyncio.sleep(0)

        query_fn.gates[1].set()
        await second
        query_fn.gates[0].set()
        await first

        assert entry.state.data == "new"

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        query_fn = GatedQuery(RuntimeError("transient"), "ok")
        for gate in query_fn.gates:
            gate.set()
        entry = make_entry(query_fn, retry=2, retry_delay=10)

        await entry.fetch()

        assert query_fn.calls == 2
        assert entry.state.status is QueryStatus.SUCCESS
        assert entry.state.data == "ok"

    @pytest.mark.asyncio
    async def test_retry_exhausted_keeps_last_error(self):
        last = RuntimeError("second")
        query_fn = GatedQuery(RuntimeError("first"), last)
        for gate in query_fn.gates:
            gate.set()
        entry = make_entry(query_fn, retry=2, retry_delay=10)

        await entry.fetch()

        assert query_fn.calls == 2
        assert entry.state.status is QueryStatus.ERROR
        assert entry.state.error is last

    @pytest.mark.asyncio
    async def test_records_fetch_metrics(self):
        async def query_fn(token):
            return "data"

        metrics = DummyMetrics()
        entry = QueryEntry(KEY, query_fn, QueryOptions(), sink=NullSink(), metrics=metrics)
        await entry.fetch()

        assert ("query_fetch_total", {"result": "success"}) in metrics.counters
        assert any(name == "query_fetch_duration_seconds" for name, _value, _labels in metrics.histograms)


class TestQueryEntryCancel:
    """Test cases for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_restores_idle_and_discards_result(self):
        query_fn = GatedQuery("late")
        entry = make_entry(query_fn)

        task = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        entry.cancel()

        assert query_fn.tokens[0].cancelled
        assert entry.state.status is QueryStatus.IDLE
        state = await entry.wait_settled()
        assert state.status is QueryStatus.IDLE

        query_fn.gates[0].set()
        await task
        assert entry.state.status is QueryStatus.IDLE
        assert entry.state.data is None

    @pytest.mark.asyncio
    async def test_cancel_restores_previous_success(self):
        query_fn = GatedQuery("first", "second")
        entry = make_entry(query_fn)
        query_fn.gates[0].set()
        await entry.fetch()

        task = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        entry.cancel()

        assert entry.state.status is QueryStatus.SUCCESS
        assert entry.state.data == "first"

        query_fn.gates[1].set()
        await task
        assert entry.state.data == "first"

    @pytest.mark.asyncio
    async def test_cancel_without_fetch_is_noop(self):
        async def query_fn(token):
            return "data"

        entry = make_entry(query_fn)
        entry.cancel()
        assert entry.state.status is QueryStatus.IDLE

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_leave_entry_loading(self):
        query_fn = GatedQuery("never")
        entry = make_entry(query_fn)

        task = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert entry.state.status is QueryStatus.IDLE
        assert query_fn.tokens[0].cancelled

    @pytest.mark.asyncio
    async def test_cancel_stops_retries(self):
        query_fn = GatedQuery(*[ConnectionError("down")] * 5)
        entry = make_entry(query_fn, retry=5, retry_delay=1)
        for gate in query_fn.gates:
            gate.set()
        query_fn.gates[0].clear()

        task = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        entry.cancel()
        query_fn.gates[0].set()
        await task

        assert query_fn.calls == 1
        assert entry.state.status is QueryStatus.IDLE

    @pytest.mark.asyncio
    async def test_cancel_during_retry_delay_skips_next_attempt(self):
        calls = []

        async def query_fn(token):
            calls.append(token)
            raise ConnectionError("down")

        entry = make_entry(query_fn, retry=3, retry_delay=50)

        task = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0.01)
        assert len(calls) == 1

        entry.cancel()
        await task

        assert len(calls) == 1
        assert entry.state.status is QueryStatus.IDLE

    @pytest.mark.asyncio
    async def test_superseded_fetch_stops_retrying(self):
        gate = asyncio.Event()
        calls = []

        async def query_fn(token):
            calls.append(token)
            if len(calls) == 1:
                await gate.wait()
                raise ConnectionError("late failure")
            return "fresh"

        entry = make_entry(query_fn, retry=3, retry_delay=1)

        first = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        await entry.fetch(cancel_refetch=True)
        gate.set()
        await first

        assert len(calls) == 2
        assert calls[0].cancelled
        assert entry.state.status is QueryStatus.SUCCESS
        assert entry.state.data == "fresh"


class TestQueryEntrySubscriptions:
    """Test cases for subscriptions and notification batching."""

    @pytest.mark.asyncio
    async def test_subscribe_invokes_immediately(self):
        async def query_fn(token):
            return "data"

        entry = make_entry(query_fn)
        subscriber = MagicMock()

        entry.subscribe(subscriber)

        subscriber.assert_called_once_with()
        assert entry.subscriber_count == 1

    @pytest.mark.asyncio
    async def test_notifications_coalesce_within_a_turn(self):
        async def query_fn(token):
            return "data"

        entry = make_entry(query_fn)
        seen = []
        entry.subscribe(lambda: seen.append(entry.state.status))

        # Loading and Success transitions happen in the same turn
        await entry.fetch()
        await asyncio.sleep(0)

        assert seen == [QueryStatus.IDLE, QueryStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_repeated_notify_delivers_once(self):
        async def query_fn(token):
            return "data"

        entry = make_entry(query_fn)
        subscriber = MagicMock()
        entry.subscribe(subscriber)

        entry.notify()
        entry.notify()
        entry.notify()
        await asyncio.sleep(0)

        assert subscriber.call_count == 2

    @pytest.mark.asyncio
    async def test_delivery_follows_registration_order(self):
        async def query_fn(token):
            return "data"

        entry = make_entry(query_fn)
        order = []
        entry.subscribe(lambda: order.append("first"))
        entry.subscribe(lambda: order.append("second"))
        order.clear()

        entry.force_notify()

        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_raising_subscriber_does_not_block_others(self):
        async def query_fn(token):
            return "data"

        sink = MagicMock()
        metrics = DummyMetrics()
        entry = QueryEntry(KEY, query_fn, QueryOptions(), sink=sink, metrics=metrics)

        def broken():
            raise ValueError("render failed")

        healthy = MagicMock()
        entry.subscribe(broken)
        entry.subscribe(healthy)

        entry.notify()
        await asyncio.sleep(0)

        assert healthy.call_count == 2
        assert sink.error.call_count == 2
        message, meta = sink.error.call_args.args
        assert meta["query_key"] == KEY
        assert ("query_subscriber_errors_total", {}) in metrics.counters

    @pytest.mark.asyncio
    async def test_unsubscribe_schedules_eviction_and_resubscribe_cancels(self):
        async def query_fn(token):
            return "data"

        registry = CacheRegistry()
        entry = QueryEntry(KEY, query_fn, QueryOptions(cache_time=1_000), registry=registry, sink=NullSink())
        registry.set(KEY, entry)
        subscriber = MagicMock()

        entry.subscribe(subscriber)
        entry.unsubscribe(subscriber)
        assert registry.has_pending_eviction(KEY)

        entry.subscribe(subscriber)
        assert not registry.has_pending_eviction(KEY)

        registry.clear()


class TestQueryEntryOptions:
    """Test cases for polling, suspense and option updates."""

    @pytest.mark.asyncio
    async def test_polling_refetches_with_subscribers(self):
        calls = []

        async def query_fn(token):
            calls.append(1)
            return len(calls)

        entry = make_entry(query_fn, refetch_interval=20, stale_time=math.inf)
        entry.subscribe(lambda: None)
        try:
            await asyncio.sleep(0.15)
        finally:
            entry.destroy()

        assert len(calls) >= 2
        assert entry.options.stale_time == math.inf

    @pytest.mark.asyncio
    async def test_stopped_poll_refetch_does_not_bypass_freshness(self):
        gate = asyncio.Event()
        calls = []

        async def query_fn(token):
            calls.append(token)
            if len(calls) == 2:
                await gate.wait()
            return len(calls)

        entry = make_entry(query_fn, refetch_interval=20, stale_time=math.inf)
        entry.subscribe(lambda: None)
        await entry.fetch()
        await asyncio.sleep(0.05)
        assert len(calls) == 2

        entry.destroy()
        entry.cancel()
        await entry.fetch()

        assert len(calls) == 2
        assert entry.state.data == 1

        gate.set()
        await asyncio.sleep(0.01)
        assert entry.state.data == 1

    @pytest.mark.asyncio
    async def test_polling_skips_without_subscribers(self):
        calls = []

        async def query_fn(token):
            calls.append(1)
            return "data"

        entry = make_entry(query_fn, refetch_interval=20)
        try:
            await asyncio.sleep(0.08)
        finally:
            entry.destroy()

        assert calls == []

    @pytest.mark.asyncio
    async def test_update_options_rebuilds_timer_only_on_interval_change(self):
        async def query_fn(token):
            return "data"

        entry = make_entry(query_fn, refetch_interval=1_000)
        try:
            original_task = entry._poll_task
            assert original_task is not None

            entry.update_options(stale_time=5_000, retry=None)
            assert entry._poll_task is original_task
            assert entry.options.stale_time == 5_000
            assert entry.options.retry == 0

            entry.update_options(refetch_interval=1_000)
            assert entry._poll_task is original_task

            entry.update_options(refetch_interval=2_000)
            assert entry._poll_task is not original_task
            await asyncio.sleep(0)
            assert original_task.cancelled()

            entry.update_options(refetch_interval=0)
            assert entry._poll_task is None
        finally:
            entry.destroy()

    @pytest.mark.asyncio
    async def test_suspense_reraises_operation_error(self):
        failure = RuntimeError("boom")

        async def query_fn(token):
            raise failure

        entry = make_entry(query_fn, suspense=True)

        with pytest.raises(RuntimeError) as exc_info:
            await entry.fetch()

        assert exc_info.value is failure
        assert entry.state.status is QueryStatus.ERROR

    @pytest.mark.asyncio
    async def test_suspense_signals_still_loading_when_superseded(self):
        query_fn = GatedQuery("old", "new")
        entry = make_entry(query_fn, suspense=True)

        first = asyncio.create_task(entry.fetch())
        await asyncio.sleep(0)
        assert entry.should_suspend
        second = asyncio.create_task(entry.fetch(cancel_refetch=True))
        await asyncio.sleep(0)

        query_fn.gates[0].set()
        with pytest.raises(QuerySuspendedError):
            await first

        query_fn.gates[1].set()
        await second
        assert not entry.should_suspend
        assert entry.state.data == "new"
