"""
Tests for the rate-limited batch orchestrator.
"""

import asyncio
import time

import pytest

from bulk_manager.errors import ValidationError
from bulk_manager.processor.batch import (
    CANCELLED_ERROR, BatchOrchestrator, Item, ItemChange,
)
from bulk_manager.shopify import RemoteCallError


def make_items(count):
    return [Item(item_id=f"item-{i}", title=f"Item {i}") for i in range(count)]


async def succeed(item):
    await asyncio.sleep(0)
    return ItemChange(old_values={"price": "1.00"}, new_values={"price": "2.00"})


class TestGrouping:
    """Groups, delays and result aggregation."""

    @pytest.mark.asyncio
    async def test_delay_only_between_groups(self, orchestrator, fake_sleep):
        """5 items in groups of 2 -> 3 groups, 2 delays, none after the last."""
        result = await orchestrator.run_batch(make_items(5), succeed)

        assert fake_sleep.calls == [1.1, 1.1]
        assert result.total == 5
        assert result.successful == 5
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_single_group_never_sleeps(self, orchestrator, fake_sleep):
        await orchestrator.run_batch(make_items(2), succeed)
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_empty_batch(self, orchestrator, fake_sleep):
        result = await orchestrator.run_batch([], succeed)
        assert result.total == 0
        assert result.item_results == []
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_per_call_overrides(self, orchestrator, fake_sleep):
        await orchestrator.run_batch(make_items(6), succeed, group_size=3, window_delay_ms=500)
        assert fake_sleep.calls == [0.5]

    @pytest.mark.asyncio
    async def test_invalid_group_size(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.run_batch(make_items(2), succeed, group_size=-1)

    @pytest.mark.asyncio
    async def test_uses_given_batch_id(self, orchestrator):
        result = await orchestrator.run_batch(make_items(1), succeed, batch_id="batch_fixed")
        assert result.batch_id == "batch_fixed"

    @pytest.mark.asyncio
    async def test_results_keep_item_order(self, orchestrator):
        items = make_items(5)
        result = await orchestrator.run_batch(items, succeed)
        assert [r.item for r in result.item_results] == items


class TestRateDiscipline:
    """Groups never overlap and respect the window delay."""

    @pytest.mark.asyncio
    async def test_group_starts_after_previous_group_and_delay(self):
        orchestrator = BatchOrchestrator(group_size=2, window_delay_ms=50)
        spans = {}
        in_flight = 0
        max_in_flight = 0

        async def timed(item):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            start = time.monotonic()
            await asyncio.sleep(0.01)
            spans[item.item_id] = (start, time.monotonic())
            in_flight -= 1
            return ItemChange(old_values={}, new_values={})

        items = make_items(5)
        await orchestrator.run_batch(items, timed)

        groups = [items[0:2], items[2:4], items[4:5]]
        for previous, current in zip(groups, groups[1:]):
            previous_end = max(spans[i.item_id][1] for i in previous)
            current_start = min(spans[i.item_id][0] for i in current)
            # Small tolerance for event loop clock resolution
            assert current_start - previous_end >= 0.045

        assert max_in_flight == 2


class TestFailureIsolation:
    """A failing item does not affect the others."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, orchestrator):
        async def op(item):
            if item.item_id == "item-1":
                raise RemoteCallError("Price must be positive")
            return await succeed(item)

        result = await orchestrator.run_batch(make_items(4), op)

        assert result.successful == 3
        assert result.failed == 1
        failed = [r for r in result.item_results if not r.success]
        assert failed[0].item.item_id == "item-1"
        assert failed[0].error == "Price must be positive"
        assert [i.item_id for i in result.failed_items] == ["item-1"]
        assert all(r.new_values == {"price": "2.00"} for r in result.item_results if r.success)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_captured(self, orchestrator):
        async def op(item):
            raise KeyError("price")

        result = await orchestrator.run_batch(make_items(2), op)

        assert result.failed == 2
        assert result.item_results[0].error.startswith("Unexpected error")


class TestProgress:
    """Progress and status events."""

    @pytest.mark.asyncio
    async def test_progress_events(self, orchestrator):
        events = []
        orchestrator.on_batch_progress(events.append)

        await orchestrator.run_batch(make_items(3), succeed)

        messages = [e.message for e in events if e.message]
        assert messages == [
            "Processing batch 1/2 (2 items)...",
            "Processing batch 2/2 (1 items)...",
        ]

        item_events = [e for e in events if e.message is None]
        assert [e.completed for e in item_events] == [1, 2, 3]
        assert item_events[-1].successful == 3
        assert item_events[-1].total == 3
        assert item_events[0].current == "Item 0"

    @pytest.mark.asyncio
    async def test_unsubscribe(self, orchestrator):
        events = []
        unsubscribe = orchestrator.on_batch_progress(events.append)
        unsubscribe()

        await orchestrator.run_batch(make_items(2), succeed)

        assert events == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_batch(self, orchestrator):
        def broken(event):
            raise RuntimeError("listener bug")

        orchestrator.on_batch_progress(broken)
        result = await orchestrator.run_batch(make_items(2), succeed)

        assert result.successful == 2


class TestCancellation:
    """Cooperative cancellation between groups."""

    @pytest.mark.asyncio
    async def test_cancel_stops_scheduling(self, orchestrator):
        cancel = asyncio.Event()
        dispatched = []

        async def op(item):
            dispatched.append(item.item_id)
            cancel.set()
            return await succeed(item)

        result = await orchestrator.run_batch(make_items(5), op, cancel_event=cancel)

        # The first group completes, nothing else is dispatched
        assert dispatched == ["item-0", "item-1"]
        assert result.cancelled is True
        assert result.total == 5
        assert result.successful == 2
        assert result.failed == 3
        assert result.successful + result.failed == result.total
        cancelled = [r for r in result.item_results if not r.success]
        assert all(r.error == CANCELLED_ERROR for r in cancelled)
        assert [i.item_id for i in result.failed_items] == ["item-2", "item-3", "item-4"]

    @pytest.mark.asyncio
    async def test_cancel_skips_window_wait(self, orchestrator, fake_sleep):
        cancel = asyncio.Event()

        async def op(item):
            cancel.set()
            return await succeed(item)

        result = await orchestrator.run_batch(make_items(4), op, cancel_event=cancel)

        assert result.cancelled is True
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator):
        cancel = asyncio.Event()
        cancel.set()

        result = await orchestrator.run_batch(make_items(3), succeed, cancel_event=cancel)

        assert result.cancelled is True
        assert result.successful == 0
        assert result.failed == 3
