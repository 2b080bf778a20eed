"""
Tests for ProgressBroadcaster and ScreenshotStore
"""

import asyncio

import pytest

from threat_scraper.core.base import UpdateType
from threat_scraper.core.events import ProgressBroadcaster
from threat_scraper.core.screenshots import ScreenshotStore


class TestProgressBroadcaster:
    """Test suite for ProgressBroadcaster"""

    def test_listeners_receive_updates_in_order(self):
        broadcaster = ProgressBroadcaster("crawl_test")
        received = []
        broadcaster.add_listener(received.append)

        broadcaster.publish(UpdateType.LOG, {'message': 'one'})
        broadcaster.publish(UpdateType.STATS, {'totalPages': 1})

        assert [u.type for u in received] == [UpdateType.LOG, UpdateType.STATS]
        assert received[0].payload == {'message': 'one'}
        assert received[0].to_dict()['type'] == 'log'

    def test_terminal_event_closes_channel(self):
        broadcaster = ProgressBroadcaster()
        received = []
        broadcaster.add_listener(received.append)

        assert broadcaster.publish(UpdateType.COMPLETE, {'success': True})
        assert not broadcaster.publish(UpdateType.ERROR, {'error': 'late'})
        assert not broadcaster.publish(UpdateType.LOG, {'message': 'late'})

        assert [u.type for u in received] == [UpdateType.COMPLETE]
        assert broadcaster.closed
        assert broadcaster.terminal_update.type == UpdateType.COMPLETE
        assert broadcaster.published == 1

    def test_failing_listener_is_isolated(self):
        broadcaster = ProgressBroadcaster()
        received = []

        def broken(update):
            raise RuntimeError("observer crashed")

        broadcaster.add_listener(broken)
        broadcaster.add_listener(received.append)

        assert broadcaster.publish(UpdateType.LOG, {'message': 'still delivered'})
        assert len(received) == 1

    def test_remove_listener(self):
        broadcaster = ProgressBroadcaster()
        received = []
        remove = broadcaster.add_listener(received.append)

        remove()
        broadcaster.publish(UpdateType.LOG, {})

        assert received == []

    @pytest.mark.asyncio
    async def test_subscription_ends_after_terminal(self):
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe()

        broadcaster.publish(UpdateType.PROGRESS, {'phase': 'crawling'})
        broadcaster.publish(UpdateType.ERROR, {'error': 'boom'})

        updates = [update async for update in subscription]

        assert [u.type for u in updates] == [UpdateType.PROGRESS, UpdateType.ERROR]

    @pytest.mark.asyncio
    async def test_subscribe_after_close(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.close()

        updates = [update async for update in broadcaster.subscribe()]

        assert updates == []

    @pytest.mark.asyncio
    async def test_subscription_close(self):
        broadcaster = ProgressBroadcaster()
        subscription = broadcaster.subscribe()
        subscription.close()

        broadcaster.publish(UpdateType.LOG, {})
        updates = [update async for update in subscription]

        assert updates == []


class TestScreenshotStore:
    """Test suite for ScreenshotStore"""

    TTL = 300

    def test_add_and_get(self):
        store = ScreenshotStore(clock=lambda: 1000.0)
        screenshot_id = store.add("aGVsbG8=")

        screenshot = store.get(screenshot_id)
        assert screenshot.data == "aGVsbG8="
        assert screenshot.timestamp == 1000.0
        assert screenshot.size == len("aGVsbG8=")
        assert screenshot_id in store
        assert len(store) == 1

    def test_ttl_boundary(self):
        store = ScreenshotStore(ttl_seconds=self.TTL)
        screenshot_id = store.add("data", timestamp=0.0)

        assert store.sweep(now=self.TTL - 0.001) == 0
        assert screenshot_id in store

        assert store.sweep(now=self.TTL + 0.001) == 1
        assert screenshot_id not in store

    def test_sweep_reports_expired_ids(self):
        expired = []
        store = ScreenshotStore(ttl_seconds=10, on_expired=expired.append)
        old = store.add("old", timestamp=0.0)
        fresh = store.add("fresh", timestamp=50.0)

        store.sweep(now=55.0)

        assert expired == [old]
        assert fresh in store

    def test_clear_and_delete(self):
        store = ScreenshotStore()
        first = store.add("a")
        store.add("b")

        assert store.delete(first)
        assert not store.delete(first)
        assert store.clear() == 1
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_background_sweep(self):
        now = [0.0]
        store = ScreenshotStore(ttl_seconds=5, sweep_interval=0.01, clock=lambda: now[0])
        screenshot_id = store.add("data")

        store.start()
        assert store.running
        now[0] = 6.0
        for _ in range(50):
            if screenshot_id not in store:
                break
            await asyncio.sleep(0.01)

        assert screenshot_id not in store
        store.close()
        await asyncio.sleep(0)
        assert not store.running

    @pytest.mark.asyncio
    async def test_close_stops_sweeping(self):
        store = ScreenshotStore(sweep_interval=0.01)
        store.add("data")
        store.start()

        store.close()

        assert not store.running
        assert len(store) == 0
