"""
Tests for the change feed and the debounced reconciler.

Run with: pytest tests/test_realtime.py -v
"""
import asyncio

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.realtime import ChangeEvent, InProcessChangeFeed, RealtimeReconciler


def _event(record_id="ord-1", company_id="c1"):
    return ChangeEvent(table="orders", op="UPDATE", record_id=record_id, company_id=company_id)


class TestInProcessChangeFeed:
    def test_channel_shared_and_dropped(self):
        feed = InProcessChangeFeed()
        unsub_a = feed.subscribe("orders", "c1", lambda e: None)
        unsub_b = feed.subscribe("orders", "c1", lambda e: None)
        assert feed.channel_count() == 1
        assert feed.subscriber_count("orders", "c1") == 2
        unsub_a()
        unsub_a()
        assert feed.subscriber_count("orders", "c1") == 1
        unsub_b()
        assert feed.channel_count() == 0

    def test_company_scoping_and_wildcard(self):
        feed = InProcessChangeFeed()
        c1, c2, everyone = [], [], []
        feed.subscribe("orders", "c1", c1.append)
        feed.subscribe("orders", "c2", c2.append)
        feed.subscribe("orders", None, everyone.append)
        feed.publish(_event(company_id="c1"))
        assert len(c1) == 1 and len(c2) == 0 and len(everyone) == 1

    def test_failing_subscriber_does_not_block_others(self):
        feed = InProcessChangeFeed()
        seen = []

        def boom(event):
            raise RuntimeError("subscriber bug")

        feed.subscribe("orders", "c1", boom)
        feed.subscribe("orders", "c1", seen.append)
        feed.publish(_event())
        assert len(seen) == 1


class TestRealtimeReconciler:
    def test_burst_coalesces_into_one_refetch(self):
        async def scenario():
            feed = InProcessChangeFeed()
            results = []

            async def refetch():
                return "latest"

            rec = RealtimeReconciler(feed, "orders", "c1", refetch, results.append, debounce_s=0.05)
            await rec.start()
            for _ in range(5):
                feed.publish(_event())
            await rec.wait_idle()
            await rec.close()
            return rec, results

        rec, results = asyncio.run(scenario())
        assert rec.events_seen == 5
        assert rec.refetch_count == 1
        assert results == ["latest"]

    def test_events_during_refetch_schedule_one_trailing_run(self):
        async def scenario():
            feed = InProcessChangeFeed()
            started = asyncio.Event()
            release = asyncio.Event()
            calls = []

            async def refetch():
                calls.append(len(calls))
                if len(calls) == 1:
                    started.set()
                    await release.wait()
                return len(calls)

            rec = RealtimeReconciler(feed, "orders", "c1", refetch, lambda r: None, debounce_s=0.01)
            await rec.start()
            feed.publish(_event())
            await started.wait()
            for _ in range(3):
                feed.publish(_event())
            await asyncio.sleep(0.02)
            release.set()
            await rec.wait_idle()
            await rec.close()
            return rec

        rec = asyncio.run(scenario())
        assert rec.refetch_count == 2

    def test_other_records_ignored(self):
        async def scenario():
            feed = InProcessChangeFeed()

            async def refetch():
                return None

            rec = RealtimeReconciler(feed, "orders", "c1", refetch, lambda r: None, debounce_s=0.01, record_id="ord-1")
            await rec.start()
            feed.publish(_event(record_id="ord-2"))
            await rec.wait_idle()
            await rec.close()
            return rec, feed

        rec, feed = asyncio.run(scenario())
        assert rec.events_seen == 0
        assert rec.refetch_count == 0
        assert feed.channel_count() == 0

    def test_refetch_failure_is_logged_not_raised(self):
        async def scenario():
            feed = InProcessChangeFeed()

            async def refetch():
                raise RuntimeError("offline")

            rec = RealtimeReconciler(feed, "orders", "c1", refetch, lambda r: None, debounce_s=0.01)
            await rec.start()
            feed.publish(_event())
            await rec.wait_idle()
            await rec.close()
            return rec

        assert asyncio.run(scenario()).refetch_count == 1
