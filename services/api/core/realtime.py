"""
Realtime change notifications and reconciliation.

A ChangeFeed delivers "something changed" events per (table, company). The
RealtimeReconciler turns bursts of events into a single background refetch
and hands the fresh record to its owner. Delivery is at-least-once, so a
refetch must be idempotent.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

Topic = Tuple[str, Optional[str]]
Callback = Callable[["ChangeEvent"], None]


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    op: str
    record_id: Optional[str] = None
    company_id: Optional[str] = None
    at: float = field(default_factory=time.time)


class ChangeFeed(Protocol):
    def subscribe(self, table: str, company_id: Optional[str], callback: Callback) -> Callable[[], None]:
        """Register `callback`; returns the unsubscribe function."""
        ...

    def publish(self, event: ChangeEvent) -> None:
        ...


class InProcessChangeFeed:
    """
    Change feed for stores living in this process.

    One channel per (table, company_id), shared by all subscribers and
    dropped when the last one leaves. Subscribers with company_id=None
    receive events for every company. publish() may be called from any thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[Topic, List[Callback]] = {}

    def subscribe(self, table: str, company_id: Optional[str], callback: Callback) -> Callable[[], None]:
        topic = (table, company_id)
        opened = False
        with self._lock:
            if topic not in self._channels:
                logger.info(f"Opening realtime channel {table}:{company_id or '*'}")
                self._channels[topic] = []
                opened = True
            self._channels[topic].append(callback)
        if opened:
            self._channel_opened(topic)

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._channels.get(topic)
                if subs is None or callback not in subs:
                    return
                subs.remove(callback)
                if subs:
                    return
                del self._channels[topic]
                logger.info(f"Closed realtime channel {table}:{company_id or '*'}")
            self._channel_closed(topic)

        return _unsubscribe

    def _channel_opened(self, topic: Topic) -> None:
        """Hook: first subscriber joined `topic`."""

    def _channel_closed(self, topic: Topic) -> None:
        """Hook: last subscriber left `topic`."""

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._channels.get((event.table, event.company_id), []))
            if event.company_id is not None:
                targets += self._channels.get((event.table, None), [])
        for cb in targets:
            try:
                cb(event)
            except Exception:
                logger.exception(f"Realtime subscriber failed for {event.table}:{event.record_id}")

    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def subscriber_count(self, table: str, company_id: Optional[str]) -> int:
        with self._lock:
            return len(self._channels.get((table, company_id), []))


class RealtimeReconciler:
    """
    Debounced, coalesced refetch driven by a ChangeFeed.

    - events within `debounce_s` collapse into one refetch
    - events arriving while a refetch runs schedule exactly one trailing refetch
    - `record_id` limits interest to a single row (events without an id always count)
    """

    def __init__(
        self,
        feed: ChangeFeed,
        table: str,
        company_id: Optional[str],
        refetch: Callable[[], Awaitable[Any]],
        on_result: Callable[[Any], Any],
        debounce_s: float = 0.25,
        record_id: Optional[str] = None,
    ):
        self.feed = feed
        self.table = table
        self.company_id = company_id
        self.refetch = refetch
        self.on_result = on_result
        self.debounce_s = debounce_s
        self.record_id = record_id

        self.events_seen = 0
        self.refetch_count = 0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._rerun = False
        self._closed = False

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self.feed.subscribe(self.table, self.company_id, self._on_event)

    def _on_event(self, event: ChangeEvent) -> None:
        if self.record_id is not None and event.record_id not in (None, self.record_id):
            return
        loop = self._loop
        if self._closed or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule)

    def _schedule(self) -> None:
        if self._closed:
            return
        self.events_seen += 1
        if self._running:
            self._rerun = True
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.debounce_s, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if not self._closed:
            self._running = True
            self._task = self._loop.create_task(self._run())

    async def _run(self) -> None:
        self._running = True
        try:
            while True:
                self._rerun = False
                try:
                    result = await self.refetch()
                except Exception as e:
                    logger.warning(f"Realtime refetch failed for {self.table}:{self.record_id}: {e}")
                else:
                    applied = self.on_result(result)
                    if inspect.isawaitable(applied):
                        await applied
                self.refetch_count += 1
                if not self._rerun or self._closed:
                    break
        finally:
            self._running = False

    @property
    def idle(self) -> bool:
        return self._timer is None and not self._running

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no refetch is pending or running."""
        await asyncio.sleep(0)
        deadline = time.monotonic() + timeout
        while not self.idle:
            if time.monotonic() > deadline:
                raise asyncio.TimeoutError("realtime reconciler did not settle")
            await asyncio.sleep(min(self.debounce_s, 0.01) or 0.001)

    async def close(self) -> None:
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
