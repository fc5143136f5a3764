"""
Change feed backed by Supabase Realtime (postgres_changes).

Each (table, company_id) topic opened on the in-process feed gets one
Realtime channel; the channel is dropped when the topic's last subscriber
leaves. Rows changed by other devices arrive as ChangeEvents next to the
local echo of this process's own writes.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from realtime import AsyncRealtimeClient

from core.realtime import ChangeEvent, InProcessChangeFeed, Topic

logger = logging.getLogger(__name__)


def realtime_url(supabase_url: str) -> str:
    """https://<ref>.supabase.co -> wss://<ref>.supabase.co/realtime/v1"""
    url = supabase_url.rstrip("/") + "/realtime/v1"
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def event_from_payload(table: str, payload: Any) -> ChangeEvent:
    """
    Build a ChangeEvent from a postgres_changes payload.

    The record lives under `data` on current clients; older payloads carry
    `new`/`old` at the top level. DELETEs only have the old record.
    """
    body = payload if isinstance(payload, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else body
    record = data.get("record") or data.get("new") or data.get("old_record") or data.get("old") or {}
    op = data.get("type") or data.get("eventType") or "UPDATE"
    record_id = record.get("id")
    company_id = record.get("company_id")
    return ChangeEvent(
        table=data.get("table") or table,
        op=str(op).upper(),
        record_id=str(record_id) if record_id is not None else None,
        company_id=str(company_id) if company_id is not None else None,
    )


class SupabaseRealtimeFeed(InProcessChangeFeed):
    """
    Args:
        client_factory: returns a connected-on-demand realtime client
            (AsyncRealtimeClient in production, a fake in tests)
        schema: Postgres schema the tables live in
    """

    def __init__(self, client_factory: Callable[[], Any], schema: str = "public"):
        super().__init__()
        self.client_factory = client_factory
        self.schema = schema
        self._client = None
        self._connect_lock: Optional[asyncio.Lock] = None
        self._remote: Dict[Topic, Any] = {}
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "SupabaseRealtimeFeed":
        url = realtime_url(settings.supabase_url)
        token = settings.resolved_supabase_token()

        def factory():
            return AsyncRealtimeClient(url, token, params={"apikey": settings.supabase_key})

        return cls(factory)

    # ---------- channel lifecycle ----------

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("Realtime channel change requested outside an event loop; remote events disabled")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _channel_opened(self, topic: Topic) -> None:
        self._spawn(self._join(topic))

    def _channel_closed(self, topic: Topic) -> None:
        self._spawn(self._leave(topic))

    async def _connected_client(self):
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            if self._client is None:
                client = self.client_factory()
                await client.connect()
                self._client = client
        return self._client

    async def _join(self, topic: Topic) -> None:
        table, company_id = topic
        name = f"realtime:{table}:{company_id or 'all'}"
        try:
            client = await self._connected_client()
            channel = client.channel(name)
            channel.on_postgres_changes(
                "*",
                callback=lambda payload: self._on_remote(table, payload),
                table=table,
                schema=self.schema,
                filter=f"company_id=eq.{company_id}" if company_id else None,
            )
            await channel.subscribe()
        except Exception as e:
            logger.warning(f"Realtime subscription {name} failed: {e}")
            return
        with self._lock:
            still_wanted = topic in self._channels
            if still_wanted:
                self._remote[topic] = channel
        if not still_wanted:
            await self._unsubscribe_channel(name, channel)
            return
        logger.info(f"Realtime channel {name} subscribed")

    async def _leave(self, topic: Topic) -> None:
        with self._lock:
            if topic in self._channels:
                return
            channel = self._remote.pop(topic, None)
        if channel is not None:
            await self._unsubscribe_channel(f"{topic[0]}:{topic[1] or 'all'}", channel)

    @staticmethod
    async def _unsubscribe_channel(name: str, channel) -> None:
        try:
            await channel.unsubscribe()
        except Exception as e:
            logger.warning(f"Realtime unsubscribe {name} failed: {e}")

    def _on_remote(self, table: str, payload: Any) -> None:
        event = event_from_payload(table, payload)
        logger.debug(f"Remote {event.op} on {event.table}:{event.record_id}")
        self.publish(event)

    # ---------- shutdown ----------

    async def settle(self) -> None:
        """Wait for pending channel joins/leaves."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def remote_channel_count(self) -> int:
        with self._lock:
            return len(self._remote)

    async def close(self) -> None:
        await self.settle()
        with self._lock:
            channels = list(self._remote.items())
            self._remote.clear()
        for topic, channel in channels:
            await self._unsubscribe_channel(f"{topic[0]}:{topic[1] or 'all'}", channel)
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as e:
                logger.warning(f"Realtime client close failed: {e}")
            self._client = None
