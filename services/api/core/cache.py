"""
Engine caches and generation tokens.

Caches are plain instances handed to whoever needs them; their lifetime is
the lifetime of the owner (app, test, session). Cached orders are a fast
first paint only: the next authoritative fetch always replaces them.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Optional

from cachetools import LRUCache, TTLCache

from models import Order


class OrderCache:
    """Last known record per order id."""

    def __init__(self, maxsize: int = 500):
        self._data: LRUCache = LRUCache(maxsize=maxsize)
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self._data.get(str(order_id))

    def put(self, order: Order) -> None:
        with self._lock:
            self._data[order.id] = order

    def invalidate(self, order_id: str) -> None:
        with self._lock:
            self._data.pop(str(order_id), None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class DisplayNameCache:
    """Executor display names by user id."""

    def __init__(self, maxsize: int = 1000, ttl: float = 600):
        self._data: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._data.get(str(user_id))

    def put(self, user_id: str, name: str) -> None:
        with self._lock:
            self._data[str(user_id)] = name

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


@dataclass
class EngineCache:
    orders: OrderCache
    names: DisplayNameCache

    @classmethod
    def from_settings(cls, settings) -> "EngineCache":
        return cls(
            orders=OrderCache(maxsize=settings.order_cache_size),
            names=DisplayNameCache(maxsize=settings.name_cache_size, ttl=settings.name_cache_ttl_s),
        )

    @classmethod
    def default(cls) -> "EngineCache":
        return cls(orders=OrderCache(), names=DisplayNameCache())


@dataclass(frozen=True)
class Generation:
    """Identifies one async request for a field; only the newest one may apply its result."""

    field: str
    number: int


class GenerationCounter:
    def __init__(self):
        self._latest: Dict[str, int] = {}

    def next(self, field: str) -> Generation:
        n = self._latest.get(field, 0) + 1
        self._latest[field] = n
        return Generation(field, n)

    def is_current(self, gen: Generation) -> bool:
        return self._latest.get(gen.field) == gen.number
