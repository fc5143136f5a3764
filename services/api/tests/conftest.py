"""
Shared fixtures: throwaway stores on disk and a seeded order.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from adapters.json import JsonAdapter
from adapters.sqlite import SqliteAdapter
from core.blob_client import LocalBlobClient
from core.cache import EngineCache
from core.realtime import InProcessChangeFeed
from models import OrderStatus

BLOB_BASE_URL = "http://testserver/blobs"


def order_values(**overrides):
    values = {
        "id": "ord-1",
        "title": "Install split system",
        "comment": "Second floor",
        "region": "Moscow oblast",
        "city": "Khimki",
        "street": "Lenina",
        "house": "5",
        "fio": "Ivanov Ivan",
        "phone": "+79991234567",
        "assigned_to": "u-worker",
        "status": OrderStatus.IN_PROGRESS,
        "company_id": "c1",
    }
    values.update(overrides)
    return values


@pytest.fixture
def feed():
    return InProcessChangeFeed()


@pytest.fixture
def sqlite_store(tmp_path, feed):
    return SqliteAdapter.from_url(f"sqlite:///{tmp_path / 'orders.db'}", feed=feed)


@pytest.fixture
def json_store(tmp_path, feed):
    return JsonAdapter(str(tmp_path / "json"), feed=feed)


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobClient(str(tmp_path / "blobs"), BLOB_BASE_URL)


@pytest.fixture
def cache():
    return EngineCache.default()


class CountingStore:
    """Wraps a real adapter and counts write calls."""

    def __init__(self, inner):
        self.inner = inner
        self.writes = 0

    def update_order_if_version(self, *args, **kwargs):
        self.writes += 1
        return self.inner.update_order_if_version(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self.inner, name)
