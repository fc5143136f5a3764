"""
Tests for the Supabase adapters against a mocked PostgREST / Storage API.

Run with: pytest tests/test_supabase_adapter.py -v
"""
import json

import httpx
import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from adapters.supabase import SupabaseAdapter
from core.blob_client import SupabaseBlobClient
from core.errors import BaseAppException, NetworkFailure, OrderNotFound, PermissionDenied, VersionConflict
from core.realtime import InProcessChangeFeed

URL = "https://proj.supabase.co"
ROW = {"id": "ord-1", "title": "Fix", "updated_at": "T1", "company_id": "c1", "status": "В работе"}


class FakePostgrest:
    """Routes requests by (method, path) and records them."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "no route"})
        return handler(request)

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


def _adapter(routes, feed=None):
    api = FakePostgrest(routes)
    client = httpx.Client(base_url=f"{URL}/rest/v1", transport=httpx.MockTransport(api))
    return SupabaseAdapter(URL, "anon-key", feed=feed, client=client), api


def _json(payload, status=200):
    return lambda request: httpx.Response(status, json=payload)


class TestReads:
    def test_get_order(self):
        adapter, api = _adapter({("GET", "/rest/v1/orders"): _json([ROW])})
        assert adapter.get_order("ord-1") == ROW
        assert api.requests[0].url.params["id"] == "eq.ord-1"

    def test_get_missing_order(self):
        adapter, _ = _adapter({("GET", "/rest/v1/orders"): _json([])})
        assert adapter.get_order("nope") is None

    def test_transport_errors_retried_then_raised(self):
        def down(request):
            raise httpx.ConnectError("refused", request=request)

        adapter, api = _adapter({("GET", "/rest/v1/orders"): down})
        with pytest.raises(NetworkFailure):
            adapter.get_order("ord-1")
        assert len(api.requests) == 3

    def test_permission_denied(self):
        adapter, _ = _adapter({("GET", "/rest/v1/companies"): _json({"message": "jwt expired"}, 401)})
        with pytest.raises(PermissionDenied):
            adapter.get_company("c1")

    def test_field_settings_rpc(self):
        rows = [{"field_key": "title", "is_enabled_edit": True}]
        adapter, api = _adapter({("POST", "/rest/v1/rpc/get_enabled_order_fields"): _json(rows)})
        assert adapter.list_order_field_settings("c1") == rows
        assert json.loads(api.requests[0].content) == {"p_company_id": "c1"}

    def test_display_name_fallbacks(self):
        adapter, _ = _adapter({
            ("GET", "/rest/v1/profiles"): _json([{"full_name": "", "first_name": "Anna", "last_name": "Ivanova", "email": "a@x.ru"}]),
        })
        assert adapter.get_user_display_name("u1") == "Anna Ivanova"


class TestVersionedUpdate:
    def test_rpc_success(self):
        feed = InProcessChangeFeed()
        seen = []
        feed.subscribe("orders", "c1", seen.append)
        adapter, api = _adapter({
            ("POST", "/rest/v1/rpc/update_order_if_version"): _json(True),
            ("GET", "/rest/v1/orders"): _json([ROW]),
        }, feed=feed)
        row = adapter.update_order_if_version("ord-1", {"title": "Fix", "id": "x"}, "T0")
        assert row == ROW
        body = json.loads(api.calls("POST", "/rest/v1/rpc/update_order_if_version")[0].content)
        assert body == {"p_order_id": "ord-1", "p_expected_updated_at": "T0", "p_patch": {"title": "Fix"}}
        assert [e.op for e in seen] == ["UPDATE"]

    def test_rpc_rejects_stale_token(self):
        adapter, _ = _adapter({
            ("POST", "/rest/v1/rpc/update_order_if_version"): _json(False),
            ("GET", "/rest/v1/orders"): _json([ROW]),
        })
        with pytest.raises(VersionConflict) as exc:
            adapter.update_order_if_version("ord-1", {"title": "x"}, "T0")
        assert exc.value.latest == ROW

    def test_missing_function_falls_back_to_conditional_patch(self):
        adapter, api = _adapter({
            ("POST", "/rest/v1/rpc/update_order_if_version"): _json({"code": "PGRST202", "message": "Could not find the function"}, 404),
            ("PATCH", "/rest/v1/orders"): _json([]),
            ("GET", "/rest/v1/orders"): _json([ROW]),
        })
        with pytest.raises(VersionConflict):
            adapter.update_order_if_version("ord-1", {"title": "x"}, "T0")
        patch = api.calls("PATCH", "/rest/v1/orders")[0]
        assert patch.url.params["updated_at"] == "eq.T0"
        assert patch.url.params["id"] == "eq.ord-1"

    def test_server_error_not_retried(self):
        adapter, api = _adapter({("POST", "/rest/v1/rpc/update_order_if_version"): _json({"message": "boom"}, 500)})
        with pytest.raises(NetworkFailure):
            adapter.update_order_if_version("ord-1", {"title": "x"}, "T0")
        assert len(api.requests) == 1

    def test_vanished_order(self):
        adapter, _ = _adapter({
            ("POST", "/rest/v1/rpc/update_order_if_version"): _json(False),
            ("GET", "/rest/v1/orders"): _json([]),
        })
        with pytest.raises(OrderNotFound):
            adapter.update_order_if_version("ord-1", {"title": "x"}, "T0")


class TestWrites:
    def test_accept(self):
        adapter, api = _adapter({("POST", "/rest/v1/rpc/accept_order"): _json(False)})
        assert adapter.accept_order("ord-1", "u1") is False
        assert json.loads(api.requests[0].content) == {"p_order_id": "ord-1"}

    def test_delete_missing(self):
        adapter, _ = _adapter({("DELETE", "/rest/v1/orders"): _json([])})
        with pytest.raises(OrderNotFound):
            adapter.delete_order("ord-1")


class TestSupabaseBlobClient:
    def _client(self, routes):
        api = FakePostgrest(routes)
        client = httpx.Client(base_url=f"{URL}/storage/v1", transport=httpx.MockTransport(api))
        return SupabaseBlobClient(URL, "anon-key", "orders-photos", client=client), api

    def test_list_and_urls(self):
        blobs, api = self._client({
            ("POST", "/storage/v1/object/list/orders-photos"): _json([{"name": "1.jpg"}, {"name": "2.jpg"}]),
        })
        paths = blobs.list("orders/ord-1/photo_before/")
        assert paths == ["orders/ord-1/photo_before/1.jpg", "orders/ord-1/photo_before/2.jpg"]
        assert json.loads(api.requests[0].content)["prefix"] == "orders/ord-1/photo_before"
        url = blobs.public_url(paths[0])
        assert url == f"{URL}/storage/v1/object/public/orders-photos/orders/ord-1/photo_before/1.jpg"
        assert blobs.path_from_url(url + "?t=1") == paths[0]

    def test_remove_sends_prefixes(self):
        blobs, api = self._client({("DELETE", "/storage/v1/object/orders-photos"): _json([])})
        blobs.remove(["a/1.jpg"])
        blobs.remove([])
        assert len(api.requests) == 1
        assert json.loads(api.requests[0].content) == {"prefixes": ["a/1.jpg"]}

    def test_upload_conflict_rejected(self):
        blobs, _ = self._client({
            ("POST", "/storage/v1/object/orders-photos/a/1.jpg"): _json({"error": "Duplicate"}, 409),
        })
        with pytest.raises(BaseAppException) as exc:
            blobs.upload("a/1.jpg", b"x")
        assert exc.value.code == "STORAGE_REJECTED"
