"""
Supabase storage adapter (PostgREST over httpx).

Concurrency-sensitive writes go through database functions:
    - update_order_if_version(p_order_id, p_expected_updated_at, p_patch) -> bool
    - accept_order(p_order_id) -> bool
When the versioned-update function is not deployed yet, a conditional PATCH
filtered on `updated_at` gives the same compare-and-set semantics.

Reads are retried on transport errors; writes never are.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import BaseAppException, NetworkFailure, OrderNotFound, PermissionDenied, VersionConflict
from core.realtime import ChangeEvent
from models.converters import patch_to_row

logger = logging.getLogger(__name__)

_READONLY_KEYS = {"id", "created_at", "updated_at"}


def retry_reads(func):
    """Decorator to retry idempotent PostgREST reads with exponential backoff."""
    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((NetworkFailure,)),
        reraise=True,
    )
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def _is_missing_function(resp: httpx.Response) -> bool:
    if resp.status_code not in (400, 404):
        return False
    try:
        body = resp.json()
    except ValueError:
        return False
    if not isinstance(body, dict):
        return False
    if body.get("code") in ("PGRST202", "42883"):
        return True
    msg = str(body.get("message") or "").lower()
    return "function" in msg and ("does not exist" in msg or "not find" in msg or "not found" in msg)


class SupabaseAdapter:
    """
    Order store backed by a Supabase project.

    Args:
        url: project URL (https://<ref>.supabase.co)
        api_key: anon or service key
        access_token: user JWT for row level security (defaults to api_key)
        timeout: per-request timeout in seconds
        feed: optional in-process change feed for local echo of writes
        client: preconfigured httpx.Client (tests pass one with MockTransport)
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 15.0,
        feed: Optional[Any] = None,
        client: Optional[httpx.Client] = None,
    ):
        if not url:
            raise ValueError("Supabase requires SUPABASE_URL")
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.feed = feed
        self.client = client or httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
                "Content-Type": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings, feed: Optional[Any] = None) -> "SupabaseAdapter":
        return cls(
            url=settings.supabase_url,
            api_key=settings.supabase_key,
            access_token=settings.supabase_access_token,
            timeout=settings.http_timeout_s,
            feed=feed,
        )

    # ---------- transport ----------

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise NetworkFailure(f"Supabase unreachable: {e}") from e

    @staticmethod
    def _check(resp: httpx.Response) -> httpx.Response:
        if resp.status_code < 400:
            return resp
        text = resp.text[:300]
        if resp.status_code in (401, 403):
            raise PermissionDenied(f"Access denied by store: {text}")
        if resp.status_code >= 500:
            raise NetworkFailure(f"Store error {resp.status_code}: {text}")
        raise BaseAppException(f"Store rejected request ({resp.status_code}): {text}", code="STORE_REJECTED", http_status=502)

    def _rpc(self, name: str, params: Dict[str, Any]) -> httpx.Response:
        return self._send("POST", f"/rpc/{name}", json=params)

    def _publish(self, op: str, order_id: str, company_id: Optional[str]) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(table="orders", op=op, record_id=order_id, company_id=company_id))

    # ---------- orders ----------

    @retry_reads
    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        resp = self._check(self._send("GET", "/orders", params={"id": f"eq.{order_id}", "select": "*"}))
        rows = resp.json() or []
        return rows[0] if rows else None

    def create_order(self, values: Dict[str, Any]) -> Dict[str, Any]:
        row = {k: v for k, v in patch_to_row(values).items() if k not in ("created_at", "updated_at")}
        resp = self._check(
            self._send("POST", "/orders", json=row, headers={"Prefer": "return=representation"})
        )
        created = resp.json()[0]
        self._publish("INSERT", str(created["id"]), created.get("company_id"))
        return created

    def update_order_if_version(
        self,
        order_id: str,
        patch: Dict[str, Any],
        expected_updated_at: Optional[str],
    ) -> Dict[str, Any]:
        body = {k: v for k, v in patch_to_row(patch).items() if k not in _READONLY_KEYS}

        resp = self._rpc(
            "update_order_if_version",
            {
                "p_order_id": str(order_id),
                "p_expected_updated_at": expected_updated_at,
                "p_patch": body,
            },
        )
        if _is_missing_function(resp):
            logger.warning("update_order_if_version is not deployed, using conditional PATCH")
            applied = self._conditional_patch(order_id, body, expected_updated_at)
        else:
            applied = bool(self._check(resp).json())

        if not applied:
            if expected_updated_at is None:
                raise OrderNotFound(order_id)
            latest = self.get_order(order_id)
            if latest is None:
                raise OrderNotFound(order_id)
            logger.warning(f"Version conflict on order {order_id}: expected {expected_updated_at}, stored {latest.get('updated_at')}")
            raise VersionConflict(latest=latest)

        row = self.get_order(order_id)
        if row is None:
            raise OrderNotFound(order_id)
        self._publish("UPDATE", str(order_id), row.get("company_id"))
        return row

    def _conditional_patch(self, order_id: str, body: Dict[str, Any], expected_updated_at: Optional[str]) -> bool:
        params = {"id": f"eq.{order_id}", "select": "id,updated_at"}
        if expected_updated_at is not None:
            params["updated_at"] = f"eq.{expected_updated_at}"
        resp = self._check(
            self._send("PATCH", "/orders", params=params, json=body, headers={"Prefer": "return=representation"})
        )
        return bool(resp.json())

    def accept_order(self, order_id: str, user_id: str) -> bool:
        # The database function takes the caller from the JWT; user_id is informational.
        resp = self._check(self._rpc("accept_order", {"p_order_id": str(order_id)}))
        accepted = bool(resp.json())
        if accepted:
            self._publish("UPDATE", str(order_id), None)
        else:
            logger.info(f"Order {order_id} already taken, user {user_id} lost the race")
        return accepted

    def delete_order(self, order_id: str) -> None:
        resp = self._check(
            self._send(
                "DELETE",
                "/orders",
                params={"id": f"eq.{order_id}", "select": "id,company_id"},
                headers={"Prefer": "return=representation"},
            )
        )
        rows = resp.json() or []
        if not rows:
            raise OrderNotFound(order_id)
        self._publish("DELETE", str(order_id), rows[0].get("company_id"))

    # ---------- form schema ----------

    @retry_reads
    def list_order_field_settings(self, company_id: str) -> List[Dict[str, Any]]:
        resp = self._check(self._rpc("get_enabled_order_fields", {"p_company_id": company_id}))
        rows = resp.json()
        return rows if isinstance(rows, list) else []

    @retry_reads
    def get_form_schema(self, context: str) -> Optional[Dict[str, Any]]:
        resp = self._check(self._rpc("get_form_schema", {"p_context": context}))
        data = resp.json()
        return data if isinstance(data, dict) else None

    # ---------- directory ----------

    @retry_reads
    def get_company(self, company_id: str) -> Optional[Dict[str, Any]]:
        resp = self._check(
            self._send("GET", "/companies", params={"id": f"eq.{company_id}", "select": "id,use_work_types"})
        )
        rows = resp.json() or []
        return rows[0] if rows else None

    @retry_reads
    def get_user_display_name(self, user_id: str) -> Optional[str]:
        resp = self._check(
            self._send(
                "GET",
                "/profiles",
                params={"id": f"eq.{user_id}", "select": "full_name,first_name,last_name,email"},
            )
        )
        rows = resp.json() or []
        if not rows:
            return None
        p = rows[0]
        full = (p.get("full_name") or "").strip()
        if not full:
            full = " ".join(x for x in (p.get("first_name"), p.get("last_name")) if x).strip()
        return full or p.get("email") or None

    def ping(self) -> None:
        self._check(self._send("GET", "/orders", params={"select": "id", "limit": "1"}))

    def close(self) -> None:
        self.client.close()
