"""
JSON file storage adapter for the order engine.
Simple file-based storage for quick demos and testing.
A process-wide lock makes compare-and-set atomic inside one process;
not suitable for several processes sharing the same directory.
"""
import json
import logging
import threading
import uuid
from typing import List, Dict, Any, Optional
from pathlib import Path

from adapters.base import next_version_token
from core.errors import OrderNotFound, VersionConflict
from core.realtime import ChangeEvent
from models import ATTACHMENT_FIELDS, OrderStatus
from models.converters import patch_to_row

logger = logging.getLogger(__name__)

_READONLY_KEYS = {"id", "created_at", "updated_at"}


class JsonAdapter:
    """
    JSON file-based storage adapter.
    Stores data in separate JSON files under the data directory.
    Uses atomic file operations for basic consistency.
    """

    def __init__(self, data_dir: str = "data", feed: Optional[Any] = None):
        """
        Initialize the JSON adapter.

        Args:
            data_dir: Directory to store JSON files
            feed: Optional change feed notified after every order write
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.feed = feed
        self._lock = threading.RLock()

        # File paths
        self.orders_file = self.data_dir / "orders.json"
        self.companies_file = self.data_dir / "companies.json"
        self.field_settings_file = self.data_dir / "order_field_settings.json"
        self.form_schemas_file = self.data_dir / "form_schemas.json"
        self.profiles_file = self.data_dir / "profiles.json"

        # Initialize files if they don't exist
        for file in [self.orders_file, self.companies_file, self.field_settings_file, self.profiles_file]:
            if not file.exists():
                self._write_file(file, [])
        if not self.form_schemas_file.exists():
            self._write_file(self.form_schemas_file, {})

    def _read_file(self, filepath: Path) -> Any:
        """Read and parse a JSON file."""
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return {} if filepath == self.form_schemas_file else []

    def _write_file(self, filepath: Path, data: Any) -> None:
        """Write data to a JSON file atomically."""
        # Write to temporary file first
        tmp_file = filepath.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)

        # Atomic rename
        tmp_file.replace(filepath)

    def _publish(self, op: str, order_id: str, company_id: Optional[str]) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(table="orders", op=op, record_id=order_id, company_id=company_id))

    # ========== Orders ==========

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._read_file(self.orders_file)
        row = next((o for o in rows if o["id"] == str(order_id)), None)
        return dict(row) if row else None

    def create_order(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new order."""
        order_id = str(values.get("id") or uuid.uuid4())
        token = next_version_token()
        row = {k: v for k, v in patch_to_row(values).items() if k not in _READONLY_KEYS}
        row.setdefault("status", OrderStatus.NEW.value)
        row.setdefault("assigned_to", None)
        for cat in ATTACHMENT_FIELDS:
            row.setdefault(cat, [])
        row.update(id=order_id, created_at=token, updated_at=token)

        with self._lock:
            rows = self._read_file(self.orders_file)
            rows.append(row)
            self._write_file(self.orders_file, rows)

        self._publish("INSERT", order_id, row.get("company_id"))
        return dict(row)

    def update_order_if_version(
        self,
        order_id: str,
        patch: Dict[str, Any],
        expected_updated_at: Optional[str],
    ) -> Dict[str, Any]:
        """Compare-and-set update under the adapter lock."""
        values = {k: v for k, v in patch_to_row(patch).items() if k not in _READONLY_KEYS}
        with self._lock:
            rows = self._read_file(self.orders_file)
            row = next((o for o in rows if o["id"] == str(order_id)), None)
            if row is None:
                raise OrderNotFound(order_id)
            if expected_updated_at is not None and row.get("updated_at") != str(expected_updated_at):
                logger.warning(f"Version conflict on order {order_id}: expected {expected_updated_at}, stored {row.get('updated_at')}")
                raise VersionConflict(latest=dict(row))
            row.update(values)
            row["updated_at"] = next_version_token(row.get("updated_at"))
            self._write_file(self.orders_file, rows)
            result = dict(row)

        self._publish("UPDATE", order_id, result.get("company_id"))
        return result

    def accept_order(self, order_id: str, user_id: str) -> bool:
        with self._lock:
            rows = self._read_file(self.orders_file)
            row = next((o for o in rows if o["id"] == str(order_id)), None)
            if row is None:
                raise OrderNotFound(order_id)
            if row.get("assigned_to") or row.get("status") == OrderStatus.COMPLETED.value:
                return False
            row["assigned_to"] = str(user_id)
            row["status"] = OrderStatus.IN_PROGRESS.value
            row["updated_at"] = next_version_token(row.get("updated_at"))
            self._write_file(self.orders_file, rows)
            company_id = row.get("company_id")

        self._publish("UPDATE", order_id, company_id)
        return True

    def delete_order(self, order_id: str) -> None:
        with self._lock:
            rows = self._read_file(self.orders_file)
            row = next((o for o in rows if o["id"] == str(order_id)), None)
            if row is None:
                raise OrderNotFound(order_id)
            self._write_file(self.orders_file, [o for o in rows if o["id"] != str(order_id)])

        self._publish("DELETE", order_id, row.get("company_id"))

    # ========== Form schema ==========

    def list_order_field_settings(self, company_id: str) -> List[Dict[str, Any]]:
        rows = self._read_file(self.field_settings_file)
        return [r for r in rows if r.get("company_id") == str(company_id)]

    def set_order_field_settings(self, company_id: str, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            existing = [r for r in self._read_file(self.field_settings_file) if r.get("company_id") != str(company_id)]
            existing.extend({**r, "company_id": str(company_id)} for r in rows)
            self._write_file(self.field_settings_file, existing)

    def get_form_schema(self, context: str) -> Optional[Dict[str, Any]]:
        return self._read_file(self.form_schemas_file).get(context)

    def put_form_schema(self, context: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            schemas = self._read_file(self.form_schemas_file)
            schemas[context] = payload
            self._write_file(self.form_schemas_file, schemas)

    # ========== Directory ==========

    def get_company(self, company_id: str) -> Optional[Dict[str, Any]]:
        rows = self._read_file(self.companies_file)
        return next((c for c in rows if c.get("id") == str(company_id)), None)

    def upsert_company(self, company_id: str, name: str = "", use_work_types: bool = False) -> None:
        with self._lock:
            rows = [c for c in self._read_file(self.companies_file) if c.get("id") != str(company_id)]
            rows.append({"id": str(company_id), "name": name, "use_work_types": use_work_types})
            self._write_file(self.companies_file, rows)

    def get_user_display_name(self, user_id: str) -> Optional[str]:
        rows = self._read_file(self.profiles_file)
        p = next((r for r in rows if r.get("id") == str(user_id)), None)
        if p is None:
            return None
        return (p.get("full_name") or "").strip() or p.get("email") or None

    def upsert_profile(self, user_id: str, full_name: Optional[str] = None, email: Optional[str] = None, company_id: Optional[str] = None) -> None:
        with self._lock:
            rows = [r for r in self._read_file(self.profiles_file) if r.get("id") != str(user_id)]
            rows.append({"id": str(user_id), "full_name": full_name, "email": email, "company_id": company_id})
            self._write_file(self.profiles_file, rows)

    def ping(self) -> None:
        self._read_file(self.orders_file)
