from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from . import ATTACHMENT_FIELDS, CompanySettings, Order, OrderStatus

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("title", "comment", "region", "city", "street", "house", "fio", "phone")


def _bool_from_row(v: Any) -> bool:
    """
    Convert loosely typed boolean cells to Python bool.
    Accepts: true/false, 1/0, yes/no, y/n (case-insensitive).
    """
    if v is None:
        return False
    if isinstance(v, bool):
        return v
    s = str(v).strip().upper()
    return s in ("TRUE", "1", "YES", "Y", "T")


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _opt_decimal(v: Any) -> Optional[Decimal]:
    if v is None or v == "":
        return None
    try:
        return Decimal(str(v).replace(",", ".").replace(" ", ""))
    except InvalidOperation:
        logger.warning(f"Unparseable money value {v!r}, ignoring")
        return None


def _opt_datetime(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(v).strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable time_window_start {v!r}, ignoring")
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _url_list(v: Any) -> List[str]:
    """Attachment columns are arrays; older rows may hold JSON text or NULL."""
    if v is None or v == "":
        return []
    if isinstance(v, str):
        try:
            parsed = json.loads(v)
        except ValueError:
            return [v]
        v = parsed
    if isinstance(v, (list, tuple)):
        return [str(u) for u in v if u]
    return []


def _status(raw: Any, assigned_to: Optional[str]) -> OrderStatus:
    try:
        return OrderStatus(str(raw or "").strip())
    except ValueError:
        # Unknown legacy status: fall back to the assignment the row does carry.
        fallback = OrderStatus.IN_PROGRESS if assigned_to else OrderStatus.IN_FEED
        logger.warning(f"Unknown order status {raw!r}, treating as {fallback.value!r}")
        return fallback


def order_from_row(row: Dict[str, Any]) -> Order:
    """
    Build an Order from a raw store row.

    Tolerates legacy rows: missing keys, string booleans/numbers,
    `datetime` instead of `time_window_start`, `customer_name` instead of `fio`.
    Never raises for field-level garbage; only a missing id is fatal.
    """
    if row.get("id") in (None, ""):
        raise ValueError("ORDER_ROW_WITHOUT_ID")

    assigned_to = _opt_str(row.get("assigned_to"))
    values: Dict[str, Any] = {k: str(row.get(k) or "") for k in _TEXT_FIELDS}
    if not values["fio"]:
        values["fio"] = str(row.get("customer_name") or "")

    updated_at = row.get("updated_at")
    created_at = row.get("created_at")

    return Order(
        id=str(row["id"]),
        **values,
        time_window_start=_opt_datetime(row.get("time_window_start") or row.get("datetime")),
        assigned_to=assigned_to,
        status=_status(row.get("status"), assigned_to),
        urgent=_bool_from_row(row.get("urgent")),
        department_id=_opt_str(row.get("department_id")),
        price=_opt_decimal(row.get("price")),
        fuel_cost=_opt_decimal(row.get("fuel_cost")),
        work_type_id=_opt_str(row.get("work_type_id")),
        company_id=_opt_str(row.get("company_id")),
        updated_at=str(updated_at) if updated_at is not None else None,
        created_at=str(created_at) if created_at is not None else None,
        **{cat: _url_list(row.get(cat)) for cat in ATTACHMENT_FIELDS},
    )


def patch_to_row(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Convert engine-typed patch values into JSON/SQL friendly primitives."""
    out: Dict[str, Any] = {}
    for k, v in patch.items():
        if isinstance(v, OrderStatus):
            out[k] = v.value
        elif isinstance(v, Decimal):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.astimezone(timezone.utc).isoformat()
        elif isinstance(v, tuple):
            out[k] = list(v)
        else:
            out[k] = v
    return out


def order_to_row(order: Order) -> Dict[str, Any]:
    data = order.model_dump()
    data.pop("id", None)
    return {"id": order.id, **patch_to_row(data)}


def company_from_row(row: Optional[Dict[str, Any]]) -> CompanySettings:
    if not row:
        return CompanySettings()
    return CompanySettings(
        id=_opt_str(row.get("id")),
        use_work_types=_bool_from_row(row.get("use_work_types")),
    )
