"""
Dynamic form schema for orders.

Which fields are shown and which are required is configured per company in
the remote store. Resolution order for a context:

    1) company-enabled builtin fields (flags per context, mapped through FIELD_CATALOG)
    2) legacy server-side form schema for the context
    3) FALLBACK_FIELDS (minimal hard-coded schema)

Remote failures are logged and swallowed: a missing schema never blocks editing.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fastapi.concurrency import run_in_threadpool

from adapters.base import StorageAdapter
from models import FieldDefinition, FieldKind

logger = logging.getLogger(__name__)


class FormContext(str, Enum):
    CREATE = "create"
    EDIT = "edit"
    VIEW = "view"


# Builtin order fields the company settings can toggle.
FIELD_CATALOG: Dict[str, FieldDefinition] = {
    f.key: f
    for f in [
        FieldDefinition(key="title", label="Title", kind=FieldKind.TEXT, position=10, required=True),
        FieldDefinition(key="fio", label="Customer name", kind=FieldKind.TEXT, position=20),
        FieldDefinition(key="phone", label="Phone", kind=FieldKind.PHONE, position=30),
        FieldDefinition(key="region", label="Region", kind=FieldKind.TEXT, position=40),
        FieldDefinition(key="city", label="City", kind=FieldKind.TEXT, position=50),
        FieldDefinition(key="street", label="Street", kind=FieldKind.TEXT, position=60),
        FieldDefinition(key="house", label="House", kind=FieldKind.TEXT, position=70),
        FieldDefinition(key="comment", label="Description", kind=FieldKind.TEXT, position=80),
        FieldDefinition(key="assigned_to", label="Executor", kind=FieldKind.SELECT, position=90),
        FieldDefinition(key="urgent", label="Urgent", kind=FieldKind.BOOLEAN, position=100),
        FieldDefinition(key="secondary_phone", label="Secondary phone", kind=FieldKind.PHONE, position=110),
        FieldDefinition(key="contact_email", label="Email", kind=FieldKind.TEXT, position=120),
        FieldDefinition(key="time_window_start", label="Arrival window from", kind=FieldKind.DATETIME, position=180),
        FieldDefinition(key="time_window_end", label="Arrival window to", kind=FieldKind.DATETIME, position=190),
        FieldDefinition(key="department_id", label="Department", kind=FieldKind.SELECT, position=230),
        FieldDefinition(key="tags", label="Tags", kind=FieldKind.TAGS, position=250),
        FieldDefinition(key="work_type_id", label="Work type", kind=FieldKind.SELECT, position=255),
        FieldDefinition(key="price", label="Price", kind=FieldKind.MONEY, position=260),
        FieldDefinition(key="fuel_cost", label="Fuel cost", kind=FieldKind.MONEY, position=270),
    ]
}

FALLBACK_KEYS = (
    "title",
    "comment",
    "region",
    "city",
    "street",
    "house",
    "assigned_to",
    "time_window_start",
)

_CONTEXT_FLAG = {
    FormContext.CREATE: "is_enabled_create",
    FormContext.EDIT: "is_enabled_edit",
    FormContext.VIEW: "is_visible_read",
}


def catalog_kind(key: str) -> Optional[FieldKind]:
    meta = FIELD_CATALOG.get(key)
    return meta.kind if meta else None


def fallback_schema() -> List[FieldDefinition]:
    return [FIELD_CATALOG[k].model_copy() for k in FALLBACK_KEYS]


def normalize_fields(fields: Iterable[FieldDefinition]) -> List[FieldDefinition]:
    """
    Drop inactive entries, keep one entry per key (lowest position wins)
    and sort by position.
    """
    by_key: Dict[str, FieldDefinition] = {}
    for f in sorted((f for f in fields if f.active), key=lambda f: f.position):
        if f.key in by_key:
            logger.warning(f"Duplicate field key {f.key!r} in schema, keeping position {by_key[f.key].position}")
            continue
        by_key[f.key] = f
    return list(by_key.values())


def fields_from_company_rows(rows: Iterable[Dict[str, Any]], context: FormContext) -> List[FieldDefinition]:
    """
    Map rows of the company field settings onto the catalog.

    Each row carries `field_key` plus one boolean flag per context; keys
    outside the catalog are ignored.
    """
    flag = _CONTEXT_FLAG[FormContext(context)]
    out: List[FieldDefinition] = []
    for row in rows or []:
        if not row or not row.get(flag):
            continue
        meta = FIELD_CATALOG.get(str(row.get("field_key") or ""))
        if meta is None:
            continue
        out.append(meta.model_copy(update={"required": meta.required or bool(row.get("is_required"))}))
    return normalize_fields(out)


def fields_from_legacy(payload: Any) -> List[FieldDefinition]:
    """Map the legacy `{"fields": [...]}` schema payload. Custom keys are kept."""
    if not isinstance(payload, dict):
        return []
    out: List[FieldDefinition] = []
    for raw in payload.get("fields") or []:
        if not isinstance(raw, dict):
            continue
        key = str(raw.get("field_key") or raw.get("key") or "").strip()
        if not key:
            continue
        kind = raw.get("type") or raw.get("kind") or catalog_kind(key) or FieldKind.TEXT
        out.append(
            FieldDefinition(
                key=key,
                label=str(raw.get("label") or key),
                kind=kind,
                required=bool(raw.get("required")),
                position=int(raw.get("position") or 9999),
                active=raw.get("active", raw.get("is_active", True)) is not False,
            )
        )
    return normalize_fields(out)


def is_visible(key: str, fields: List[FieldDefinition]) -> bool:
    """
    Whether `key` is part of the schema.

    Rules:
    - empty schema -> everything is visible (permissive default)
    - otherwise    -> only listed keys are visible
    """
    if not fields:
        return True
    return any(f.key == key for f in fields)


def is_required(key: str, fields: List[FieldDefinition]) -> bool:
    """A key is required only if it is listed and flagged required."""
    return any(f.key == key and f.required for f in fields)


class SchemaProvider:
    """Resolves the form schema for a company and context. Never raises."""

    def __init__(self, storage: StorageAdapter, company_id: Optional[str] = None):
        self.storage = storage
        self.company_id = company_id

    async def get_schema(self, context: FormContext | str = FormContext.EDIT) -> List[FieldDefinition]:
        ctx = FormContext(context)

        if self.company_id:
            try:
                rows = await run_in_threadpool(self.storage.list_order_field_settings, self.company_id)
                fields = fields_from_company_rows(rows, ctx)
                if fields:
                    return fields
            except Exception as e:
                logger.warning(f"Company field settings unavailable for {self.company_id}: {e}")

        try:
            payload = await run_in_threadpool(self.storage.get_form_schema, ctx.value)
            fields = fields_from_legacy(payload)
            if fields:
                return fields
        except Exception as e:
            logger.warning(f"Legacy form schema unavailable for context {ctx.value}: {e}")

        logger.info(f"Using fallback form schema for context {ctx.value}")
        return fallback_schema()
