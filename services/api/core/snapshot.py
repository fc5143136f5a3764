"""
Dirty tracking for the order edit form.

A Fingerprint is a canonical serialization of the editable subset of an
order. The form is dirty when its fingerprint differs from the one captured
at load (or after the last successful save).
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from models import CompanySettings, Order, OrderStatus, Viewer
from core.validation import normalize_phone, parse_money, to_iso_utc

BASE_FIELDS: Tuple[str, ...] = (
    "title",
    "comment",
    "region",
    "city",
    "street",
    "house",
    "fio",
    "phone",
    "time_window_start",
    "assigned_to",
    "to_feed",
    "urgent",
    "department_id",
)
FINANCE_FIELDS: Tuple[str, ...] = ("price", "fuel_cost")
WORK_TYPE_FIELD = "work_type_id"

_ID_FIELDS = {"assigned_to", "department_id", "work_type_id"}
_BOOL_FIELDS = {"to_feed", "urgent"}


def editable_fields(viewer: Viewer, company: Optional[CompanySettings] = None) -> Tuple[str, ...]:
    """
    Fields this viewer owns on the edit form.

    - finance fields only for admin / dispatcher
    - work type only when the company has work types enabled
    """
    fields = list(BASE_FIELDS)
    if viewer.owns_finance:
        fields.extend(FINANCE_FIELDS)
    if company is not None and company.use_work_types:
        fields.append(WORK_TYPE_FIELD)
    return tuple(fields)


def form_from_order(order: Order, fields: Iterable[str]) -> Dict[str, Any]:
    """Initial form values for the owned fields of `order`."""
    form: Dict[str, Any] = {}
    for key in fields:
        if key == "to_feed":
            form[key] = order.status == OrderStatus.IN_FEED
        else:
            form[key] = getattr(order, key)
    return form


def set_form_value(form: Dict[str, Any], key: str, value: Any) -> None:
    """
    Write one form value, keeping the feed flag and the assignee consistent.

    Sending to the feed clears the assignee; picking an assignee takes the
    order out of the feed.
    """
    form[key] = value
    if key == "to_feed" and value:
        form["assigned_to"] = None
    elif key == "assigned_to" and value not in (None, ""):
        form["to_feed"] = False


def _canonical(key: str, value: Any) -> Any:
    if key == "phone":
        return normalize_phone(value)
    if key == "time_window_start":
        try:
            return to_iso_utc(value)
        except (TypeError, ValueError, OverflowError):
            return str(value)
    if key in FINANCE_FIELDS:
        try:
            amount = parse_money(value)
        except ValueError:
            return str(value).strip()
        return None if amount is None else str(amount)
    if key in _ID_FIELDS:
        return str(value) if value not in (None, "") else None
    if key in _BOOL_FIELDS:
        return bool(value)
    return "" if value is None else str(value)


@dataclass(frozen=True)
class Fingerprint:
    value: str

    @classmethod
    def of(cls, form: Mapping[str, Any], fields: Iterable[str]) -> "Fingerprint":
        canonical = {k: _canonical(k, form.get(k)) for k in fields}
        return cls(json.dumps(canonical, sort_keys=True, ensure_ascii=False, separators=(",", ":")))


def fingerprint_form(form: Mapping[str, Any], fields: Iterable[str]) -> Fingerprint:
    return Fingerprint.of(form, fields)


def capture(order: Order, fields: Iterable[str]) -> Fingerprint:
    fields = tuple(fields)
    return Fingerprint.of(form_from_order(order, fields), fields)


def is_dirty(form: Mapping[str, Any], fingerprint: Fingerprint, fields: Iterable[str]) -> bool:
    return Fingerprint.of(form, fields) != fingerprint


class SnapshotTracker:
    """
    Holds the baseline for one order on one edit screen.

    The baseline is captured on hydration and replaced after every
    successful save; it is never persisted.
    """

    def __init__(self, fields: Iterable[str]):
        self.fields: Tuple[str, ...] = tuple(fields)
        self.order_id: Optional[str] = None
        self.baseline: Dict[str, Any] = {}
        self.fingerprint: Optional[Fingerprint] = None

    def hydrated_for(self, order_id: str) -> bool:
        return self.order_id == order_id and self.fingerprint is not None

    def hydrate(self, order: Order) -> Dict[str, Any]:
        """Capture `order` as the baseline and return a fresh form for it."""
        self.rebaseline(order)
        return dict(self.baseline)

    def rebaseline(self, order: Order) -> None:
        self.order_id = order.id
        self.baseline = form_from_order(order, self.fields)
        self.fingerprint = Fingerprint.of(self.baseline, self.fields)

    def is_dirty(self, form: Mapping[str, Any]) -> bool:
        if self.fingerprint is None:
            return False
        return is_dirty(form, self.fingerprint, self.fields)

    def touched_fields(self, form: Mapping[str, Any]) -> List[str]:
        """Owned fields whose canonical value differs from the baseline."""
        return [
            k for k in self.fields
            if _canonical(k, form.get(k)) != _canonical(k, self.baseline.get(k))
        ]
