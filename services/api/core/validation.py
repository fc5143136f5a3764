"""
Validation utilities for order forms.

Pure functions only: no I/O, nothing here raises for bad input.
`validate()` runs every rule and returns the full list of violations so the
caller can show them all at once.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

from models import FieldDefinition, FieldKind
from core.schema_provider import catalog_kind

PHONE_LENGTH = 11
ASSIGNEE_FIELD = "assigned_to"
_CENTS = Decimal("0.01")
_MONEY_RE = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)$")


@dataclass(frozen=True)
class Violation:
    field: str
    code: str
    message: str


# ========== Phone ==========

def phone_digits(raw: Any) -> str:
    return re.sub(r"\D", "", str(raw or ""))


def normalize_phone(raw: Any) -> str:
    """
    Normalize a Russian phone number to bare digits.

    Rules:
    - strip everything that is not a digit
    - leading 8 is the domestic trunk prefix -> 7
    - a bare 10-digit number starting with 9 gets the 7 country code
    - truncate to 11 digits

    Idempotent: normalize_phone(normalize_phone(x)) == normalize_phone(x).
    """
    digits = phone_digits(raw)
    if not digits:
        return ""
    if digits[0] == "8":
        digits = "7" + digits[1:]
    elif digits[0] == "9" and len(digits) == PHONE_LENGTH - 1:
        digits = "7" + digits
    return digits[:PHONE_LENGTH]


def is_valid_phone(raw: Any) -> bool:
    """Exactly 11 digits starting with 79 (mobile) after normalization."""
    digits = normalize_phone(raw)
    return len(digits) == PHONE_LENGTH and digits.startswith("79")


def to_e164(raw: Any) -> Optional[str]:
    """'+7XXXXXXXXXX' or None when the number is incomplete."""
    digits = normalize_phone(raw)
    if len(digits) == PHONE_LENGTH and digits.startswith("7"):
        return "+" + digits
    return None


def format_phone_mask(raw: Any) -> str:
    """Display mask '+7 (999) 123-45-67'; partial numbers are masked as far as they go."""
    digits = normalize_phone(raw)
    if not digits:
        return ""
    rest = digits[1:]
    out = "+7"
    if rest:
        out += " (" + rest[:3]
    if len(rest) >= 3:
        out += ")"
    if len(rest) > 3:
        out += " " + rest[3:6]
    if len(rest) > 6:
        out += "-" + rest[6:8]
    if len(rest) > 8:
        out += "-" + rest[8:10]
    return out


# ========== Money / numbers / dates ==========

def parse_money(raw: Any) -> Optional[Decimal]:
    """
    Parse a money amount.

    Accepts '.' or ',' as decimal separator and spaces as thousands
    separators. Result is quantized to 0.01 (half-up).

    Returns:
        None for empty input.

    Raises:
        ValueError: if the value is not a number.
    """
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError(f"not a money value: {raw!r}")
    if isinstance(raw, (int, float, Decimal)):
        value = Decimal(str(raw))
    else:
        s = str(raw).replace("\u00a0", "").replace(" ", "").replace(",", ".").strip()
        if not s:
            return None
        if not _MONEY_RE.match(s):
            raise ValueError(f"not a money value: {raw!r}")
        try:
            value = Decimal(s)
        except InvalidOperation as e:
            raise ValueError(f"not a money value: {raw!r}") from e
    if not value.is_finite():
        raise ValueError(f"not a money value: {raw!r}")
    try:
        return value.quantize(_CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        # more significant digits than the decimal context holds
        raise ValueError(f"money value out of range: {raw!r}") from e


def parse_datetime(raw: Any) -> Optional[datetime]:
    """
    Parse a schedule value into an aware UTC datetime.

    Accepts datetime, date, or an ISO-8601 string ('Z' suffix allowed).
    Naive values are taken as UTC.

    Raises:
        ValueError: for strings that are not ISO-8601.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, date):
        dt = datetime.combine(raw, time.min)
    else:
        dt = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_utc(raw: Any) -> Optional[str]:
    dt = parse_datetime(raw)
    return dt.isoformat() if dt else None


# ========== Rules ==========

def _is_empty(kind: FieldKind, value: Any) -> bool:
    if value is None:
        return True
    if kind == FieldKind.PHONE:
        return not phone_digits(value)
    if kind == FieldKind.TAGS:
        return len(value) == 0 if isinstance(value, (list, tuple, set)) else not str(value).strip()
    if kind == FieldKind.BOOLEAN:
        return False
    if isinstance(value, (datetime, date, Decimal, int, float)):
        return False
    return not str(value).strip()


def _check_phone(key: str, label: str, value: Any) -> Optional[Violation]:
    if is_valid_phone(value):
        return None
    return Violation(key, "invalid_phone", f"{label}: enter a phone number in the format +7 (9XX) XXX-XX-XX")


def _check_money(key: str, label: str, value: Any) -> Optional[Violation]:
    try:
        amount = parse_money(value)
    except ValueError:
        return Violation(key, "invalid_money", f"{label}: enter an amount like 1500 or 1500,50")
    if amount is not None and amount < 0:
        return Violation(key, "negative_money", f"{label}: amount cannot be negative")
    return None


def _check_number(key: str, label: str, value: Any) -> Optional[Violation]:
    try:
        Decimal(str(value).replace(",", ".").strip())
    except InvalidOperation:
        return Violation(key, "invalid_number", f"{label}: enter a number")
    return None


def _check_date(key: str, label: str, value: Any) -> Optional[Violation]:
    try:
        parse_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return Violation(key, "invalid_date", f"{label}: enter a valid date")
    return None


# Format rules by kind; kinds without an entry only take part in the required rule.
FORMAT_RULES: Dict[FieldKind, Callable[[str, str, Any], Optional[Violation]]] = {
    FieldKind.PHONE: _check_phone,
    FieldKind.MONEY: _check_money,
    FieldKind.NUMBER: _check_number,
    FieldKind.DATE: _check_date,
    FieldKind.DATETIME: _check_date,
}


def _kind_for(key: str, by_key: Mapping[str, FieldDefinition]) -> FieldKind:
    if key in by_key:
        return by_key[key].kind
    return catalog_kind(key) or FieldKind.TEXT


def validate(
    values: Mapping[str, Any],
    schema: List[FieldDefinition],
    *,
    to_feed: bool = False,
    confirmations: Optional[Mapping[str, str]] = None,
) -> List[Violation]:
    """
    Check form values against the schema.

    Rules (all evaluated, results concatenated in this order):
    - required:     every required schema field must be non-empty after trim;
                    phones count as empty with zero digits;
                    `assigned_to` is exempt when sending to the feed
    - format:       every non-empty value whose kind has a format rule
                    (phone, money, number, date/datetime) must pass it;
                    kind comes from the schema, else from the field catalog
    - confirmation: each confirm_key -> primary_key pair must match
                    when both sides are non-empty

    Returns:
        List of Violation; empty when the form is valid.
    """
    by_key = {f.key: f for f in schema}
    violations: List[Violation] = []

    for f in schema:
        if not f.required:
            continue
        if f.key == ASSIGNEE_FIELD and to_feed:
            continue
        if _is_empty(f.kind, values.get(f.key)):
            violations.append(Violation(f.key, "required", f"{f.label or f.key} is required"))

    missing = {v.field for v in violations}
    ordered_keys = [f.key for f in schema] + sorted(k for k in values if k not in by_key)
    for key in ordered_keys:
        if key in missing:
            continue
        value = values.get(key)
        kind = _kind_for(key, by_key)
        rule = FORMAT_RULES.get(kind)
        if rule is None or _is_empty(kind, value):
            continue
        label = by_key[key].label if key in by_key else key
        found = rule(key, label or key, value)
        if found is not None:
            violations.append(found)

    for confirm_key, primary_key in (confirmations or {}).items():
        a = str(values.get(confirm_key) or "").strip()
        b = str(values.get(primary_key) or "").strip()
        if a and b and a != b:
            violations.append(Violation(confirm_key, "mismatch", f"{confirm_key} does not match {primary_key}"))

    return violations


def summarize(violations: List[Violation]) -> str:
    """One user-facing line: required fields first, then the first format problem."""
    if not violations:
        return ""
    required = [v.field for v in violations if v.code == "required"]
    if required:
        return "Fill in required fields: " + ", ".join(required)
    return violations[0].message
