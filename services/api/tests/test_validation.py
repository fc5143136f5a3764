"""
Tests for validation functions.

Run with: pytest tests/test_validation.py -v
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.validation import (
    format_phone_mask,
    is_valid_phone,
    normalize_phone,
    parse_datetime,
    parse_money,
    summarize,
    to_e164,
    validate,
)
from models import FieldDefinition


def _schema(*fields):
    return [FieldDefinition(**f) for f in fields]


class TestPhone:
    """Tests for phone normalization and validity."""

    def test_domestic_trunk_prefix(self):
        """Leading 8 becomes the 7 country code."""
        assert normalize_phone("89991234567") == "79991234567"
        assert to_e164("89991234567") == "+79991234567"

    def test_formatted_input(self):
        assert normalize_phone("+7 (999) 123-45-67") == "79991234567"

    def test_bare_ten_digits(self):
        assert normalize_phone("9991234567") == "79991234567"

    def test_truncates_to_eleven(self):
        assert normalize_phone("799912345678888") == "79991234567"

    def test_idempotent(self):
        for raw in ["89991234567", "+7 999 123 45 67", "9991234567", "7999", ""]:
            once = normalize_phone(raw)
            assert normalize_phone(once) == once

    def test_validity(self):
        assert is_valid_phone("+7 999 123-45-67")
        assert not is_valid_phone("+7 812 123-45-67")  # landline
        assert not is_valid_phone("7999123")

    def test_incomplete_has_no_e164(self):
        assert to_e164("7999") is None
        assert to_e164(None) is None

    def test_mask(self):
        assert format_phone_mask("89991234567") == "+7 (999) 123-45-67"
        assert format_phone_mask("7999") == "+7 (999)"
        assert format_phone_mask("") == ""


class TestMoney:
    """Tests for money parsing."""

    def test_comma_separator(self):
        assert parse_money("1500,50") == Decimal("1500.50")

    def test_spaces_and_rounding(self):
        assert parse_money("1 500.555") == Decimal("1500.56")

    def test_empty_is_none(self):
        assert parse_money("") is None
        assert parse_money(None) is None

    def test_numbers(self):
        assert parse_money(10) == Decimal("10.00")

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_money("12abc")
        with pytest.raises(ValueError):
            parse_money(True)

    def test_too_many_digits_is_a_value_error(self):
        with pytest.raises(ValueError):
            parse_money("9" * 40)


class TestDatetime:
    def test_z_suffix(self):
        dt = parse_datetime("2024-05-01T10:00:00Z")
        assert dt == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        dt = parse_datetime("2024-05-01T13:00:00+03:00")
        assert dt.hour == 10 and dt.tzinfo == timezone.utc

    def test_naive_is_utc(self):
        assert parse_datetime("2024-05-01T10:00:00").tzinfo == timezone.utc

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_datetime("tomorrow")

    def test_out_of_range_after_utc_shift(self):
        with pytest.raises(OverflowError):
            parse_datetime("0001-01-01T00:00:00+01:00")


class TestValidate:
    """Tests for the form validator."""

    def test_required_empty_title(self):
        schema = _schema({"key": "title", "label": "Title", "required": True})
        violations = validate({"title": "   "}, schema)
        assert [(v.field, v.code) for v in violations] == [("title", "required")]

    def test_valid_form(self):
        schema = _schema(
            {"key": "title", "label": "Title", "required": True},
            {"key": "phone", "label": "Phone", "kind": "phone", "required": True},
        )
        assert validate({"title": "Install", "phone": "89991234567"}, schema) == []

    def test_phone_with_no_digits_counts_as_empty(self):
        schema = _schema({"key": "phone", "label": "Phone", "kind": "phone", "required": True})
        violations = validate({"phone": "+( )"}, schema)
        assert violations[0].code == "required"

    def test_invalid_phone(self):
        schema = _schema({"key": "phone", "label": "Phone", "kind": "phone"})
        violations = validate({"phone": "12345"}, schema)
        assert [v.code for v in violations] == ["invalid_phone"]

    def test_assignee_exempt_when_sending_to_feed(self):
        schema = _schema({"key": "assigned_to", "label": "Executor", "kind": "select", "required": True})
        assert validate({"assigned_to": None}, schema, to_feed=True) == []
        assert validate({"assigned_to": None}, schema)[0].code == "required"

    def test_kind_from_catalog_for_unlisted_fields(self):
        """Fields outside the schema still get format checks by their catalog kind."""
        violations = validate({"price": "abc"}, [])
        assert [(v.field, v.code) for v in violations] == [("price", "invalid_money")]

    def test_negative_money(self):
        schema = _schema({"key": "price", "label": "Price", "kind": "money"})
        assert validate({"price": "-5"}, schema)[0].code == "negative_money"

    def test_invalid_number_and_date(self):
        schema = _schema(
            {"key": "floor", "label": "Floor", "kind": "number"},
            {"key": "time_window_start", "label": "Start", "kind": "datetime"},
        )
        codes = [v.code for v in validate({"floor": "x", "time_window_start": "nope"}, schema)]
        assert codes == ["invalid_number", "invalid_date"]

    def test_out_of_range_values_are_violations(self):
        schema = _schema(
            {"key": "price", "label": "Price", "kind": "money"},
            {"key": "time_window_start", "label": "Start", "kind": "datetime"},
        )
        values = {"price": "9" * 40, "time_window_start": "0001-01-01T00:00:00+01:00"}
        assert [v.code for v in validate(values, schema)] == ["invalid_money", "invalid_date"]

    def test_confirmation_mismatch(self):
        violations = validate(
            {"contact_email": "a@x.ru", "contact_email_confirm": "b@x.ru"},
            [],
            confirmations={"contact_email_confirm": "contact_email"},
        )
        assert [(v.field, v.code) for v in violations] == [("contact_email_confirm", "mismatch")]

    def test_all_violations_reported(self):
        schema = _schema(
            {"key": "title", "label": "Title", "required": True},
            {"key": "city", "label": "City", "required": True},
            {"key": "phone", "label": "Phone", "kind": "phone"},
        )
        violations = validate({"title": "", "city": "", "phone": "1"}, schema)
        assert len(violations) == 3
        assert summarize(violations) == "Fill in required fields: title, city"


class TestSummarize:
    def test_empty(self):
        assert summarize([]) == ""

    def test_format_only(self):
        schema = _schema({"key": "phone", "label": "Phone", "kind": "phone"})
        message = summarize(validate({"phone": "1"}, schema))
        assert message.startswith("Phone:")
