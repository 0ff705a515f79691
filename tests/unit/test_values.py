"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

from datetime import datetime

import pytest

from tmtp.values import (
    MAX_INT_32,
    MIN_INT_32,
    FieldMetadata,
    convert_to_array,
    generate_system_name,
    is_valid_system_name,
    microseconds_to_seconds,
    normalize_color_hex,
    normalize_dropdown_value,
    normalize_estimate,
    normalize_field_value,
    normalize_multi_select_value,
    to_bool,
    to_datetime,
    to_int,
    to_iso_string,
    to_number,
    to_string,
)


def priority_field(field_type: str = "Dropdown") -> FieldMetadata:
    return FieldMetadata(
        field_id=7,
        system_name="priority",
        display_name="Priority",
        field_type=field_type,
        options_by_name={"high": 70, "medium": 71, "low": 72},
    )


class WarningLog:
    def __init__(self):
        self.entries = []

    def __call__(self, message, details):
        self.entries.append((message, details))


@pytest.mark.unit
class TestScalarCoercion:
    """Tests for number, boolean and string coercion."""

    def test_to_number(self):
        assert to_number("12.5") == 12.5
        assert to_number(3) == 3.0
        assert to_number("") is None
        assert to_number("abc") is None
        assert to_number(float("inf")) is None
        assert to_number(True) is None

    def test_to_int_truncates(self):
        assert to_int("42") == 42
        assert to_int(7.9) == 7
        assert to_int(-7.9) == -7
        assert to_int(None) is None

    def test_to_bool(self):
        """Test that exported booleans in their various shapes are understood."""
        assert to_bool(1) is True
        assert to_bool(0) is False
        assert to_bool("Yes") is True
        assert to_bool(" true ") is True
        assert to_bool("0") is False
        assert to_bool("nope") is False
        assert to_bool(None) is False

    def test_to_string(self):
        assert to_string(5.0) == "5"
        assert to_string(5.5) == "5.5"
        assert to_string(12) == "12"
        assert to_string(None) is None


@pytest.mark.unit
class TestTimestamps:
    """Tests for timestamp parsing."""

    def test_space_separated_timestamp(self):
        assert to_datetime("2024-03-01 12:30:00") == datetime(2024, 3, 1, 12, 30)

    def test_offset_is_converted_to_naive_utc(self):
        assert to_datetime("2024-03-01T12:30:00+02:00") == datetime(2024, 3, 1, 10, 30)

    def test_epoch_milliseconds(self):
        assert to_datetime(0) == datetime(1970, 1, 1)
        assert to_datetime(86_400_000) == datetime(1970, 1, 2)

    def test_unparseable_values(self):
        assert to_datetime("not a date") is None
        assert to_datetime("   ") is None
        assert to_datetime({"at": 1}) is None

    def test_iso_string_has_utc_suffix(self):
        assert to_iso_string("2024-03-01 12:30:00") == "2024-03-01T12:30:00Z"
        assert to_iso_string(None) is None


@pytest.mark.unit
class TestDurations:
    """Tests for duration and estimate conversion."""

    def test_microseconds_to_seconds(self):
        assert microseconds_to_seconds(2_600_000) == 3
        assert microseconds_to_seconds(2_600_000, floor=True) == 2
        assert microseconds_to_seconds("bogus") is None

    def test_estimate_within_range_is_kept(self):
        assert normalize_estimate(3600) == (3600, None)
        assert normalize_estimate(None) == (None, None)

    def test_estimate_scaled_from_microseconds(self):
        assert normalize_estimate(3e12) == (3_000_000, "microseconds")

    def test_estimate_scaled_from_nanoseconds(self):
        assert normalize_estimate(5e15) == (5_000_000, "nanoseconds")

    def test_estimate_clamped(self):
        """Test that an estimate no scale can fit is clamped to the int32 range."""
        assert normalize_estimate(1e20) == (MAX_INT_32, "clamped")
        assert normalize_estimate(-1e20) == (MIN_INT_32, "clamped")


@pytest.mark.unit
class TestNames:
    """Tests for system names, colors and delimited lists."""

    def test_generate_system_name(self):
        assert generate_system_name("Needs Review") == "needs_review"
        assert generate_system_name("2nd Pass!") == "nd_pass"
        assert generate_system_name("123") == "status"

    def test_is_valid_system_name(self):
        assert is_valid_system_name("passed")
        assert is_valid_system_name("Blocked_2")
        assert not is_valid_system_name("2fast")
        assert not is_valid_system_name("has space")
        assert not is_valid_system_name(None)

    def test_normalize_color_hex(self):
        assert normalize_color_hex("ff00aa") == "#FF00AA"
        assert normalize_color_hex(" #abc ") == "#ABC"
        assert normalize_color_hex("  ") is None
        assert normalize_color_hex(None) is None

    def test_convert_to_array(self):
        assert convert_to_array([1, 2]) == [1, 2]
        assert convert_to_array('["a", "b"]') == ["a", "b"]
        assert convert_to_array("a; b | c,d") == ["a", "b", "c", "d"]
        assert convert_to_array("") == []
        assert convert_to_array(5) == [5]


@pytest.mark.unit
class TestFieldValues:
    """Tests for custom field value normalization."""

    def test_dropdown_by_name_is_case_insensitive(self):
        log = WarningLog()
        assert normalize_dropdown_value("HIGH", priority_field(), log) == 70
        assert log.entries == []

    def test_dropdown_by_option_id(self):
        log = WarningLog()
        assert normalize_dropdown_value(71, priority_field(), log) == 71
        assert normalize_dropdown_value("72", priority_field(), log) == 72

    def test_unknown_dropdown_option_warns(self):
        """Test that an unknown option yields None and a warning listing the options."""
        log = WarningLog()

        assert normalize_dropdown_value("Bogus", priority_field(), log) is None

        message, details = log.entries[0]
        assert message == "Unrecognized dropdown option"
        assert details["available_options"] == ["high", "low", "medium"]

    def test_multi_select_drops_unknown_and_duplicates(self):
        log = WarningLog()
        field = priority_field("Multi Select")

        assert field.is_multi_select
        assert normalize_multi_select_value("high;low;high;nope", field, log) == [70, 72]
        assert len(log.entries) == 1

    def test_multi_select_with_nothing_known_is_none(self):
        log = WarningLog()
        assert normalize_multi_select_value(["nope"], priority_field("Multi-Select"), log) is None

    def test_field_value_by_type(self):
        """Test that each field type gets its storage shape."""
        log = WarningLog()

        def field(field_type):
            return FieldMetadata(1, "value", "Value", field_type)

        def to_document(value):
            return {"type": "doc", "text": value}

        assert normalize_field_value("12", field("Integer"), log, to_document) == 12
        assert normalize_field_value("1.5", field("Number"), log, to_document) == 1.5
        assert normalize_field_value("yes", field("Checkbox"), log, to_document) is True
        assert normalize_field_value(3, field("Text String"), log, to_document) == "3"
        assert normalize_field_value("x", field("Text Long"), log, to_document) == {
            "type": "doc",
            "text": "x",
        }
        assert (
            normalize_field_value("2024-03-01 12:30:00", field("Date"), log, to_document)
            == "2024-03-01T12:30:00Z"
        )
        assert normalize_field_value("ignored", field("Steps"), log, to_document) is None

    def test_dropdown_value_ids_resolved_by_source_name(self):
        """Test that exported field value ids are resolved through their option names."""
        log = WarningLog()

        value = normalize_field_value(
            900, priority_field(), log, lambda value: None, source_value_names={900: "Low"}
        )
        values = normalize_field_value(
            [900, 901],
            priority_field("Multi-Select"),
            log,
            lambda value: None,
            source_value_names={900: "Low", 901: "High"},
        )

        assert value == 72
        assert values == [72, 70]
        assert log.entries == []
