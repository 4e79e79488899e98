"""
Unit tests for piletracker/normalizers.py
"""

import datetime as dt

import pytest

from piletracker.normalizers import (
    format_duration,
    format_time_12h,
    natural_key,
    normalize_pile_tag,
    normalize_text,
    parse_date,
    parse_duration_seconds,
    parse_time,
    seconds_between,
    strip_float_suffix,
    to_number,
)


@pytest.mark.unit
class TestText:
    """Text cleanup helpers."""

    def test_placeholders_are_blank(self):
        assert normalize_text(None) == ""
        assert normalize_text(float("nan")) == ""
        assert normalize_text("  null ") == ""
        assert normalize_text("N/A") == ""

    def test_strip_float_suffix(self):
        assert strip_float_suffix(12.0) == "12"
        assert strip_float_suffix("A12.0") == "A12.0"

    def test_pile_tag_is_upper_and_collapsed(self):
        assert normalize_pile_tag(" a1   b ") == "A1 B"

    def test_natural_key_orders_numbers(self):
        assert sorted(["M10", "M2", "M1"], key=natural_key) == ["M1", "M2", "M10"]


@pytest.mark.unit
class TestNumbers:
    def test_thousands_separator(self):
        assert to_number("1,234.5") == 1234.5
        assert to_number("-12,000") == -12000.0

    def test_decimal_comma_rejected(self):
        for text in ("12,5", "1,23,456", "1,2345"):
            with pytest.raises(ValueError):
                to_number(text)

    def test_blank_is_none(self):
        assert to_number("") is None

    def test_junk_raises(self):
        with pytest.raises(ValueError):
            to_number("abc")


@pytest.mark.unit
class TestDates:
    """Date parsing across the accepted spreadsheet formats."""

    def test_excel_serial(self):
        assert parse_date(45000) == dt.date(2023, 3, 15)
        assert parse_date("45000") == dt.date(2023, 3, 15)

    @pytest.mark.parametrize(
        "raw",
        ["2023-03-15", "3/15/2023", "03-15-2023", "2023/3/15", "March 15, 2023"],
    )
    def test_text_formats(self, raw):
        assert parse_date(raw) == dt.date(2023, 3, 15)

    def test_two_digit_year(self):
        assert parse_date("3/15/23") == dt.date(2023, 3, 15)

    def test_invalid_month_raises(self):
        with pytest.raises(ValueError):
            parse_date("13/40/2023")

    def test_blank_is_none(self):
        assert parse_date("") is None


@pytest.mark.unit
class TestTimes:
    def test_am_pm(self):
        assert parse_time("1:05 PM") == "13:05:00"
        assert parse_time("12:00 am") == "00:00:00"

    def test_excel_fraction(self):
        assert parse_time(0.5) == "12:00:00"

    def test_decimal_hours(self):
        assert parse_time(8.5) == "08:30:00"

    def test_out_of_range_raises(self):
        with pytest.raises(ValueError):
            parse_time("25:00")

    def test_midnight_crossing(self):
        assert seconds_between("23:59:00", "00:01:00") == 120

    def test_twelve_hour_display(self):
        assert format_time_12h("13:05:00") == "1:05 PM"


@pytest.mark.unit
class TestDurations:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1:02:03", 3723),
            ("4:30", 270),
            ("3 min 20 sec", 200),
            (95, 95),
            (2.5, 150),
            (0.003472222, 300),
        ],
    )
    def test_formats(self, raw, expected):
        assert parse_duration_seconds(raw) == expected

    def test_negative_raises(self):
        with pytest.raises(ValueError):
            parse_duration_seconds(-5)

    def test_format_duration(self):
        assert format_duration(3723) == "1:02:03"
        assert format_duration(None) == ""
