from __future__ import annotations

import math

import pytest

from ratebook_ingest.cells import is_empty, mileage_from_band, to_int, to_minor_units, to_trimmed_string


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("£1,234.56", 123456),
        ("$99", 9900),
        (" €12.5 ", 1250),
        (344.9, 34490),
        (292.07, 29207),
        (0.005, 1),
        ("-10.00", -1000),
    ],
)
def test_to_minor_units_parses_money(raw, expected):
    assert to_minor_units(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "0", 0, "0.00", "£0", float("nan"), "N/A", "12abc", True])
def test_to_minor_units_empty_zero_and_garbage_are_none(raw):
    assert to_minor_units(raw) is None


def test_thousands_separator_parses_like_plain_number():
    assert to_int("45,000") == to_int(45000) == 45000
    assert to_minor_units("45,000") == to_minor_units(45000)


def test_to_int_rounds_half_up():
    assert to_int("2.5") == 3
    assert to_int(24.4) == 24
    assert to_int("") is None
    assert to_int("thirty six") is None


def test_to_trimmed_string():
    assert to_trimmed_string("  BMW ") == "BMW"
    assert to_trimmed_string(36.0) == "36"
    assert to_trimmed_string(36.5) == "36.5"
    assert to_trimmed_string(None) == ""
    assert to_trimmed_string(math.nan) == ""


def test_is_empty():
    assert is_empty(None)
    assert is_empty("  ")
    assert is_empty(float("nan"))
    assert not is_empty(0)
    assert not is_empty("x")


@pytest.mark.parametrize(
    "label, expected",
    [
        ("5k - Non Maintained", 5000),
        ("10K Maintained", 10000),
        ("10,000", 10000),
        (8000, 8000),
        ("1.5k", 1500),
        ("Non Maintained", None),
        ("", None),
    ],
)
def test_mileage_from_band(label, expected):
    assert mileage_from_band(label) == expected
