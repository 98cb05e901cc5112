from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import math
import re


_NUMBER_NOISE_RE = re.compile(r"[,£$€\s]")
_NUMBER_RE = re.compile(r"^-?(\d+(\.\d*)?|\.\d+)$")
_BAND_RE = re.compile(r"^\s*(\d[\d,]*(?:\.\d+)?)\s*(k)?\b", flags=re.IGNORECASE)


def is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def to_trimmed_string(value: object) -> str:
    if is_empty(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _to_decimal(value: object) -> Decimal | None:
    if is_empty(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isinf(value):
            return None
        return Decimal(str(value))
    cleaned = _NUMBER_NOISE_RE.sub("", str(value))
    if not _NUMBER_RE.match(cleaned):
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def to_minor_units(value: object) -> int | None:
    """Convert a major-unit amount ("£1,234.56", 1234.56) to integer minor units.

    Empty input and the zero sentinel both yield None, as does anything that
    is not a number once currency symbols and separators are removed.
    """
    amount = _to_decimal(value)
    if amount is None:
        return None
    minor = int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return minor or None


def to_int(value: object) -> int | None:
    number = _to_decimal(value)
    if number is None:
        return None
    return int(number.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def mileage_from_band(value: object) -> int | None:
    """Read an annual mileage from a band label such as "5k - Non Maintained"."""
    direct = to_int(value)
    if direct is not None:
        return direct
    m = _BAND_RE.match(to_trimmed_string(value))
    if not m:
        return None
    number = _to_decimal(m.group(1))
    if number is None:
        return None
    if m.group(2):
        number *= 1000
    return int(number.quantize(Decimal(1), rounding=ROUND_HALF_UP))
