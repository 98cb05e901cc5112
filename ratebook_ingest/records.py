from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

from ratebook_ingest.cells import is_empty, to_int, to_minor_units, to_trimmed_string, mileage_from_band
from ratebook_ingest.config import ImportConfig
from ratebook_ingest.fields import FIELD_INFO, CanonicalField
from ratebook_ingest.readers import SourceRow


RowValues = dict[CanonicalField, object]

UNKNOWN_MANUFACTURER = "UNKNOWN"
UNKNOWN_MODEL = "Unknown"


class RowError(ValueError):
    pass


@dataclass
class RateRecord:
    cap_code: str
    provider_code: str
    contract_type: str
    manufacturer: str
    model: str
    term: int
    annual_mileage: int
    total_rental: int
    import_id: str | None = None
    variant: str | None = None
    model_year: str | None = None
    lease_rental: int | None = None
    service_rental: int | None = None
    p11d: int | None = None
    co2_gkm: int | None = None
    fuel_type: str | None = None
    transmission: str | None = None
    body_style: str | None = None
    excess_mileage_ppm: int | None = None
    whole_life_cost: int | None = None
    otr_price: int | None = None
    basic_list_price: int | None = None
    insurance_group: str | None = None
    mpg_combined: str | None = None
    wltp_ev_range: int | None = None
    euro_rating: str | None = None
    vehicle_id: str | None = None
    row_number: int | None = None

    def to_row(self) -> dict[str, Any]:
        out = asdict(self)
        out.pop("row_number", None)
        return out


# CanonicalField -> RateRecord attribute for the optional fields.
_OPTIONAL_ATTRS: dict[CanonicalField, str] = {
    CanonicalField.VARIANT: "variant",
    CanonicalField.MODEL_YEAR: "model_year",
    CanonicalField.LEASE_RENTAL: "lease_rental",
    CanonicalField.SERVICE_RENTAL: "service_rental",
    CanonicalField.P11D: "p11d",
    CanonicalField.CO2_GKM: "co2_gkm",
    CanonicalField.FUEL_TYPE: "fuel_type",
    CanonicalField.TRANSMISSION: "transmission",
    CanonicalField.BODY_STYLE: "body_style",
    CanonicalField.EXCESS_MILEAGE_PPM: "excess_mileage_ppm",
    CanonicalField.WHOLE_LIFE_COST: "whole_life_cost",
    CanonicalField.OTR_PRICE: "otr_price",
    CanonicalField.BASIC_LIST_PRICE: "basic_list_price",
    CanonicalField.INSURANCE_GROUP: "insurance_group",
    CanonicalField.MPG_COMBINED: "mpg_combined",
    CanonicalField.WLTP_EV_RANGE: "wltp_ev_range",
    CanonicalField.EURO_RATING: "euro_rating",
}


def row_values(
    values: Mapping[str, object],
    mapping: Mapping[str, CanonicalField | None],
    *,
    skip_columns: set[str] | None = None,
) -> RowValues:
    """Pick each mapped field from the first non-empty source column targeting it."""
    out: RowValues = {}
    for column, target in mapping.items():
        if target is None or target in out or (skip_columns and column in skip_columns):
            continue
        value = values.get(column)
        if not is_empty(value) and to_trimmed_string(value) != "":
            out[target] = value
    return out


def term_from_code(code: str) -> int:
    return int(code.strip().split("+", 1)[1])


def expand_row(
    row: SourceRow,
    mapping: Mapping[str, CanonicalField | None],
    term_cols: list[str],
) -> list[RowValues]:
    """
    Turn one source row into canonical values.

    Flat rows give exactly one result. A matrix band row gives one result per
    deposit+term column with a non-empty cell, carrying the term months and
    that cell as the rental.
    """
    if not term_cols:
        return [row_values(row.values, mapping)]

    base = row_values(row.values, mapping, skip_columns=set(term_cols))
    out: list[RowValues] = []
    for code in term_cols:
        cell = row.values.get(code)
        if is_empty(cell) or to_trimmed_string(cell) == "":
            continue
        values = dict(base)
        values[CanonicalField.TERM] = term_from_code(code)
        values[CanonicalField.TOTAL_RENTAL] = cell
        out.append(values)
    return out


def _text(value: object) -> str | None:
    text = to_trimmed_string(value)
    return text or None


def _convert_optional(field: CanonicalField, value: object) -> object:
    kind = FIELD_INFO[field].kind
    if kind == "money":
        return to_minor_units(value)
    if kind == "int":
        return to_int(value)
    return _text(value)


def to_rate_record(
    values: RowValues,
    *,
    provider_code: str,
    contract_type: str,
    defaults: ImportConfig,
    import_id: str | None = None,
    row_number: int | None = None,
) -> RateRecord:
    cap_code = _text(values.get(CanonicalField.CAP_CODE))
    if not cap_code:
        raise RowError("Missing CAP Code")

    raw_term = values.get(CanonicalField.TERM)
    term = to_int(raw_term)
    if raw_term is not None and term is None:
        raise RowError(f"Invalid term {to_trimmed_string(raw_term)!r}")

    raw_mileage = values.get(CanonicalField.ANNUAL_MILEAGE)
    annual_mileage = mileage_from_band(raw_mileage) if raw_mileage is not None else None
    if raw_mileage is not None and annual_mileage is None:
        raise RowError(f"Invalid annual mileage {to_trimmed_string(raw_mileage)!r}")

    raw_rental = values.get(CanonicalField.TOTAL_RENTAL)
    total_rental = to_minor_units(raw_rental)
    if raw_rental is not None and total_rental is None and to_int(raw_rental) != 0:
        raise RowError(f"Invalid total rental {to_trimmed_string(raw_rental)!r}")

    record = RateRecord(
        cap_code=cap_code,
        provider_code=provider_code,
        contract_type=contract_type,
        manufacturer=(_text(values.get(CanonicalField.MANUFACTURER)) or UNKNOWN_MANUFACTURER).upper(),
        model=_text(values.get(CanonicalField.MODEL)) or UNKNOWN_MODEL,
        term=term or defaults.default_term,
        annual_mileage=annual_mileage or defaults.default_annual_mileage,
        total_rental=total_rental or 0,
        import_id=import_id,
        row_number=row_number,
    )
    for field, attr in _OPTIONAL_ATTRS.items():
        if field in values:
            setattr(record, attr, _convert_optional(field, values[field]))
    return record
