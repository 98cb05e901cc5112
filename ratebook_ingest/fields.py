"""
Canonical rate fields that ratebook columns can map to.

Every ratebook, whatever its provider or layout, is normalized onto this
fixed set. Field keys are the camelCase names used by stored provider
mappings and by the column-suggestion service.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal


ValueKind = Literal["money", "int", "text"]


class CanonicalField(str, Enum):
    CAP_CODE = "capCode"
    MANUFACTURER = "manufacturer"
    MODEL = "model"
    VARIANT = "variant"
    MODEL_YEAR = "modelYear"
    TERM = "term"
    ANNUAL_MILEAGE = "annualMileage"
    TOTAL_RENTAL = "totalRental"
    LEASE_RENTAL = "leaseRental"
    SERVICE_RENTAL = "serviceRental"
    P11D = "p11d"
    CO2_GKM = "co2Gkm"
    FUEL_TYPE = "fuelType"
    TRANSMISSION = "transmission"
    BODY_STYLE = "bodyStyle"
    EXCESS_MILEAGE_PPM = "excessMileagePpm"
    WHOLE_LIFE_COST = "wholeLifeCost"
    OTR_PRICE = "otrPrice"
    BASIC_LIST_PRICE = "basicListPrice"
    INSURANCE_GROUP = "insuranceGroup"
    MPG_COMBINED = "mpgCombined"
    WLTP_EV_RANGE = "wltpEvRange"
    EURO_RATING = "euroRating"

    @classmethod
    def parse(cls, value: object) -> CanonicalField | None:
        """Return the field for a key, or None for null/unknown keys."""
        if isinstance(value, cls):
            return value
        if value is None:
            return None
        try:
            return cls(str(value).strip())
        except ValueError:
            return None


@dataclass(frozen=True)
class FieldInfo:
    label: str
    description: str
    kind: ValueKind
    required: bool = False


FIELD_INFO: dict[CanonicalField, FieldInfo] = {
    CanonicalField.CAP_CODE: FieldInfo("CAP Code", "Vehicle CAP identification code", "text", required=True),
    CanonicalField.MANUFACTURER: FieldInfo(
        "Manufacturer", "Vehicle manufacturer/make (e.g., BMW, AUDI)", "text", required=True
    ),
    CanonicalField.MODEL: FieldInfo("Model", "Vehicle model name", "text", required=True),
    CanonicalField.VARIANT: FieldInfo("Variant", "Vehicle variant/derivative/trim level", "text"),
    CanonicalField.MODEL_YEAR: FieldInfo("Model Year", "Year of the model", "text"),
    CanonicalField.TERM: FieldInfo("Term", "Contract term in months (e.g., 24, 36, 48)", "int", required=True),
    CanonicalField.ANNUAL_MILEAGE: FieldInfo("Annual Mileage", "Annual mileage allowance", "int", required=True),
    CanonicalField.TOTAL_RENTAL: FieldInfo(
        "Total Rental", "Monthly rental amount (main price)", "money", required=True
    ),
    CanonicalField.LEASE_RENTAL: FieldInfo("Lease Rental", "Finance/lease portion of rental", "money"),
    CanonicalField.SERVICE_RENTAL: FieldInfo("Service Rental", "Maintenance/service portion of rental", "money"),
    CanonicalField.P11D: FieldInfo("P11D", "P11D value (list price for tax purposes)", "money"),
    CanonicalField.CO2_GKM: FieldInfo("CO2 g/km", "CO2 emissions in grams per kilometer", "int"),
    CanonicalField.FUEL_TYPE: FieldInfo("Fuel Type", "Fuel type (Petrol, Diesel, Electric, Hybrid)", "text"),
    CanonicalField.TRANSMISSION: FieldInfo("Transmission", "Transmission type (Manual, Automatic)", "text"),
    CanonicalField.BODY_STYLE: FieldInfo("Body Style", "Body style (Hatchback, Saloon, SUV, etc.)", "text"),
    CanonicalField.EXCESS_MILEAGE_PPM: FieldInfo(
        "Excess Mileage PPM", "Excess mileage charge per mile in pence", "money"
    ),
    CanonicalField.WHOLE_LIFE_COST: FieldInfo("Whole Life Cost", "Total cost over contract period", "money"),
    CanonicalField.OTR_PRICE: FieldInfo(
        "OTR Price", "On The Road price (full vehicle price including taxes)", "money"
    ),
    CanonicalField.BASIC_LIST_PRICE: FieldInfo(
        "Basic List Price", "Basic list price before options/taxes", "money"
    ),
    CanonicalField.INSURANCE_GROUP: FieldInfo("Insurance Group", "Insurance group number", "text"),
    CanonicalField.MPG_COMBINED: FieldInfo("MPG Combined", "Combined fuel economy in MPG", "text"),
    CanonicalField.WLTP_EV_RANGE: FieldInfo("EV Range", "Electric vehicle range in miles", "int"),
    CanonicalField.EURO_RATING: FieldInfo("Euro Rating", "Euro emissions classification", "text"),
}

REQUIRED_FIELDS: tuple[CanonicalField, ...] = tuple(f for f, info in FIELD_INFO.items() if info.required)


def describe_fields() -> list[dict[str, object]]:
    return [
        {
            "key": f.value,
            "label": info.label,
            "description": info.description,
            "kind": info.kind,
            "required": info.required,
        }
        for f, info in FIELD_INFO.items()
    ]
