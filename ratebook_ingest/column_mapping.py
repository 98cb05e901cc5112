from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Literal, Mapping, Protocol

from ratebook_ingest.column_analyzer import ColumnSuggester, SuggestedMapping
from ratebook_ingest.fields import REQUIRED_FIELDS, CanonicalField
from ratebook_ingest.table_shape import TERM_CODE_PATTERN


logger = logging.getLogger(__name__)

ColumnMapping = dict[str, CanonicalField | None]
MappingSource = Literal["stored", "ai", "pattern"]

PATTERN_CONFIDENCE = 60
PATTERN_REASONING = "Pattern match (fallback)"
TERM_COLUMN_REASONING = "Deposit+term rental column"

# Checked top to bottom; the first field with a matching pattern wins.
_RAW_FIELD_PATTERNS: list[tuple[CanonicalField, list[str]]] = [
    (CanonicalField.CAP_CODE, [r"cap.?code", r"cap.?id", r"capcode"]),
    (CanonicalField.MANUFACTURER, [r"manufacturer", r"^make$", r"^mfr$"]),
    (CanonicalField.MODEL, [r"^model$", r"model.?name", r"vehicle.?desc"]),
    (CanonicalField.VARIANT, [r"variant", r"derivative", r"^trim$"]),
    (CanonicalField.MODEL_YEAR, [r"model.?year", r"^year$"]),
    (CanonicalField.TERM, [r"^term$", r"contract.?term", r"months"]),
    (CanonicalField.EXCESS_MILEAGE_PPM, [r"excess.?mileage", r"emc"]),
    (CanonicalField.ANNUAL_MILEAGE, [r"mileage", r"annual.?miles"]),
    (
        CanonicalField.TOTAL_RENTAL,
        [r"^rental$", r"monthly.?rental", r"net.?rental.?wm", r"net.?rental$", r"total.?rental"],
    ),
    (
        CanonicalField.LEASE_RENTAL,
        [r"lease.?rental", r"finance.?rental", r"net.?rental.?cm", r"contract.?rental"],
    ),
    (CanonicalField.SERVICE_RENTAL, [r"service.?rental", r"maintenance"]),
    (CanonicalField.P11D, [r"p11d"]),
    (CanonicalField.CO2_GKM, [r"co2", r"co2.?g"]),
    (CanonicalField.FUEL_TYPE, [r"fuel.?type", r"^fuel$"]),
    (CanonicalField.TRANSMISSION, [r"transmission", r"^trans$"]),
    (CanonicalField.BODY_STYLE, [r"body.?style", r"^body$"]),
    (CanonicalField.WHOLE_LIFE_COST, [r"whole.?life", r"wlc"]),
    (CanonicalField.OTR_PRICE, [r"^otr$", r"^otrp$", r"on.?the.?road", r"otr.?price"]),
    (
        CanonicalField.BASIC_LIST_PRICE,
        [r"basic.?price", r"basic.?list", r"list.?price", r"base.?price", r"^blp$"],
    ),
    (CanonicalField.INSURANCE_GROUP, [r"insurance.?group"]),
    (CanonicalField.MPG_COMBINED, [r"mpg", r"fuel.?eco"]),
    (CanonicalField.WLTP_EV_RANGE, [r"ev.?range", r"electric.?range", r"wltp"]),
    (CanonicalField.EURO_RATING, [r"euro"]),
]
FIELD_PATTERNS: list[tuple[CanonicalField, list[re.Pattern[str]]]] = [
    (f, [re.compile(p, flags=re.IGNORECASE) for p in patterns]) for f, patterns in _RAW_FIELD_PATTERNS
]


class MappingStore(Protocol):
    def get_provider_mapping(self, provider_key: str) -> dict[str, Any] | None: ...


@dataclass(frozen=True)
class MappingResolution:
    mapping: ColumnMapping
    source: MappingSource
    details: list[SuggestedMapping] = field(default_factory=list)
    suggested_provider_name: str | None = None
    llm_usage: dict[str, Any] | None = None
    ai_error: str | None = None

    @property
    def missing_fields(self) -> list[str]:
        return missing_required_fields(self.mapping)

    @property
    def unmapped_columns(self) -> list[str]:
        return [col for col, target in self.mapping.items() if target is None]


def is_term_column(column: str) -> bool:
    return bool(TERM_CODE_PATTERN.fullmatch(str(column).strip()))


def term_columns(mapping: Mapping[str, CanonicalField | None]) -> list[str]:
    """Deposit+term columns whose cells are rentals, in mapping order."""
    return [
        col for col, target in mapping.items() if target == CanonicalField.TOTAL_RENTAL and is_term_column(col)
    ]


def coerce_mapping(raw: Mapping[str, Any]) -> ColumnMapping:
    """Turn a stored/caller mapping of field keys into CanonicalFields; unknown keys become None."""
    out: ColumnMapping = {}
    for column, target in raw.items():
        parsed = CanonicalField.parse(target)
        if parsed is None and target not in (None, ""):
            logger.warning("Ignoring unknown target field %r for column %r", target, column)
        out[str(column)] = parsed
    return out


def match_column(column: str) -> CanonicalField | None:
    if is_term_column(column):
        return CanonicalField.TOTAL_RENTAL
    for target, patterns in FIELD_PATTERNS:
        if any(p.search(column) for p in patterns):
            return target
    return None


def pattern_mappings(source_columns: list[str]) -> list[SuggestedMapping]:
    out: list[SuggestedMapping] = []
    for column in source_columns:
        target = match_column(column)
        if target is None:
            reasoning = "No pattern match found"
        elif is_term_column(column):
            reasoning = TERM_COLUMN_REASONING
        else:
            reasoning = PATTERN_REASONING
        out.append(
            SuggestedMapping(
                source_column=column,
                target_field=target,
                confidence=PATTERN_CONFIDENCE if target is not None else 0,
                reasoning=reasoning,
            )
        )
    return out


def missing_required_fields(mapping: Mapping[str, CanonicalField | None]) -> list[str]:
    mapped = {target for target in mapping.values() if target is not None}
    if term_columns(mapping):
        mapped.add(CanonicalField.TERM)
    return [f.value for f in REQUIRED_FIELDS if f not in mapped]


def resolve_column_mapping(
    source_columns: list[str],
    provider_key: str | None,
    *,
    store: MappingStore | None = None,
    suggester: ColumnSuggester | None = None,
    use_ai: bool = False,
    sample_rows: list[dict[str, str]] | None = None,
) -> MappingResolution:
    """
    Resolve source columns to canonical fields.

    Resolution order:
    1. Stored provider mapping, returned as stored
    2. AI suggestion, when requested and a suggester is available
    3. Ordered regex patterns
    """
    if store is not None and provider_key:
        stored = store.get_provider_mapping(provider_key)
        if stored:
            return MappingResolution(mapping=coerce_mapping(stored), source="stored")

    ai_error: str | None = None
    if use_ai and suggester is not None and suggester.available:
        try:
            suggestions = suggester.suggest(list(source_columns), sample_rows)
            mapping = suggestions.mapping(list(source_columns))
            # Term columns are rentals whatever the suggester thinks.
            for col in mapping:
                if is_term_column(col):
                    mapping[col] = CanonicalField.TOTAL_RENTAL
            return MappingResolution(
                mapping=mapping,
                source="ai",
                details=list(suggestions.response.mappings),
                suggested_provider_name=suggestions.response.suggested_provider_name,
                llm_usage=suggestions.llm_usage,
            )
        except Exception as e:  # noqa: BLE001
            ai_error = f"{e.__class__.__name__}: {e}"
            logger.warning("Column suggestion failed, falling back to patterns: %s", ai_error)

    details = pattern_mappings(list(source_columns))
    return MappingResolution(
        mapping={d.source_column: d.target_field for d in details},
        source="pattern",
        details=details,
        ai_error=ai_error,
    )
