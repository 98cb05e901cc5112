from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import FakeSuggester
from ratebook_ingest.column_analyzer import OpenAIColumnSuggester
from ratebook_ingest.column_mapping import (
    PATTERN_CONFIDENCE,
    match_column,
    missing_required_fields,
    pattern_mappings,
    resolve_column_mapping,
)
from ratebook_ingest.config import OpenAIConfig
from ratebook_ingest.fields import CanonicalField


class FakeChatClient:
    def __init__(self, content: str):
        self.kwargs: dict | None = None
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))
        self._content = content

    def _create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self._content))],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=30, total_tokens=150),
        )


def test_scenario_c_patterns_without_stored_mapping(store):
    resolution = resolve_column_mapping(["CAP_CODE", "Net_Rental", "ANNUAL_MILEAGE"], "ald", store=store)

    assert resolution.source == "pattern"
    assert resolution.mapping == {
        "CAP_CODE": CanonicalField.CAP_CODE,
        "Net_Rental": CanonicalField.TOTAL_RENTAL,
        "ANNUAL_MILEAGE": CanonicalField.ANNUAL_MILEAGE,
    }
    assert resolution.unmapped_columns == []
    assert all(d.confidence == PATTERN_CONFIDENCE for d in resolution.details)


@pytest.mark.parametrize(
    "column, expected",
    [
        ("CAP Code", CanonicalField.CAP_CODE),
        ("Cap Id", CanonicalField.CAP_CODE),
        ("Make", CanonicalField.MANUFACTURER),
        ("Derivative", CanonicalField.VARIANT),
        ("Contract Term", CanonicalField.TERM),
        ("Excess Mileage", CanonicalField.EXCESS_MILEAGE_PPM),
        ("Mileage", CanonicalField.ANNUAL_MILEAGE),
        ("NET RENTAL WM", CanonicalField.TOTAL_RENTAL),
        ("NET RENTAL CM", CanonicalField.LEASE_RENTAL),
        ("Service Rental", CanonicalField.SERVICE_RENTAL),
        ("CO2 g/km", CanonicalField.CO2_GKM),
        ("OTR", CanonicalField.OTR_PRICE),
        ("BLP", CanonicalField.BASIC_LIST_PRICE),
        ("Basic List Price", CanonicalField.BASIC_LIST_PRICE),
        ("1+23", CanonicalField.TOTAL_RENTAL),
        ("12+47", CanonicalField.TOTAL_RENTAL),
        ("Dealer Notes", None),
    ],
)
def test_pattern_matching(column, expected):
    assert match_column(column) == expected


def test_unmatched_columns_have_zero_confidence():
    [detail] = pattern_mappings(["Dealer Notes"])
    assert detail.target_field is None
    assert detail.confidence == 0


def test_stored_mapping_is_returned_verbatim(store):
    store.save_provider_mapping("lex", {"Vehicle Rental": "totalRental", "CAP": "capCode", "Junk": "notAField"})
    suggester = FakeSuggester(response={"mappings": []})

    resolution = resolve_column_mapping(
        ["CAP_CODE", "Net_Rental"], "lex", store=store, suggester=suggester, use_ai=True
    )

    assert resolution.source == "stored"
    assert resolution.mapping == {
        "Vehicle Rental": CanonicalField.TOTAL_RENTAL,
        "CAP": CanonicalField.CAP_CODE,
        "Junk": None,
    }
    assert suggester.calls == 0


def test_ai_suggestion_used_when_requested(store):
    suggester = FakeSuggester(
        response={
            "mappings": [
                {"sourceColumn": "Vehicle Rental", "targetField": "totalRental", "confidence": 92, "reasoning": "rent"},
                {"sourceColumn": "Cap Id", "targetField": "capCode", "confidence": 150},
                {"sourceColumn": "Weird", "targetField": "bogus", "confidence": -5},
            ],
            "suggestedProviderName": "Lex Autolease",
        }
    )

    resolution = resolve_column_mapping(
        ["Vehicle Rental", "Cap Id", "Weird", "Other"], "lex", store=store, suggester=suggester, use_ai=True
    )

    assert resolution.source == "ai"
    assert resolution.mapping == {
        "Vehicle Rental": CanonicalField.TOTAL_RENTAL,
        "Cap Id": CanonicalField.CAP_CODE,
        "Weird": None,
        "Other": None,
    }
    assert [d.confidence for d in resolution.details] == [92, 100, 0]
    assert resolution.suggested_provider_name == "Lex Autolease"
    assert resolution.llm_usage["total_tokens"] == 15


def test_ai_failure_falls_back_to_patterns(store):
    suggester = FakeSuggester(error=TimeoutError("request timed out"))

    resolution = resolve_column_mapping(["CAP_CODE", "Net_Rental"], "ald", store=store, suggester=suggester, use_ai=True)

    assert suggester.calls == 1
    assert resolution.source == "pattern"
    assert resolution.mapping["CAP_CODE"] == CanonicalField.CAP_CODE
    assert "TimeoutError" in resolution.ai_error


def test_unavailable_suggester_is_not_called(store):
    suggester = FakeSuggester(response={"mappings": []}, available=False)
    resolution = resolve_column_mapping(["CAP_CODE"], "ald", store=store, suggester=suggester, use_ai=True)
    assert suggester.calls == 0
    assert resolution.source == "pattern"


def test_ai_mapping_keeps_term_columns_as_rentals(store):
    suggester = FakeSuggester(response={"mappings": [{"sourceColumn": "1+23", "targetField": "term"}]})
    resolution = resolve_column_mapping(["1+23"], None, suggester=suggester, use_ai=True)
    assert resolution.mapping == {"1+23": CanonicalField.TOTAL_RENTAL}


def test_missing_required_fields():
    mapping = {"CAP": CanonicalField.CAP_CODE, "Rental": CanonicalField.TOTAL_RENTAL}
    assert missing_required_fields(mapping) == ["manufacturer", "model", "term", "annualMileage"]


def test_term_columns_imply_term():
    mapping = {
        "CAP Code": CanonicalField.CAP_CODE,
        "Make": CanonicalField.MANUFACTURER,
        "Model": CanonicalField.MODEL,
        "Mileage": CanonicalField.ANNUAL_MILEAGE,
        "1+23": CanonicalField.TOTAL_RENTAL,
    }
    assert missing_required_fields(mapping) == []


def test_openai_suggester_parses_and_validates_response():
    client = FakeChatClient(
        '{"mappings": [{"sourceColumn": "CAP CODE", "targetField": "capCode", "confidence": 98, '
        '"reasoning": "exact"}, {"sourceColumn": "WIN ID", "targetField": "winId", "confidence": "high"}], '
        '"suggestedProviderName": "ALD Automotive"}'
    )
    suggester = OpenAIColumnSuggester(config=OpenAIConfig(api_key=None, model="gpt-4o-mini"), client=client)

    assert suggester.available
    result = suggester.suggest(["CAP CODE", "WIN ID"], [{"CAP CODE": "ABC123"}])

    assert result.mapping(["CAP CODE", "WIN ID"]) == {"CAP CODE": CanonicalField.CAP_CODE, "WIN ID": None}
    assert result.response.mappings[1].confidence == 0
    assert result.response.suggested_provider_name == "ALD Automotive"
    assert result.llm_usage == {
        "calls": 1,
        "prompt_tokens": 120,
        "completion_tokens": 30,
        "total_tokens": 150,
        "model": "gpt-4o-mini",
    }
    assert client.kwargs["response_format"] == {"type": "json_object"}
    assert "CAP CODE" in client.kwargs["messages"][1]["content"]


def test_openai_suggester_rejects_malformed_json():
    suggester = OpenAIColumnSuggester(config=OpenAIConfig(api_key="sk-test"), client=FakeChatClient("not json"))
    with pytest.raises(ValueError):
        suggester.suggest(["CAP CODE"])


def test_openai_suggester_unavailable_without_key():
    assert not OpenAIColumnSuggester(config=OpenAIConfig(api_key=None)).available
