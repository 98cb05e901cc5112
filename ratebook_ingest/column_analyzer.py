"""
AI column suggestions for unfamiliar ratebook layouts.

The suggester is optional: it is only available when an OpenAI API key is
configured, and callers treat any failure as "no suggestion".
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import re
from typing import Any, Protocol

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ratebook_ingest.config import OpenAIConfig
from ratebook_ingest.fields import FIELD_INFO, CanonicalField


UNKNOWN_PROVIDER_NAME = "Unknown Provider"


class SuggestedMapping(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_column: str = Field(alias="sourceColumn")
    target_field: CanonicalField | None = Field(default=None, alias="targetField")
    confidence: int = 0
    reasoning: str = ""

    @field_validator("target_field", mode="before")
    @classmethod
    def _known_field(cls, value: Any) -> CanonicalField | None:
        return CanonicalField.parse(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> int:
        try:
            number = float(value or 0)
        except (TypeError, ValueError):
            number = 0.0
        return int(round(min(100.0, max(0.0, number))))

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning_text(cls, value: Any) -> str:
        return str(value or "")


class SuggestionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mappings: list[SuggestedMapping] = Field(default_factory=list)
    suggested_provider_name: str = Field(default=UNKNOWN_PROVIDER_NAME, alias="suggestedProviderName")

    @field_validator("suggested_provider_name", mode="before")
    @classmethod
    def _provider_name(cls, value: Any) -> str:
        return str(value or UNKNOWN_PROVIDER_NAME)


@dataclass(frozen=True)
class ColumnSuggestions:
    response: SuggestionResponse
    llm_usage: dict[str, Any] | None = None

    def mapping(self, source_columns: list[str]) -> dict[str, CanonicalField | None]:
        suggested = {m.source_column: m.target_field for m in self.response.mappings}
        return {col: suggested.get(col) for col in source_columns}


class ColumnSuggester(Protocol):
    @property
    def available(self) -> bool: ...

    def suggest(self, headers: list[str], sample_rows: list[dict[str, str]] | None = None) -> ColumnSuggestions: ...


def build_prompt(headers: list[str], sample_rows: list[dict[str, str]] | None = None) -> str:
    field_lines = "\n".join(
        f"- {f.value}: {info.label} - {info.description}{' (REQUIRED)' if info.required else ''}"
        for f, info in FIELD_INFO.items()
    )
    column_lines = "\n".join(f'{i + 1}. "{h}"' for i, h in enumerate(headers))
    samples = ""
    if sample_rows:
        samples = "\n\nSample data from first few rows:\n" + json.dumps(sample_rows[:3], indent=2, default=str)

    return (
        "You are an expert at analyzing vehicle leasing ratebook files. "
        "Analyze these column headers and map them to our database fields.\n\n"
        f"SOURCE COLUMNS FROM FILE:\n{column_lines}{samples}\n\n"
        f"TARGET DATABASE FIELDS:\n{field_lines}\n\n"
        "For each source column, determine:\n"
        "1. Which database field it maps to (or null if no match)\n"
        "2. Confidence score 0-100 (100 = exact match, 70+ = confident, 50-69 = likely, <50 = uncertain)\n"
        "3. Brief reasoning\n\n"
        "Columns named like deposit+term codes (e.g. 1+23, 3+35) hold monthly rentals and map to totalRental.\n"
        "NET RENTAL WM (with maintenance) maps to totalRental; NET RENTAL CM (contract only) maps to leaseRental.\n\n"
        "Also suggest a provider name based on the file format and column names.\n\n"
        "Respond in JSON format:\n"
        '{"mappings": [{"sourceColumn": "COLUMN_NAME", "targetField": "fieldKey or null", '
        '"confidence": 85, "reasoning": "Brief explanation"}], "suggestedProviderName": "Provider Name"}'
    )


def json_loads_safe(text: str) -> dict:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def _usage_from_response(resp: Any, *, model: str | None = None) -> dict[str, Any]:
    usage = getattr(resp, "usage", None)
    prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
    completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
    total_tokens = int(getattr(usage, "total_tokens", 0) or 0) or prompt_tokens + completion_tokens
    out: dict[str, Any] = {
        "calls": 1,
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }
    if model:
        out["model"] = model
    return out


class OpenAIColumnSuggester:
    def __init__(self, *, config: OpenAIConfig, client: Any | None = None):
        self._config = config
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self._config.api_key)

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._config.api_key:
                raise RuntimeError("OPENAI_API_KEY is not set.")
            self._client = OpenAI(api_key=self._config.api_key)
        return self._client

    def suggest(self, headers: list[str], sample_rows: list[dict[str, str]] | None = None) -> ColumnSuggestions:
        client = self._get_client()
        kwargs = dict(
            model=self._config.model,
            temperature=self._config.temperature,
            messages=[
                {
                    "role": "system",
                    "content": "You are a data mapping expert specializing in vehicle leasing ratebooks. "
                    "Always respond with valid JSON.",
                },
                {"role": "user", "content": build_prompt(headers, sample_rows)},
            ],
        )

        try:
            resp = client.chat.completions.create(**kwargs, response_format={"type": "json_object"})
        except TypeError:
            resp = client.chat.completions.create(**kwargs)

        content = resp.choices[0].message.content or ""
        m = re.search(r"\{.*\}", content, flags=re.DOTALL)
        if not m:
            raise ValueError("No JSON object in column suggestion response")
        data = json_loads_safe(m.group(0))
        if not data:
            raise ValueError("Malformed column suggestion response")

        return ColumnSuggestions(
            response=SuggestionResponse.model_validate(data),
            llm_usage=_usage_from_response(resp, model=self._config.model),
        )
