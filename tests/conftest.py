from __future__ import annotations

import csv
from datetime import datetime, timezone
import io
from typing import Any, Callable
import uuid

from openpyxl import Workbook
import pytest

from ratebook_ingest.column_analyzer import ColumnSuggestions, SuggestionResponse
from ratebook_ingest.config import AppConfig
from ratebook_ingest.errors import DuplicateImportError
from ratebook_ingest.records import RateRecord
from ratebook_ingest.store import VehicleMatch


class InMemoryRatebookStore:
    """RatebookStore backed by dicts, with hooks for injecting failures."""

    def __init__(self) -> None:
        self.providers: dict[str, dict[str, Any]] = {}
        self.mappings: dict[str, dict[str, Any]] = {}
        self.vehicles: dict[str, VehicleMatch] = {}
        self.imports: dict[str, dict[str, Any]] = {}
        self.rates: list[RateRecord] = []
        self.progress_updates: list[dict[str, Any]] = []
        self.fail_insert: Callable[[list[RateRecord]], bool] | None = None
        self.fail_scoring: bool = False
        self.scored_imports: list[str] = []

    def find_import_by_hash(self, provider_code: str, file_hash: str) -> dict[str, Any] | None:
        for batch in self.imports.values():
            if batch["provider_code"] == provider_code and batch["file_hash"] == file_hash:
                return dict(batch)
        return None

    def ensure_provider(self, provider_code: str, *, default_contract_types: tuple[str, ...]) -> dict[str, Any]:
        if provider_code not in self.providers:
            self.providers[provider_code] = {
                "id": str(uuid.uuid4()),
                "code": provider_code,
                "name": provider_code[:1].upper() + provider_code[1:],
                "is_active": True,
                "supported_contract_types": list(default_contract_types),
            }
        return dict(self.providers[provider_code])

    def get_provider_mapping(self, provider_key: str) -> dict[str, Any] | None:
        return self.mappings.get(provider_key)

    def save_provider_mapping(self, provider_key: str, mapping: dict[str, str | None]) -> None:
        self.mappings[provider_key] = dict(mapping)

    def create_import(
        self,
        *,
        provider_id: str | None,
        provider_code: str,
        contract_type: str,
        batch_id: str,
        file_name: str,
        file_hash: str,
        created_by: str | None,
    ) -> dict[str, Any]:
        if self.find_import_by_hash(provider_code, file_hash):
            raise DuplicateImportError("Duplicate file detected")
        for batch in self.imports.values():
            if batch["provider_code"] == provider_code and batch["contract_type"] == contract_type:
                batch["is_latest"] = False
        import_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        self.imports[import_id] = {
            "id": import_id,
            "provider_id": provider_id,
            "provider_code": provider_code,
            "contract_type": contract_type,
            "batch_id": batch_id,
            "file_name": file_name,
            "file_hash": file_hash,
            "status": "processing",
            "is_latest": True,
            "total_rows": 0,
            "success_rows": 0,
            "error_rows": 0,
            "unique_cap_codes": 0,
            "error_log": None,
            "started_at": now,
            "completed_at": None,
            "created_at": now,
            "created_by": created_by,
        }
        return dict(self.imports[import_id])

    def update_import_progress(
        self, import_id: str, *, total_rows: int, success_rows: int, error_rows: int, unique_cap_codes: int
    ) -> None:
        update = {
            "total_rows": total_rows,
            "success_rows": success_rows,
            "error_rows": error_rows,
            "unique_cap_codes": unique_cap_codes,
        }
        self.imports[import_id].update(update)
        self.progress_updates.append(update)

    def insert_rates(self, records: list[RateRecord]) -> int:
        if self.fail_insert is not None and self.fail_insert(records):
            raise RuntimeError("insert rejected")
        self.rates.extend(records)
        return len(records)

    def find_vehicles(self, cap_codes: list[str]) -> dict[str, VehicleMatch]:
        return {code: self.vehicles[code] for code in cap_codes if code in self.vehicles}

    def recalculate_scores(self, import_id: str) -> int:
        if self.fail_scoring:
            raise RuntimeError("function calculate_rate_score_with_breakdown does not exist")
        self.scored_imports.append(import_id)
        return sum(1 for r in self.rates if r.import_id == import_id)

    def finalize_import(
        self,
        import_id: str,
        *,
        status: str,
        total_rows: int,
        success_rows: int,
        error_rows: int,
        unique_cap_codes: int,
        error_log: list[str] | None,
    ) -> None:
        self.imports[import_id].update(
            {
                "status": status,
                "total_rows": total_rows,
                "success_rows": success_rows,
                "error_rows": error_rows,
                "unique_cap_codes": unique_cap_codes,
                "error_log": error_log,
                "completed_at": datetime.now(timezone.utc),
            }
        )

    def get_import(self, import_id: str, *, sample_limit: int = 20) -> dict[str, Any] | None:
        batch = self.imports.get(import_id)
        if batch is None:
            return None
        out = dict(batch)
        out["sample_rates"] = [r for r in self.rates if r.import_id == import_id][:sample_limit]
        return out

    def list_imports(
        self,
        *,
        provider_code: str | None = None,
        contract_type: str | None = None,
        latest_only: bool = False,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        rows = [
            dict(b)
            for b in self.imports.values()
            if (not provider_code or b["provider_code"] == provider_code)
            and (not contract_type or b["contract_type"] == contract_type)
            and (not latest_only or b["is_latest"])
        ]
        return rows[:limit]

    def delete_import(self, import_id: str) -> bool:
        if import_id not in self.imports:
            return False
        del self.imports[import_id]
        self.rates = [r for r in self.rates if r.import_id != import_id]
        return True

    def rate_stats(self, *, provider_code: str | None = None, contract_type: str | None = None) -> dict[str, int]:
        rates = [
            r
            for r in self.rates
            if (not provider_code or r.provider_code == provider_code)
            and (not contract_type or r.contract_type == contract_type)
        ]
        return {"total_rates": len(rates), "unique_cap_codes": len({r.cap_code for r in rates})}


class FakeSuggester:
    def __init__(self, response: dict | None = None, error: Exception | None = None, available: bool = True):
        self._response = response
        self._error = error
        self._available = available
        self.calls = 0

    @property
    def available(self) -> bool:
        return self._available

    def suggest(self, headers, sample_rows=None):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return ColumnSuggestions(
            response=SuggestionResponse.model_validate(self._response),
            llm_usage={"calls": 1, "prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )


def csv_bytes(rows: list[list[object]]) -> bytes:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerows(rows)
    return buf.getvalue().encode("utf-8")


def xlsx_bytes(rows: list[list[object]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


FLAT_HEADER = ["CAP_CODE", "MANUFACTURER", "MODEL", "VARIANT", "TERM", "ANNUAL_MILEAGE", "NET RENTAL"]


@pytest.fixture
def store() -> InMemoryRatebookStore:
    return InMemoryRatebookStore()


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def flat_rows() -> list[list[object]]:
    return [
        FLAT_HEADER,
        ["ABC123XYZ", "bmw", "3 Series", "320i M Sport", "36", "10000", "£299.99"],
        ["DEF456UVW", "Audi", "A3", "Sportback", "24", "8,000", "249.50"],
        ["GHI789RST", "Kia", "Niro", "EV 4", "48", "5000", "1,049.01"],
    ]
