"""
Generic ratebook importer.

Takes a raw ratebook file for one provider and contract type and loads it
into the rate store:
- reject byte-identical re-uploads for the same provider
- detect the table shape, extract rows and resolve the column mapping
- replace the provider's latest batch for the contract type
- convert rows in fixed-size batches, cross-referencing the vehicle list
- trigger rate scoring and record the final verdict
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import hashlib
import logging
import time
from typing import Any, Callable, Mapping

from ratebook_ingest.column_analyzer import ColumnSuggester
from ratebook_ingest.column_mapping import (
    ColumnMapping,
    coerce_mapping,
    missing_required_fields,
    resolve_column_mapping,
    term_columns,
)
from ratebook_ingest.config import AppConfig
from ratebook_ingest.errors import DuplicateImportError, MissingRequiredFieldsError, StructuralImportError
from ratebook_ingest.fields import CanonicalField
from ratebook_ingest.readers import ExtractedTable, SourceRow, extract_headers
from ratebook_ingest.records import RateRecord, RowError, RowValues, expand_row, to_rate_record
from ratebook_ingest.store import RatebookStore
from ratebook_ingest.trace import ImportTrace


logger = logging.getLogger(__name__)

UNKNOWN_SENTINEL = "UNKNOWN"


@dataclass(frozen=True)
class ImportOutcome:
    success: bool
    import_id: str | None
    batch_id: str
    total_rows: int = 0
    success_rows: int = 0
    error_rows: int = 0
    unique_cap_codes: int = 0
    errors: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    trace: ImportTrace = field(default_factory=ImportTrace)

    def to_dict(self) -> dict[str, Any]:
        out = {k: v for k, v in asdict(self).items() if k != "trace"}
        out["trace"] = self.trace.to_dict()
        return out


@dataclass(frozen=True)
class PreparedImport:
    mapping: ColumnMapping
    candidates: list[tuple[int, RowValues]]


class ErrorLog:
    """Row errors kept up to a limit and counted beyond it, plus notes that are always kept."""

    def __init__(self, limit: int):
        self.limit = limit
        self.messages: list[str] = []
        self.notes: list[str] = []
        self.suppressed = 0

    def add(self, message: str) -> None:
        if len(self.messages) < self.limit:
            self.messages.append(message)
        else:
            self.suppressed += 1

    def note(self, message: str) -> None:
        self.notes.append(message)

    def head(self, n: int) -> list[str]:
        return (self.messages[: max(0, n - len(self.notes))] + self.notes)[:n]


def file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def make_batch_id(provider_code: str, contract_type: str, *, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{provider_code}_{contract_type.lower()}_{now_ms}"


def duplicate_message(created_at: object) -> str:
    return f"Duplicate file detected. This ratebook was already imported on {created_at}"


def _is_unknown(value: str | None) -> bool:
    return not value or value.strip().upper() == UNKNOWN_SENTINEL


def _caller_rows(rows: list[Mapping[str, object]]) -> tuple[list[str], list[SourceRow]]:
    headers: list[str] = []
    for row in rows:
        for key in row:
            if key not in headers:
                headers.append(str(key))
    # Caller rows are numbered as if row 1 held the headers.
    return headers, [SourceRow(number=i + 2, values=dict(row)) for i, row in enumerate(rows)]


def prepare_import(
    content: bytes,
    *,
    file_name: str,
    provider_key: str,
    store: RatebookStore,
    column_mapping: Mapping[str, Any] | None = None,
    rows: list[Mapping[str, object]] | None = None,
    suggester: ColumnSuggester | None = None,
    use_ai: bool = False,
    trace: ImportTrace | None = None,
) -> PreparedImport:
    """Parse, map and expand a ratebook without touching import state.

    Raises StructuralImportError when nothing importable is found and
    MissingRequiredFieldsError when the mapping leaves required fields out.
    """
    table: ExtractedTable | None = None
    if rows is not None:
        headers, source_rows = _caller_rows(rows)
        sample_rows = [{h: str(r.values.get(h, "")) for h in headers} for r in source_rows[:5]]
    else:
        table = extract_headers(content, file_name)
        headers, source_rows, sample_rows = table.headers, table.rows, table.sample_rows

    if not source_rows:
        raise StructuralImportError(f"No data rows found in {file_name}")

    if trace is not None:
        trace.add(
            "Parsing",
            summary=f"{len(source_rows)} source rows, {'matrix' if table and table.is_matrix else 'flat'} layout",
            data={
                "headers": headers,
                "header_row_index": table.header_row_index if table else 0,
                "meta": table.meta if table else {},
            },
        )

    llm_usage = None
    if column_mapping is not None:
        mapping = coerce_mapping(column_mapping)
        mapping_source = "explicit"
    else:
        resolution = resolve_column_mapping(
            headers,
            provider_key,
            store=store,
            suggester=suggester,
            use_ai=use_ai,
            sample_rows=sample_rows,
        )
        mapping = resolution.mapping
        mapping_source = resolution.source
        llm_usage = resolution.llm_usage

    if trace is not None:
        trace.add(
            "Column mapping",
            summary=f"Resolved from {mapping_source}",
            data=mapping_to_keys(mapping),
            llm_usage=llm_usage,
        )

    missing = missing_required_fields(mapping)
    if missing:
        raise MissingRequiredFieldsError(missing)

    term_cols = term_columns(mapping)
    candidates: list[tuple[int, RowValues]] = []
    for row in source_rows:
        for values in expand_row(row, mapping, term_cols):
            candidates.append((row.number, values))

    if not candidates:
        raise StructuralImportError(f"No rate values found in {file_name}")

    return PreparedImport(mapping=mapping, candidates=candidates)


def _backfill_from_vehicles(store: RatebookStore, records: list[RateRecord]) -> int:
    matches = store.find_vehicles(sorted({r.cap_code for r in records}))
    matched = 0
    for record in records:
        vehicle = matches.get(record.cap_code)
        if vehicle is None:
            continue
        matched += 1
        record.vehicle_id = vehicle.vehicle_id
        if _is_unknown(record.manufacturer) and vehicle.manufacturer:
            record.manufacturer = vehicle.manufacturer
        if _is_unknown(record.model) and vehicle.model:
            record.model = vehicle.model
        if not record.variant and vehicle.variant:
            record.variant = vehicle.variant
    return matched


def _insert_row_by_row(store: RatebookStore, records: list[RateRecord], errors: ErrorLog) -> list[RateRecord]:
    inserted: list[RateRecord] = []
    for record in records:
        try:
            store.insert_rates([record])
        except Exception as e:  # noqa: BLE001
            errors.add(f"Row {record.row_number}: Insert error: {e}")
            continue
        inserted.append(record)
    return inserted


def import_ratebook(
    content: bytes,
    *,
    file_name: str,
    provider_code: str,
    contract_type: str,
    store: RatebookStore,
    config: AppConfig | None = None,
    column_mapping: Mapping[str, Any] | None = None,
    rows: list[Mapping[str, object]] | None = None,
    mapping_key: str | None = None,
    user_id: str | None = None,
    suggester: ColumnSuggester | None = None,
    use_ai: bool = False,
    should_continue: Callable[[], bool] | None = None,
) -> ImportOutcome:
    config = config or AppConfig()
    limits = config.imports
    contract_type = contract_type.strip().upper()
    trace = ImportTrace()
    trace.add(
        "Received",
        summary=f"{file_name} ({len(content)} bytes)",
        data={"provider_code": provider_code, "contract_type": contract_type, "user_id": user_id},
    )

    digest = file_hash(content)
    batch_id = make_batch_id(provider_code, contract_type)
    trace.add("Hashed", data={"file_hash": digest, "batch_id": batch_id})

    def failure(errors: list[str], *, missing: list[str] | None = None) -> ImportOutcome:
        return ImportOutcome(
            success=False,
            import_id=None,
            batch_id=batch_id,
            errors=errors[: limits.outcome_error_limit],
            missing_fields=missing or [],
            trace=trace,
        )

    def duplicate(existing: dict[str, Any] | None) -> ImportOutcome:
        created_at = existing.get("created_at") if existing else "an earlier date"
        trace.add(
            "Duplicate rejected",
            summary=f"Matches import {existing.get('id') if existing else 'unknown'}",
            data={"existing_import_id": existing.get("id") if existing else None},
        )
        return failure([duplicate_message(created_at)])

    if contract_type not in config.providers.supported_contract_types:
        trace.add("Rejected", summary=f"Unsupported contract type {contract_type}")
        return failure(
            [
                f"Unsupported contract type {contract_type}. "
                f"Expected one of: {', '.join(config.providers.supported_contract_types)}"
            ]
        )

    existing = store.find_import_by_hash(provider_code, digest)
    if existing:
        return duplicate(existing)

    provider = store.ensure_provider(provider_code, default_contract_types=config.providers.default_contract_types)
    trace.add("Provider resolved", summary=str(provider.get("name") or provider_code), data=provider)

    try:
        prepared = prepare_import(
            content,
            file_name=file_name,
            provider_key=mapping_key or provider_code,
            store=store,
            column_mapping=column_mapping,
            rows=rows,
            suggester=suggester,
            use_ai=use_ai,
            trace=trace,
        )
    except MissingRequiredFieldsError as e:
        trace.add("Mapping rejected", summary=str(e), data={"missing_fields": e.missing})
        return failure([str(e)], missing=e.missing)
    except StructuralImportError as e:
        trace.add("Parse failed", summary=str(e))
        return failure([str(e)])

    try:
        batch = store.create_import(
            provider_id=provider.get("id"),
            provider_code=provider_code,
            contract_type=contract_type,
            batch_id=batch_id,
            file_name=file_name,
            file_hash=digest,
            created_by=user_id,
        )
    except DuplicateImportError:
        return duplicate(store.find_import_by_hash(provider_code, digest))

    import_id = str(batch["id"])
    candidates = prepared.candidates
    total_rows = len(candidates)
    success_rows = 0
    error_rows = 0
    cap_codes: set[str] = set()
    errors = ErrorLog(max(limits.error_log_limit, limits.outcome_error_limit))
    stopped = False
    logger.debug(
        "Import %s: %d candidate rows from %d mapped columns",
        import_id,
        total_rows,
        sum(1 for target in prepared.mapping.values() if target is not None),
    )

    try:
        for start in range(0, total_rows, limits.batch_size):
            if should_continue is not None and not should_continue():
                stopped = True
                errors.note(f"Import stopped after {start} of {total_rows} rows")
                trace.add("Stopped", summary=f"Stopped after {start} of {total_rows} rows")
                break

            chunk = candidates[start : start + limits.batch_size]
            records: list[RateRecord] = []
            for row_number, values in chunk:
                try:
                    record = to_rate_record(
                        values,
                        provider_code=provider_code,
                        contract_type=contract_type,
                        defaults=limits,
                        import_id=import_id,
                        row_number=row_number,
                    )
                except RowError as e:
                    error_rows += 1
                    errors.add(f"Row {row_number}: {e}")
                    continue
                records.append(record)
                success_rows += 1

            matched = 0
            if records:
                matched = _backfill_from_vehicles(store, records)
                inserted = records
                try:
                    store.insert_rates(records)
                except Exception as e:  # noqa: BLE001
                    logger.error("Batch insert failed for import %s at row %s: %s", import_id, chunk[0][0], e)
                    if limits.retry_failed_batches_by_row:
                        inserted = _insert_row_by_row(store, records, errors)
                    else:
                        inserted = []
                        errors.add(f"Batch insert error at row {chunk[0][0]}: {e}")
                    failed = len(records) - len(inserted)
                    error_rows += failed
                    success_rows -= failed
                cap_codes.update(r.cap_code for r in inserted)

            store.update_import_progress(
                import_id,
                total_rows=total_rows,
                success_rows=success_rows,
                error_rows=error_rows,
                unique_cap_codes=len(cap_codes),
            )
            trace.add(
                "Row batch",
                summary=f"Rows {start + 1}-{start + len(chunk)} of {total_rows}",
                data={
                    "success_rows": success_rows,
                    "error_rows": error_rows,
                    "vehicle_matches": matched,
                },
            )
    except Exception as e:  # noqa: BLE001
        logger.exception("Import %s aborted", import_id)
        stopped = True
        errors.note(f"Import aborted: {e.__class__.__name__}: {e}")
        trace.add("Aborted", summary=str(e))

    if not stopped:
        try:
            scored = store.recalculate_scores(import_id)
            trace.add("Scoring triggered", data={"scored_rates": scored})
        except Exception as e:  # noqa: BLE001
            logger.error("Score calculation failed for import %s: %s", import_id, e)
            errors.note(f"Score calculation failed: {e}")
            trace.add("Scoring failed", summary=str(e))

    if stopped or error_rows > total_rows / 2:
        status = "failed"
    else:
        status = "completed"

    store.finalize_import(
        import_id,
        status=status,
        total_rows=total_rows,
        success_rows=success_rows,
        error_rows=error_rows,
        unique_cap_codes=len(cap_codes),
        error_log=errors.head(limits.error_log_limit) or None,
    )
    trace.add(
        "Finalized",
        summary=status,
        data={
            "success_rows": success_rows,
            "error_rows": error_rows,
            "unique_cap_codes": len(cap_codes),
            "suppressed_errors": errors.suppressed,
        },
    )

    return ImportOutcome(
        success=status == "completed",
        import_id=import_id,
        batch_id=batch_id,
        total_rows=total_rows,
        success_rows=success_rows,
        error_rows=error_rows,
        unique_cap_codes=len(cap_codes),
        errors=errors.head(limits.outcome_error_limit),
        missing_fields=[],
        trace=trace,
    )


def mapping_to_keys(mapping: Mapping[str, CanonicalField | None]) -> dict[str, str | None]:
    return {col: (target.value if target else None) for col, target in mapping.items()}
