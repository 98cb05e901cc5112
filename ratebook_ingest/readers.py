from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePath
import csv
import io

import pandas as pd

from ratebook_ingest.cells import is_empty, to_int, to_trimmed_string
from ratebook_ingest.errors import StructuralImportError
from ratebook_ingest.matrix import transpose_matrix
from ratebook_ingest.table_shape import FlatShape, MatrixShape, RawTable, TableShape, count_filled_cells, detect_table_shape


CSV_EXTENSIONS = {".csv", ".txt"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm", ".xls"}
SAMPLE_ROW_LIMIT = 5


@dataclass(frozen=True)
class SourceRow:
    """One data row keyed by header, with its 1-based spreadsheet row number."""

    number: int
    values: dict[str, object]


@dataclass(frozen=True)
class ExtractedTable:
    headers: list[str]
    rows: list[SourceRow]
    sample_rows: list[dict[str, str]]
    header_row_index: int
    shape: TableShape
    meta: dict[str, str] = field(default_factory=dict)

    @property
    def is_matrix(self) -> bool:
        return self.shape.is_matrix


def _decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("cp1252", errors="replace")


def _trim_trailing_empty_rows(rows: RawTable) -> RawTable:
    end = len(rows)
    while end > 0 and count_filled_cells(rows[end - 1]) == 0:
        end -= 1
    return rows[:end]


def read_raw_table(content: bytes, file_name: str) -> RawTable:
    """Read the first sheet (or the CSV body) as rows of raw cells, no header assumed."""
    suffix = PurePath(file_name or "").suffix.lower()

    if suffix in CSV_EXTENSIONS:
        reader = csv.reader(io.StringIO(_decode_text(content), newline=""))
        try:
            rows = [list(row) for row in reader]
        except csv.Error as e:
            raise StructuralImportError(f"Unable to read CSV {file_name}: {e}") from e
        return _trim_trailing_empty_rows(rows)

    if suffix in EXCEL_EXTENSIONS:
        try:
            df = pd.read_excel(io.BytesIO(content), sheet_name=0, header=None, dtype=object)
        except Exception as e:  # noqa: BLE001
            raise StructuralImportError(f"Unable to read spreadsheet {file_name}: {e.__class__.__name__}: {e}") from e
        df = df.astype(object).where(pd.notna(df), "")
        return _trim_trailing_empty_rows(df.values.tolist())

    raise StructuralImportError(f"Unsupported file type: {file_name} (expected .csv, .xlsx or .xls)")


def _dedupe_headers(raw_headers: list[str]) -> list[str]:
    seen: dict[str, int] = {}
    out: list[str] = []
    for idx, raw in enumerate(raw_headers):
        name = raw or f"Column {idx + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}.{seen[name]}"
        else:
            seen[name] = 0
        out.append(name)
    return out


def _is_number(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return not is_empty(value)
    return to_int(value) is not None


def _is_count_row(row: list[object]) -> bool:
    filled = [cell for cell in row if to_trimmed_string(cell) != ""]
    return len(filled) == 1 and _is_number(filled[0])


def is_valid_data_row(values: list[object]) -> bool:
    """Preview filter: keep rows that look like real quotes rather than titles or counts."""
    filled = [v for v in values if to_trimmed_string(v) != ""]
    if len(filled) < 3:
        return False

    text_values = [
        v for v in values if isinstance(v, str) and len(v.strip()) > 2 and not _is_number(v)
    ]

    first = values[0] if values else None
    if _is_number(first):
        first_number = to_int(first) or 0
        # Spreadsheet serial dates and row counts land in this range.
        if 30000 < first_number < 100000 and len(text_values) < 2:
            return False

    return bool(text_values)


def _flat_table(rows: RawTable, shape: FlatShape) -> ExtractedTable:
    header_row_index = shape.header_row_index
    header_row = rows[header_row_index] if header_row_index < len(rows) else []
    body = rows[header_row_index + 1 :]

    width = max([len(header_row), *(len(r) for r in body)]) if (header_row or body) else 0
    raw_headers = [to_trimmed_string(c) for c in header_row] + [""] * (width - len(header_row))
    headers = _dedupe_headers(raw_headers)

    source_rows: list[SourceRow] = []
    sample_rows: list[dict[str, str]] = []
    leading = True
    for offset, row in enumerate(body):
        if count_filled_cells(row) == 0:
            continue
        if leading and _is_count_row(row):
            continue
        leading = False

        padded = list(row) + [""] * (width - len(row))
        values = dict(zip(headers, padded))
        source_rows.append(SourceRow(number=header_row_index + 2 + offset, values=values))
        if len(sample_rows) < SAMPLE_ROW_LIMIT and is_valid_data_row(padded):
            sample_rows.append({h: to_trimmed_string(v) for h, v in values.items()})

    return ExtractedTable(
        headers=headers,
        rows=source_rows,
        sample_rows=sample_rows,
        header_row_index=header_row_index,
        shape=shape,
    )


def _matrix_table(rows: RawTable, shape: MatrixShape) -> ExtractedTable:
    matrix = transpose_matrix(rows, shape)
    records = matrix.records()
    source_rows = [
        SourceRow(number=number, values=dict(record)) for number, record in zip(matrix.row_numbers, records)
    ]
    return ExtractedTable(
        headers=matrix.headers,
        rows=source_rows,
        sample_rows=records[:SAMPLE_ROW_LIMIT],
        header_row_index=shape.term_row_index,
        shape=shape,
        meta=dict(matrix.meta),
    )


def extract_table(rows: RawTable) -> ExtractedTable:
    shape = detect_table_shape(rows)
    if isinstance(shape, MatrixShape):
        return _matrix_table(rows, shape)
    return _flat_table(rows, shape)


def extract_headers(content: bytes, file_name: str) -> ExtractedTable:
    return extract_table(read_raw_table(content, file_name))
