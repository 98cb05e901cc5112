"""
Transpose a matrix-layout ratebook into flat rows.

A matrix sheet holds one vehicle: make/model/variant on the label row,
CAP identifiers and prices scattered above the grid, then one row per
mileage band with a rental per deposit+term column.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re

from ratebook_ingest.cells import to_trimmed_string
from ratebook_ingest.table_shape import MATRIX_LABELS, TERM_CODE_PATTERN, MatrixShape, RawTable, is_term_code


META_SCAN_ROWS = 15

MILEAGE_COLUMN = "Mileage"
META_COLUMNS = ["Make", "Model", "Variant", "CAP Code", "CAP ID", "BLP", "OTR", "Vehicle Description"]

# Label cell (upper-cased, trailing colon dropped) -> metadata column.
_META_LABELS: dict[str, str] = {
    "CAP CODE": "CAP Code",
    "CAPCODE": "CAP Code",
    "CAP ID": "CAP ID",
    "CAPID": "CAP ID",
    "BLP": "BLP",
    "BASIC LIST PRICE": "BLP",
    "BASIC PRICE": "BLP",
    "OTR": "OTR",
    "OTR PRICE": "OTR",
}

_CAP_CODE_RE = re.compile(r"\b[A-Z]{3,}\d{1,4}[A-Z0-9]{3,}\b")


@dataclass(frozen=True)
class MatrixTable:
    headers: list[str]
    rows: list[dict[str, str]]
    meta: dict[str, str] = field(default_factory=dict)
    term_codes: list[str] = field(default_factory=list)
    # 1-based sheet row of each band row.
    row_numbers: list[int] = field(default_factory=list)

    def records(self) -> list[dict[str, str]]:
        """Band rows with the vehicle metadata merged in, keyed by header."""
        out: list[dict[str, str]] = []
        for row in self.rows:
            record = {h: self.meta.get(h, "") for h in META_COLUMNS}
            record.update(row)
            out.append(record)
        return out


def _label_key(cell: object) -> str:
    return to_trimmed_string(cell).upper().rstrip(":").strip()


def extract_term_columns(term_row: list[object]) -> list[tuple[str, int]]:
    """
    (term code, column index) in left-to-right order; duplicates keep their first column.

    Cells such as "1+23 Months" are reduced to the bare code.
    """
    seen: set[str] = set()
    out: list[tuple[str, int]] = []
    for idx, cell in enumerate(term_row):
        m = TERM_CODE_PATTERN.search(to_trimmed_string(cell))
        if not m:
            continue
        code = m.group(0)
        if code in seen:
            continue
        seen.add(code)
        out.append((code, idx))
    return out


def _value_right_of(row: list[object], idx: int) -> str:
    for cell in row[idx + 1 :]:
        value = to_trimmed_string(cell)
        if value:
            return value
    return ""


def _is_marker(value: str) -> bool:
    upper = value.upper()
    return any(label in upper for label in MATRIX_LABELS) or is_term_code(value)


def extract_matrix_meta(rows: RawTable, label_row_index: int) -> dict[str, str]:
    meta: dict[str, str] = {}

    for row in rows[:META_SCAN_ROWS]:
        for idx, cell in enumerate(row):
            column = _META_LABELS.get(_label_key(cell))
            if column is None or meta.get(column):
                continue
            value = _value_right_of(row, idx)
            if value:
                meta[column] = value

    if not meta.get("CAP Code"):
        for row in rows[:META_SCAN_ROWS]:
            for cell in row:
                m = _CAP_CODE_RE.search(to_trimmed_string(cell))
                if m:
                    meta["CAP Code"] = m.group(0)
                    break
            if meta.get("CAP Code"):
                break

    label_row = rows[label_row_index] if 0 <= label_row_index < len(rows) else []
    vehicle_parts: list[str] = []
    for cell in label_row:
        value = to_trimmed_string(cell)
        if not value or _is_marker(value) or _label_key(value) in _META_LABELS:
            continue
        vehicle_parts.append(value)
        if len(vehicle_parts) == 3:
            break

    for column, value in zip(["Make", "Model", "Variant"], vehicle_parts):
        meta[column] = value
    if vehicle_parts:
        meta["Vehicle Description"] = " ".join(vehicle_parts)

    return meta


def transpose_matrix(rows: RawTable, shape: MatrixShape) -> MatrixTable:
    term_row = rows[shape.term_row_index] if shape.term_row_index < len(rows) else []
    term_columns = extract_term_columns(term_row)
    term_codes = [code for code, _ in term_columns]

    band_rows: list[dict[str, str]] = []
    row_numbers: list[int] = []
    for i in range(shape.term_row_index + 1, len(rows)):
        row = rows[i]
        band = to_trimmed_string(row[0]) if row else ""
        if not band:
            continue
        out = {MILEAGE_COLUMN: band}
        for code, idx in term_columns:
            out[code] = to_trimmed_string(row[idx]) if idx < len(row) else ""
        band_rows.append(out)
        row_numbers.append(i + 1)

    return MatrixTable(
        headers=[*META_COLUMNS, MILEAGE_COLUMN, *term_codes],
        rows=band_rows,
        meta=extract_matrix_meta(rows, shape.label_row_index),
        term_codes=term_codes,
        row_numbers=row_numbers,
    )
