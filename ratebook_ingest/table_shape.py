"""
Detect the shape of a raw ratebook table.

Ratebooks arrive in two layouts:
- Flat: one quote per row, preceded by any number of title/count rows
- Matrix: one row per mileage band, one column per deposit+term code
  (e.g. "1+23", "3+35"), with vehicle details scattered above the grid

Only the first rows of a sheet carry shape signals, so detection never
looks past SCAN_ROWS.
"""

from __future__ import annotations

from dataclasses import dataclass
import re

from ratebook_ingest.cells import to_trimmed_string


RawTable = list[list[object]]

SCAN_ROWS = 30
HEADER_SCAN_ROWS = 15
KEYWORD_SCAN_ROWS = 10
MIN_HEADER_CELLS = 5
MIN_TERM_CELLS = 3

TERM_CODE_PATTERN = re.compile(r"\b\d{1,2}\+\d{2}\b")

HEADER_KEYWORDS = [
    "MANUFACTURER",
    "CAP CODE",
    "CAP_CODE",
    "CAPCODE",
    "MILEAGE",
    "RENTAL",
    "MODEL",
    "MAKE",
    "VARIANT",
    "DERIVATIVE",
]

MATRIX_LABELS = ["BASE RENTALS", "BCH RATES", "ADD VAT FOR PCH", "PCH", "BCH"]


@dataclass(frozen=True)
class FlatShape:
    header_row_index: int

    @property
    def is_matrix(self) -> bool:
        return False


@dataclass(frozen=True)
class MatrixShape:
    term_row_index: int
    label_row_index: int

    @property
    def is_matrix(self) -> bool:
        return True


TableShape = FlatShape | MatrixShape


def count_filled_cells(row: list[object]) -> int:
    return sum(1 for cell in row if to_trimmed_string(cell) != "")


def row_text(row: list[object]) -> str:
    return " ".join(to_trimmed_string(cell) for cell in row).upper()


def is_term_code(value: object) -> bool:
    return bool(TERM_CODE_PATTERN.search(to_trimmed_string(value)))


def find_header_row_index(rows: RawTable) -> int:
    """
    Locate the header row of a flat table.

    Detection rules:
    1. The row with the most filled cells among the first 15 rows wins
       if it has at least 5 filled cells
    2. Otherwise the first of the first 10 rows containing a header keyword
    3. Otherwise the fullest row, however sparse
    """
    max_filled = 0
    header_row_index = 0
    for i, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        filled = count_filled_cells(row)
        if filled > max_filled:
            max_filled = filled
            header_row_index = i

    if max_filled >= MIN_HEADER_CELLS:
        return header_row_index

    for i, row in enumerate(rows[:KEYWORD_SCAN_ROWS]):
        text = row_text(row)
        if any(keyword in text for keyword in HEADER_KEYWORDS):
            return i

    return header_row_index


def find_matrix_rows(rows: RawTable) -> tuple[int | None, int | None]:
    """Return (term_row_index, label_row_index); later matches win."""
    term_row_index: int | None = None
    label_row_index: int | None = None

    for i, row in enumerate(rows[:SCAN_ROWS]):
        if sum(1 for cell in row if is_term_code(cell)) >= MIN_TERM_CELLS:
            term_row_index = i
        text = row_text(row)
        if any(label in text for label in MATRIX_LABELS):
            label_row_index = i

    return term_row_index, label_row_index


def detect_table_shape(rows: RawTable) -> TableShape:
    term_row_index, label_row_index = find_matrix_rows(rows)
    if term_row_index is not None and label_row_index is not None:
        return MatrixShape(term_row_index=term_row_index, label_row_index=label_row_index)
    return FlatShape(header_row_index=find_header_row_index(rows))
