from __future__ import annotations

import pytest

from conftest import FLAT_HEADER, csv_bytes, xlsx_bytes
from ratebook_ingest.errors import StructuralImportError
from ratebook_ingest.readers import extract_headers, is_valid_data_row, read_raw_table


def test_read_xlsx_first_sheet_without_header(flat_rows):
    rows = read_raw_table(xlsx_bytes(flat_rows), "lex.xlsx")
    assert rows[0] == FLAT_HEADER
    assert rows[1][0] == "ABC123XYZ"
    assert len(rows) == 4


def test_read_csv_with_ragged_title_rows():
    content = csv_bytes(
        [
            ["Broker - CHcm5k"],
            FLAT_HEADER,
            ["ABC123XYZ", "BMW", "3 Series", "320i", "36", "10000", "299.99"],
        ]
    )
    rows = read_raw_table(content, "ald.CSV")
    assert rows[0] == ["Broker - CHcm5k"]
    assert rows[1] == FLAT_HEADER


def test_read_csv_with_bom_and_cp1252():
    assert read_raw_table("\ufeffa,b\n1,2\n".encode("utf-8"), "x.csv") == [["a", "b"], ["1", "2"]]
    assert read_raw_table("name,price\nCitro\xebn,\xa3100\n".encode("cp1252"), "x.csv")[1] == ["Citroën", "£100"]


def test_unsupported_extension_is_structural():
    with pytest.raises(StructuralImportError):
        read_raw_table(b"{}", "rates.json")


def test_oversized_csv_field_is_structural():
    content = csv_bytes([["CAP CODE", "NOTES"], ["ABC123", "x" * 200_000]])
    with pytest.raises(StructuralImportError, match="Unable to read CSV big.csv"):
        read_raw_table(content, "big.csv")


def test_corrupt_workbook_is_structural():
    with pytest.raises(StructuralImportError):
        read_raw_table(b"definitely not a zip", "rates.xlsx")


def test_extract_headers_from_xlsx_with_title_and_count_rows():
    rows = [
        ["Broker - CHcm5k", 45993.071],
        ["TERM", "ANNUAL_MILEAGE", "MANUFACTURER", "MODEL", "", "CAP CODE", "MODEL", "NOTES"],
        [40667],
        [24, 5000, "Alfa Romeo", "Tonale", "Sprint", "ALTO15SPR5HPTA", "Tonale"],
        [],
        [36, 8000, "Kia", "Niro", "EV 4", "KINI16EV4HDTA", "Niro"],
    ]
    table = extract_headers(xlsx_bytes(rows), "broker.xlsx")

    assert table.header_row_index == 1
    assert table.headers == [
        "TERM",
        "ANNUAL_MILEAGE",
        "MANUFACTURER",
        "MODEL",
        "Column 5",
        "CAP CODE",
        "MODEL.1",
        "NOTES",
    ]
    assert [r.number for r in table.rows] == [4, 6]
    assert table.rows[1].values["MANUFACTURER"] == "Kia"
    assert table.rows[1].values["TERM"] == 36
    assert len(table.sample_rows) == 2
    assert table.sample_rows[0]["ANNUAL_MILEAGE"] == "5000"


def test_extract_headers_matrix_from_xlsx():
    rows = [
        ["CAP ID", "", "108321", "", "OTR", "25000"],
        ["Hyundai", "Tucson", "Premium", "", "BASE RENTALS"],
        [None, "1+23", "1+35", "1+47"],
        ["5k - Non Maintained", 344.9, 292.07, 292.71],
    ]
    table = extract_headers(xlsx_bytes(rows), "matrix.xlsx")

    assert table.is_matrix
    assert table.header_row_index == 2
    assert table.meta["CAP ID"] == "108321"
    assert table.rows[0].values["1+35"] == "292.07"
    assert table.rows[0].values["Make"] == "Hyundai"
    assert table.rows[0].number == 4


@pytest.mark.parametrize(
    "values, expected",
    [
        (["Alfa Romeo", "Tonale", 24, 5000], True),
        ([24, 5000], False),
        ([45993, 1, 2, "ok"], False),
        ([45993, "Alfa Romeo", "Tonale", 3], True),
        (["12", "34", "56"], False),
    ],
)
def test_is_valid_data_row(values, expected):
    assert is_valid_data_row(values) is expected
