"""
Ratebook ingestion

Loads vehicle-leasing ratebooks from finance providers into a normalized
rate store, whatever their layout:
- Flat: one quote per row under a header row, possibly after title rows
- Matrix: one vehicle per sheet, mileage bands down, deposit+term codes across

Usage:
    from ratebook_ingest import PostgresRatebookStore, import_ratebook, load_app_config

    config = load_app_config(Path("config.toml"))
    store = PostgresRatebookStore.from_config(config.database)
    outcome = import_ratebook(content, file_name="lex_ch.xlsx", provider_code="lex",
                              contract_type="CH", store=store, config=config)
"""

from .config import AppConfig, load_app_config
from .errors import (
    DbNotConfiguredError,
    DuplicateImportError,
    MissingRequiredFieldsError,
    RatebookImportError,
    StructuralImportError,
)
from .fields import CanonicalField
from .importer import ImportOutcome, import_ratebook
from .readers import extract_headers
from .store import PostgresRatebookStore, RatebookStore, VehicleMatch

__all__ = [
    "AppConfig",
    "CanonicalField",
    "DbNotConfiguredError",
    "DuplicateImportError",
    "ImportOutcome",
    "MissingRequiredFieldsError",
    "PostgresRatebookStore",
    "RatebookImportError",
    "RatebookStore",
    "StructuralImportError",
    "VehicleMatch",
    "extract_headers",
    "import_ratebook",
    "load_app_config",
]
