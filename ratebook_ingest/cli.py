from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Any

from ratebook_ingest.column_analyzer import OpenAIColumnSuggester
from ratebook_ingest.column_mapping import coerce_mapping, missing_required_fields, resolve_column_mapping
from ratebook_ingest.config import AppConfig, load_app_config
from ratebook_ingest.errors import DbNotConfiguredError, RatebookImportError
from ratebook_ingest.fields import describe_fields
from ratebook_ingest.importer import import_ratebook, mapping_to_keys
from ratebook_ingest.readers import extract_headers
from ratebook_ingest.store import PostgresRatebookStore


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _load_mapping(raw: str | None) -> dict[str, Any] | None:
    """Mapping given inline as JSON, or as a path to a JSON file."""
    if not raw:
        return None
    text = raw if raw.lstrip().startswith("{") else Path(raw).read_text(encoding="utf-8")
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Column mapping must be a JSON object of source column -> field key")
    return data


def _contract_type(config: AppConfig, value: str) -> str:
    contract_type = value.strip().upper()
    if contract_type not in config.providers.supported_contract_types:
        raise SystemExit(
            f"Invalid contract type: {value}. Valid types: {', '.join(config.providers.supported_contract_types)}"
        )
    return contract_type


def cmd_import(args: argparse.Namespace, config: AppConfig) -> int:
    path = Path(args.file)
    content = path.read_bytes()
    store = PostgresRatebookStore.from_config(config.database)

    print(f"\n{'='*60}")
    print("RATEBOOK IMPORT")
    print(f"{'='*60}")
    print(f"File: {path}")
    print(f"Provider: {args.provider}")
    print(f"Contract type: {args.contract_type}")
    print(f"{'='*60}\n")

    outcome = import_ratebook(
        content,
        file_name=path.name,
        provider_code=args.provider,
        contract_type=_contract_type(config, args.contract_type),
        store=store,
        config=config,
        column_mapping=_load_mapping(args.mapping),
        mapping_key=args.mapping_key,
        user_id=args.user,
        suggester=OpenAIColumnSuggester(config=config.openai),
        use_ai=args.use_openai,
    )

    print(f"Success: {outcome.success}")
    print(f"Import ID: {outcome.import_id or 'N/A'}")
    print(f"Batch ID: {outcome.batch_id}")
    print(f"Rows: {outcome.success_rows} imported, {outcome.error_rows} errors, {outcome.total_rows} total")
    print(f"Unique CAP codes: {outcome.unique_cap_codes}")
    if outcome.missing_fields:
        print(f"Missing required fields: {', '.join(outcome.missing_fields)}")
    for err in outcome.errors:
        print(f"  - {err}")
    if args.trace:
        _print_json(outcome.trace.to_dict())
    return 0 if outcome.success else 1


def cmd_headers(args: argparse.Namespace, config: AppConfig) -> int:
    path = Path(args.file)
    table = extract_headers(path.read_bytes(), path.name)
    _print_json(
        {
            "headers": table.headers,
            "sample_rows": table.sample_rows,
            "header_row_index": table.header_row_index,
            "is_matrix": table.is_matrix,
            "meta": table.meta,
            "row_count": len(table.rows),
        }
    )
    return 0


def cmd_suggest(args: argparse.Namespace, config: AppConfig) -> int:
    path = Path(args.file)
    table = extract_headers(path.read_bytes(), path.name)
    store = PostgresRatebookStore.from_config(config.database) if args.provider else None
    resolution = resolve_column_mapping(
        table.headers,
        args.provider,
        store=store,
        suggester=OpenAIColumnSuggester(config=config.openai),
        use_ai=args.use_openai,
        sample_rows=table.sample_rows,
    )
    _print_json(
        {
            "source": resolution.source,
            "mapping": mapping_to_keys(resolution.mapping),
            "details": [d.model_dump(by_alias=True) for d in resolution.details],
            "unmapped_columns": resolution.unmapped_columns,
            "missing_required_fields": resolution.missing_fields,
            "suggested_provider_name": resolution.suggested_provider_name,
            "ai_error": resolution.ai_error,
        }
    )
    return 0


def cmd_list(args: argparse.Namespace, config: AppConfig) -> int:
    store = PostgresRatebookStore.from_config(config.database)
    contract_type = _contract_type(config, args.contract_type) if args.contract_type else None
    imports = store.list_imports(
        provider_code=args.provider,
        contract_type=contract_type,
        latest_only=args.latest,
    )
    stats = store.rate_stats(provider_code=args.provider, contract_type=contract_type)
    _print_json({"imports": imports, "stats": stats})
    return 0


def cmd_show(args: argparse.Namespace, config: AppConfig) -> int:
    store = PostgresRatebookStore.from_config(config.database)
    record = store.get_import(args.import_id)
    if record is None:
        print(f"Import not found: {args.import_id}", file=sys.stderr)
        return 1
    _print_json(record)
    return 0


def cmd_delete(args: argparse.Namespace, config: AppConfig) -> int:
    store = PostgresRatebookStore.from_config(config.database)
    if not store.delete_import(args.import_id):
        print(f"Import not found: {args.import_id}", file=sys.stderr)
        return 1
    print(f"Deleted import {args.import_id} and its rates")
    return 0


def cmd_save_mapping(args: argparse.Namespace, config: AppConfig) -> int:
    mapping = coerce_mapping(_load_mapping(args.mapping) or {})
    store = PostgresRatebookStore.from_config(config.database)
    store.save_provider_mapping(args.provider, mapping_to_keys(mapping))
    print(f"Saved mapping for {args.provider} ({len(mapping)} columns)")
    missing = missing_required_fields(mapping)
    if missing:
        print(f"Warning: mapping leaves required fields unmapped: {', '.join(missing)}")
    return 0


def cmd_fields(args: argparse.Namespace, config: AppConfig) -> int:
    _print_json(describe_fields())
    return 0


def cmd_init_db(args: argparse.Namespace, config: AppConfig) -> int:
    store = PostgresRatebookStore.from_config(config.database)
    _print_json(store.init_schema())
    return 0


def cmd_check_db(args: argparse.Namespace, config: AppConfig) -> int:
    store = PostgresRatebookStore.from_config(config.database)
    _print_json(store.healthcheck())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ratebook", description="Vehicle leasing ratebook ingestion")
    parser.add_argument("--config", default="config.toml", help="Path to config.toml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import a ratebook file")
    p.add_argument("file", help="Path to a .csv, .xlsx or .xls ratebook")
    p.add_argument("--provider", required=True, help="Provider code, e.g. lex")
    p.add_argument("--contract-type", required=True, help="Contract type, e.g. CH or PCH")
    p.add_argument("--mapping", help="Column mapping as JSON or a path to a JSON file")
    p.add_argument("--mapping-key", help="Stored mapping name (defaults to the provider code)")
    p.add_argument("--use-openai", action="store_true", help="Ask OpenAI for column suggestions")
    p.add_argument("--user", help="User id recorded on the import")
    p.add_argument("--trace", action="store_true", help="Print the import trace")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("headers", help="Preview headers and sample rows")
    p.add_argument("file")
    p.set_defaults(func=cmd_headers)

    p = sub.add_parser("suggest", help="Suggest a column mapping for a file")
    p.add_argument("file")
    p.add_argument("--provider", help="Use the stored mapping for this provider when present")
    p.add_argument("--use-openai", action="store_true")
    p.set_defaults(func=cmd_suggest)

    p = sub.add_parser("list", help="List imports")
    p.add_argument("--provider")
    p.add_argument("--contract-type")
    p.add_argument("--latest", action="store_true", help="Only latest imports")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("show", help="Show an import with sample rates")
    p.add_argument("import_id")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("delete", help="Delete an import and its rates")
    p.add_argument("import_id")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("save-mapping", help="Store a provider column mapping")
    p.add_argument("provider")
    p.add_argument("mapping", help="Column mapping as JSON or a path to a JSON file")
    p.set_defaults(func=cmd_save_mapping)

    p = sub.add_parser("fields", help="List the canonical rate fields")
    p.set_defaults(func=cmd_fields)

    p = sub.add_parser("init-db", help="Create tables and indexes")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("check-db", help="Check the database connection")
    p.set_defaults(func=cmd_check_db)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_app_config(Path(args.config))
    try:
        return args.func(args, config)
    except (RatebookImportError, DbNotConfiguredError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
