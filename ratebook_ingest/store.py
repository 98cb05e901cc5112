from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Literal, Protocol
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ratebook_ingest.config import DatabaseConfig
from ratebook_ingest.errors import DbNotConfiguredError, DuplicateImportError
from ratebook_ingest.records import RateRecord


logger = logging.getLogger(__name__)

ImportStatus = Literal["processing", "completed", "failed"]

LIST_IMPORTS_LIMIT = 50
SAMPLE_RATES_LIMIT = 20


@dataclass(frozen=True)
class VehicleMatch:
    cap_code: str
    vehicle_id: str
    manufacturer: str | None = None
    model: str | None = None
    variant: str | None = None


class RatebookStore(Protocol):
    def find_import_by_hash(self, provider_code: str, file_hash: str) -> dict[str, Any] | None: ...

    def ensure_provider(self, provider_code: str, *, default_contract_types: tuple[str, ...]) -> dict[str, Any]: ...

    def get_provider_mapping(self, provider_key: str) -> dict[str, Any] | None: ...

    def save_provider_mapping(self, provider_key: str, mapping: dict[str, str | None]) -> None: ...

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
    ) -> dict[str, Any]: ...

    def update_import_progress(
        self, import_id: str, *, total_rows: int, success_rows: int, error_rows: int, unique_cap_codes: int
    ) -> None: ...

    def insert_rates(self, records: list[RateRecord]) -> int: ...

    def find_vehicles(self, cap_codes: list[str]) -> dict[str, VehicleMatch]: ...

    def recalculate_scores(self, import_id: str) -> int: ...

    def finalize_import(
        self,
        import_id: str,
        *,
        status: ImportStatus,
        total_rows: int,
        success_rows: int,
        error_rows: int,
        unique_cap_codes: int,
        error_log: list[str] | None,
    ) -> None: ...

    def get_import(self, import_id: str, *, sample_limit: int = SAMPLE_RATES_LIMIT) -> dict[str, Any] | None: ...

    def list_imports(
        self,
        *,
        provider_code: str | None = None,
        contract_type: str | None = None,
        latest_only: bool = False,
        limit: int = LIST_IMPORTS_LIMIT,
    ) -> list[dict[str, Any]]: ...

    def delete_import(self, import_id: str) -> bool: ...

    def rate_stats(self, *, provider_code: str | None = None, contract_type: str | None = None) -> dict[str, int]: ...


def _is_local_host(host: str | None) -> bool:
    if not host:
        return True
    host = host.strip().casefold()
    return host in {"localhost", "127.0.0.1", "::1"}


def normalize_database_url(url: str, *, connect_timeout: int = 8) -> str:
    parsed = urlparse(url)
    params = dict(parse_qsl(parsed.query, keep_blank_values=True))

    if "connect_timeout" not in params:
        params["connect_timeout"] = str(connect_timeout)
    if not _is_local_host(parsed.hostname) and "sslmode" not in params:
        params["sslmode"] = "require"

    query = urlencode(params, doseq=True)
    return urlunparse(parsed._replace(query=query))


def _rate_columns() -> list[str]:
    return [name for name in RateRecord.__dataclass_fields__ if name != "row_number"]


_RATE_COLUMNS = _rate_columns()

_SCHEMA_STATEMENTS: list[str] = [
    "CREATE EXTENSION IF NOT EXISTS pgcrypto;",
    """
    CREATE TABLE IF NOT EXISTS public.finance_providers (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        code text NOT NULL UNIQUE,
        name text NOT NULL,
        is_active boolean NOT NULL DEFAULT true,
        supported_contract_types text[] NOT NULL DEFAULT '{}',
        created_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.provider_mappings (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        provider_name text NOT NULL UNIQUE,
        column_mappings jsonb NOT NULL,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.vehicles (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        cap_code text NOT NULL UNIQUE,
        manufacturer text NULL,
        model text NULL,
        variant text NULL,
        created_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.ratebook_imports (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        provider_id uuid NULL REFERENCES public.finance_providers (id),
        provider_code text NOT NULL,
        contract_type text NOT NULL,
        batch_id text NOT NULL,
        file_name text NULL,
        file_hash text NOT NULL,
        status text NOT NULL DEFAULT 'processing',
        is_latest boolean NOT NULL DEFAULT true,
        total_rows integer NOT NULL DEFAULT 0,
        success_rows integer NOT NULL DEFAULT 0,
        error_rows integer NOT NULL DEFAULT 0,
        unique_cap_codes integer NOT NULL DEFAULT 0,
        error_log jsonb NULL,
        started_at timestamptz NULL,
        completed_at timestamptz NULL,
        created_at timestamptz NOT NULL DEFAULT now(),
        created_by text NULL,
        CONSTRAINT ratebook_imports_status_chk CHECK (status IN ('processing', 'completed', 'failed')),
        CONSTRAINT ratebook_imports_provider_hash_key UNIQUE (provider_code, file_hash)
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ratebook_imports_latest_uidx
        ON public.ratebook_imports (provider_code, contract_type)
        WHERE is_latest;
    """,
    "CREATE INDEX IF NOT EXISTS ratebook_imports_created_at_idx ON public.ratebook_imports (created_at DESC);",
    """
    CREATE TABLE IF NOT EXISTS public.provider_rates (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        import_id uuid NOT NULL REFERENCES public.ratebook_imports (id) ON DELETE CASCADE,
        vehicle_id uuid NULL REFERENCES public.vehicles (id) ON DELETE SET NULL,
        cap_code text NOT NULL,
        provider_code text NOT NULL,
        contract_type text NOT NULL,
        manufacturer text NOT NULL,
        model text NOT NULL,
        variant text NULL,
        model_year text NULL,
        term integer NOT NULL,
        annual_mileage integer NOT NULL,
        total_rental integer NOT NULL,
        lease_rental integer NULL,
        service_rental integer NULL,
        p11d integer NULL,
        co2_gkm integer NULL,
        fuel_type text NULL,
        transmission text NULL,
        body_style text NULL,
        excess_mileage_ppm integer NULL,
        whole_life_cost integer NULL,
        otr_price integer NULL,
        basic_list_price integer NULL,
        insurance_group text NULL,
        mpg_combined text NULL,
        wltp_ev_range integer NULL,
        euro_rating text NULL,
        score numeric NULL,
        score_breakdown jsonb NULL,
        created_at timestamptz NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS provider_rates_import_id_idx ON public.provider_rates (import_id);",
    "CREATE INDEX IF NOT EXISTS provider_rates_cap_code_idx ON public.provider_rates (cap_code);",
]

_IMPORT_SELECT_COLUMNS = """
    id,
    provider_id,
    provider_code,
    contract_type,
    batch_id,
    file_name,
    file_hash,
    status,
    is_latest,
    total_rows,
    success_rows,
    error_rows,
    unique_cap_codes,
    error_log,
    started_at,
    completed_at,
    created_at,
    created_by
"""

_SCORE_SQL = """
    UPDATE public.provider_rates pr
    SET score = result.score, score_breakdown = result.breakdown
    FROM (
        SELECT pr2.id, (calculate_rate_score_with_breakdown(
            pr2.total_rental, pr2.term, pr2.p11d, pr2.basic_list_price, pr2.contract_type, pr2.cap_code,
            'monthly_in_advance',
            pr2.manufacturer, pr2.fuel_type, pr2.wltp_ev_range
        )).*
        FROM public.provider_rates pr2
        WHERE pr2.import_id = %(import_id)s
    ) result
    WHERE pr.id = result.id
"""


def _stringify_ids(row: dict[str, Any]) -> dict[str, Any]:
    out = dict(row)
    for key in ("id", "provider_id", "import_id", "vehicle_id"):
        if out.get(key) is not None:
            out[key] = str(out[key])
    return out


class PostgresRatebookStore:
    def __init__(self, database_url: str | None, *, connect_timeout: int = 8):
        if not database_url or not str(database_url).strip():
            raise DbNotConfiguredError("DATABASE_URL is not set.")
        self._url = normalize_database_url(str(database_url).strip(), connect_timeout=connect_timeout)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> PostgresRatebookStore:
        return cls(config.url, connect_timeout=config.connect_timeout)

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._url)

    def init_schema(self) -> dict[str, Any]:
        with self._connect() as conn:
            for stmt in _SCHEMA_STATEMENTS:
                conn.execute(stmt)
        return {"ok": True, "statements": len(_SCHEMA_STATEMENTS)}

    def healthcheck(self) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT now() AS now").fetchone()
        return {"ok": True, "now": row[0] if row else None}

    def find_import_by_hash(self, provider_code: str, file_hash: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_IMPORT_SELECT_COLUMNS}
                    FROM public.ratebook_imports
                    WHERE provider_code = %(provider_code)s AND file_hash = %(file_hash)s
                    LIMIT 1
                    """,
                    {"provider_code": provider_code, "file_hash": file_hash},
                )
                row = cur.fetchone()
        return _stringify_ids(row) if row else None

    def ensure_provider(self, provider_code: str, *, default_contract_types: tuple[str, ...]) -> dict[str, Any]:
        name = provider_code[:1].upper() + provider_code[1:]
        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    INSERT INTO public.finance_providers (code, name, is_active, supported_contract_types)
                    VALUES (%(code)s, %(name)s, true, %(types)s)
                    ON CONFLICT (code) DO NOTHING
                    """,
                    {"code": provider_code, "name": name, "types": list(default_contract_types)},
                )
                cur.execute(
                    """
                    SELECT id, code, name, is_active, supported_contract_types
                    FROM public.finance_providers
                    WHERE code = %(code)s
                    """,
                    {"code": provider_code},
                )
                row = cur.fetchone()
        return _stringify_ids(row) if row else {"id": None, "code": provider_code, "name": name}

    def get_provider_mapping(self, provider_key: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT column_mappings FROM public.provider_mappings WHERE provider_name = %(name)s LIMIT 1",
                {"name": provider_key},
            ).fetchone()
        if not row or not isinstance(row[0], dict):
            return None
        return dict(row[0])

    def save_provider_mapping(self, provider_key: str, mapping: dict[str, str | None]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO public.provider_mappings (provider_name, column_mappings)
                VALUES (%(name)s, %(mappings)s)
                ON CONFLICT (provider_name)
                DO UPDATE SET column_mappings = EXCLUDED.column_mappings, updated_at = now()
                """,
                {"name": provider_key, "mappings": Jsonb(mapping)},
            )

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
        """Demote the current latest batch and insert the new one in a single transaction."""
        try:
            with self._connect() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%(key)s))",
                        {"key": f"{provider_code}:{contract_type}"},
                    )
                    cur.execute(
                        """
                        UPDATE public.ratebook_imports
                        SET is_latest = false
                        WHERE provider_code = %(provider_code)s
                          AND contract_type = %(contract_type)s
                          AND is_latest
                        """,
                        {"provider_code": provider_code, "contract_type": contract_type},
                    )
                    cur.execute(
                        f"""
                        INSERT INTO public.ratebook_imports (
                            provider_id, provider_code, contract_type, batch_id,
                            file_name, file_hash, status, is_latest, started_at, created_by
                        ) VALUES (
                            %(provider_id)s, %(provider_code)s, %(contract_type)s, %(batch_id)s,
                            %(file_name)s, %(file_hash)s, 'processing', true, now(), %(created_by)s
                        )
                        RETURNING {_IMPORT_SELECT_COLUMNS}
                        """,
                        {
                            "provider_id": provider_id,
                            "provider_code": provider_code,
                            "contract_type": contract_type,
                            "batch_id": batch_id,
                            "file_name": file_name,
                            "file_hash": file_hash,
                            "created_by": created_by,
                        },
                    )
                    row = cur.fetchone()
        except psycopg.errors.UniqueViolation as e:
            raise DuplicateImportError(f"Duplicate file detected for provider {provider_code}") from e
        return _stringify_ids(row)

    def update_import_progress(
        self, import_id: str, *, total_rows: int, success_rows: int, error_rows: int, unique_cap_codes: int
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE public.ratebook_imports
                SET total_rows = %(total_rows)s,
                    success_rows = %(success_rows)s,
                    error_rows = %(error_rows)s,
                    unique_cap_codes = %(unique_cap_codes)s
                WHERE id = %(id)s
                """,
                {
                    "id": import_id,
                    "total_rows": total_rows,
                    "success_rows": success_rows,
                    "error_rows": error_rows,
                    "unique_cap_codes": unique_cap_codes,
                },
            )

    def insert_rates(self, records: list[RateRecord]) -> int:
        if not records:
            return 0
        columns = ", ".join(_RATE_COLUMNS)
        placeholders = ", ".join(f"%({c})s" for c in _RATE_COLUMNS)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    f"INSERT INTO public.provider_rates ({columns}) VALUES ({placeholders})",
                    [r.to_row() for r in records],
                )
        return len(records)

    def find_vehicles(self, cap_codes: list[str]) -> dict[str, VehicleMatch]:
        if not cap_codes:
            return {}
        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    """
                    SELECT id, cap_code, manufacturer, model, variant
                    FROM public.vehicles
                    WHERE cap_code = ANY(%(cap_codes)s)
                    """,
                    {"cap_codes": list(cap_codes)},
                )
                rows = cur.fetchall()
        return {
            str(r["cap_code"]): VehicleMatch(
                cap_code=str(r["cap_code"]),
                vehicle_id=str(r["id"]),
                manufacturer=r.get("manufacturer"),
                model=r.get("model"),
                variant=r.get("variant"),
            )
            for r in rows
        }

    def recalculate_scores(self, import_id: str) -> int:
        """Score the batch's rates with the database scoring function; 0 when it is not installed."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'calculate_rate_score_with_breakdown')"
            ).fetchone()
            if not row or not row[0]:
                logger.info("Scoring function not installed; skipping scores for import %s", import_id)
                return 0
            cur = conn.execute(_SCORE_SQL, {"import_id": import_id})
            return int(cur.rowcount or 0)

    def finalize_import(
        self,
        import_id: str,
        *,
        status: ImportStatus,
        total_rows: int,
        success_rows: int,
        error_rows: int,
        unique_cap_codes: int,
        error_log: list[str] | None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE public.ratebook_imports
                SET status = %(status)s,
                    total_rows = %(total_rows)s,
                    success_rows = %(success_rows)s,
                    error_rows = %(error_rows)s,
                    unique_cap_codes = %(unique_cap_codes)s,
                    error_log = %(error_log)s,
                    completed_at = now()
                WHERE id = %(id)s
                """,
                {
                    "id": import_id,
                    "status": status,
                    "total_rows": total_rows,
                    "success_rows": success_rows,
                    "error_rows": error_rows,
                    "unique_cap_codes": unique_cap_codes,
                    "error_log": Jsonb(error_log) if error_log else None,
                },
            )

    def get_import(self, import_id: str, *, sample_limit: int = SAMPLE_RATES_LIMIT) -> dict[str, Any] | None:
        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_IMPORT_SELECT_COLUMNS} FROM public.ratebook_imports WHERE id = %(id)s",
                    {"id": import_id},
                )
                row = cur.fetchone()
                if not row:
                    return None
                cur.execute(
                    f"""
                    SELECT id, {", ".join(_RATE_COLUMNS)}, score
                    FROM public.provider_rates
                    WHERE import_id = %(id)s
                    ORDER BY cap_code, term, annual_mileage
                    LIMIT %(limit)s
                    """,
                    {"id": import_id, "limit": int(sample_limit)},
                )
                samples = cur.fetchall()
        out = _stringify_ids(row)
        out["sample_rates"] = [_stringify_ids(r) for r in samples]
        return out

    def list_imports(
        self,
        *,
        provider_code: str | None = None,
        contract_type: str | None = None,
        latest_only: bool = False,
        limit: int = LIST_IMPORTS_LIMIT,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: dict[str, Any] = {"limit": int(limit)}
        if provider_code:
            clauses.append("provider_code = %(provider_code)s")
            params["provider_code"] = provider_code
        if contract_type:
            clauses.append("contract_type = %(contract_type)s")
            params["contract_type"] = contract_type
        if latest_only:
            clauses.append("is_latest")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_IMPORT_SELECT_COLUMNS}
                    FROM public.ratebook_imports
                    {where}
                    ORDER BY created_at DESC
                    LIMIT %(limit)s
                    """,
                    params,
                )
                rows = cur.fetchall()
        return [_stringify_ids(r) for r in rows]

    def delete_import(self, import_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM public.ratebook_imports WHERE id = %(id)s", {"id": import_id})
            return bool(cur.rowcount)

    def rate_stats(self, *, provider_code: str | None = None, contract_type: str | None = None) -> dict[str, int]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        if provider_code:
            clauses.append("provider_code = %(provider_code)s")
            params["provider_code"] = provider_code
        if contract_type:
            clauses.append("contract_type = %(contract_type)s")
            params["contract_type"] = contract_type
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT COUNT(*)::int AS total_rates, COUNT(DISTINCT cap_code)::int AS unique_cap_codes
                    FROM public.provider_rates
                    {where}
                    """,
                    params,
                )
                row = cur.fetchone() or {}
        return {
            "total_rates": int(row.get("total_rates") or 0),
            "unique_cap_codes": int(row.get("unique_cap_codes") or 0),
        }
